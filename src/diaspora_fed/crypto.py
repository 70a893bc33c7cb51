"""
crypto.py — RSA / AES / Base64 primitives for the federation engine.

All key handling lives here so the envelope codec and the normalizer can call
`rsa_sign/rsa_verify/aes_encrypt/aes_decrypt` without touching padding details.

Notes:
- RSA signatures and key wrapping use PKCS#1 v1.5, which is what every peer
  implementation of the protocol speaks.
- AES is AES-256-CBC with PKCS#7 block padding; keys and IVs are zero-padded
  (or truncated) to 32 / 16 bytes first.
- Base64url keeps its '=' padding: the padded form is what gets signed.
"""

import base64
import binascii
import os
from typing import Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, padding as sym_padding, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from diaspora_fed.errors import CryptoFailure

KeyLike = Union[str, bytes, rsa.RSAPrivateKey, rsa.RSAPublicKey]

AES_KEY_SIZE = 32
AES_IV_SIZE = 16

_HASHES = {
    "sha1": hashes.SHA1,
    "sha256": hashes.SHA256,
    "sha512": hashes.SHA512,
}


# -----------------------------
# Base64 helpers
# -----------------------------

def b64url_encode(data: Union[str, bytes]) -> str:
    """URL-safe Base64, padding kept."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.urlsafe_b64encode(data).decode("ascii")


def b64url_decode(data: Union[str, bytes]) -> bytes:
    """Decode URL-safe Base64, tolerating missing padding."""
    return b64_decode_lenient(data)


def b64_decode_lenient(data: Union[str, bytes]) -> bytes:
    """
    Decode either Base64 alphabet, with or without padding and with stray
    whitespace. Peers are not consistent about which one they send.
    """
    if isinstance(data, bytes):
        data = data.decode("ascii", errors="ignore")
    if not isinstance(data, str):
        raise CryptoFailure(f"Invalid base64 data: expected text, got {type(data).__name__}")
    cleaned = "".join(data.split()).replace("-", "+").replace("_", "/").rstrip("=")
    cleaned += "=" * ((-len(cleaned)) % 4)
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CryptoFailure(f"Invalid base64 data: {exc}") from exc


def b64_encode(data: Union[str, bytes]) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.b64encode(data).decode("ascii")


# -------------
# RSA key utils
# -------------

def generate_private_key(key_size: int = 4096) -> rsa.RSAPrivateKey:
    """Fresh RSA keypair (public exponent 65537)."""
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def load_private_key(key: KeyLike) -> rsa.RSAPrivateKey:
    if isinstance(key, rsa.RSAPrivateKey):
        return key
    if isinstance(key, str):
        key = key.encode("ascii")
    try:
        loaded = serialization.load_pem_private_key(key, password=None)
    except (ValueError, TypeError) as exc:
        raise CryptoFailure(f"Invalid private key: {exc}") from exc
    if not isinstance(loaded, rsa.RSAPrivateKey):
        raise CryptoFailure("Private key is not an RSA key")
    return loaded


def load_public_key(key: KeyLike) -> rsa.RSAPublicKey:
    """Accepts SPKI ("PUBLIC KEY") and PKCS#1 ("RSA PUBLIC KEY") PEM, or a private key."""
    if isinstance(key, rsa.RSAPublicKey):
        return key
    if isinstance(key, rsa.RSAPrivateKey):
        return key.public_key()
    if isinstance(key, str):
        key = key.encode("ascii")
    try:
        loaded = serialization.load_pem_public_key(key.strip())
    except (ValueError, TypeError) as exc:
        raise CryptoFailure(f"Invalid public key: {exc}") from exc
    if not isinstance(loaded, rsa.RSAPublicKey):
        raise CryptoFailure("Public key is not an RSA key")
    return loaded


def export_private_pem(key: rsa.RSAPrivateKey) -> str:
    """PKCS#8 PEM, unencrypted."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def export_public_pem(key: KeyLike) -> str:
    """SubjectPublicKeyInfo PEM."""
    return load_public_key(key).public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def _hash(hash_alg: str) -> hashes.HashAlgorithm:
    try:
        return _HASHES[hash_alg.lower()]()
    except KeyError:
        raise CryptoFailure(f"Unsupported hash algorithm: {hash_alg}")


def _to_bytes(message: Union[str, bytes]) -> bytes:
    return message.encode("utf-8") if isinstance(message, str) else message


# -------------------------
# Signing & Verification API
# -------------------------

def rsa_sign(message: Union[str, bytes], private_key: KeyLike, hash_alg: str = "sha256") -> bytes:
    """Sign with RSASSA-PKCS1-v1_5. Returns the raw signature bytes."""
    key = load_private_key(private_key)
    return key.sign(_to_bytes(message), padding.PKCS1v15(), _hash(hash_alg))


def rsa_verify(
    message: Union[str, bytes], signature: bytes, public_key: KeyLike, hash_alg: str = "sha256"
) -> bool:
    """
    Verify a PKCS#1 v1.5 signature.
    Returns True on success, False on any failure (bad key, wrong data, etc.).
    """
    try:
        key = load_public_key(public_key)
        key.verify(signature, _to_bytes(message), padding.PKCS1v15(), _hash(hash_alg))
        return True
    except (InvalidSignature, CryptoFailure, ValueError, TypeError):
        return False


# ---------------------------
# Key wrapping (RSA) API
# ---------------------------

def rsa_encrypt(public_key: KeyLike, data: bytes) -> bytes:
    key = load_public_key(public_key)
    try:
        return key.encrypt(data, padding.PKCS1v15())
    except ValueError as exc:
        raise CryptoFailure(f"RSA encryption failed: {exc}") from exc


def rsa_decrypt(private_key: KeyLike, data: bytes) -> bytes:
    key = load_private_key(private_key)
    try:
        return key.decrypt(data, padding.PKCS1v15())
    except ValueError as exc:
        raise CryptoFailure("RSA decryption failed") from exc


# ---------------------------
# AES-256-CBC
# ---------------------------

def _fit(value: bytes, size: int) -> bytes:
    return value[:size].ljust(size, b"\0")


def random_aes_material() -> tuple[bytes, bytes]:
    """A fresh (key, iv) pair."""
    return os.urandom(AES_KEY_SIZE), os.urandom(AES_IV_SIZE)


def aes_encrypt(key: bytes, iv: bytes, plaintext: Union[str, bytes]) -> bytes:
    padder = sym_padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(_to_bytes(plaintext)) + padder.finalize()
    encryptor = Cipher(algorithms.AES(_fit(key, AES_KEY_SIZE)), modes.CBC(_fit(iv, AES_IV_SIZE))).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def aes_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    if not ciphertext or len(ciphertext) % AES_IV_SIZE:
        raise CryptoFailure("AES ciphertext has an invalid length")
    decryptor = Cipher(algorithms.AES(_fit(key, AES_KEY_SIZE)), modes.CBC(_fit(iv, AES_IV_SIZE))).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = sym_padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise CryptoFailure("AES decryption failed (bad key or padding)") from exc
