"""
Magic envelope codec — build, wrap and open signed envelopes.

Two generations are understood on input:

- modern: a bare ``me:env`` document, or for private delivery a JSON object
  carrying an RSA-wrapped AES key and the AES-encrypted envelope;
- legacy: a ``<diaspora>`` document with a public ``header`` or an
  ``encrypted_header``, the signed block sitting under ``provenance``,
  ``env`` or directly under the root.

Only the modern form is produced. Every decode path verifies the signature
over the signable string before any plaintext is returned.
"""

import json
import logging
from typing import Optional, Union

from lxml import etree

from diaspora_fed import crypto
from diaspora_fed.errors import CryptoFailure, MalformedEnvelope, SignatureVerificationFailed
from diaspora_fed.identity import KeyResolver, normalize_handle
from diaspora_fed.models.envelope import (
    ALGORITHM,
    DATA_TYPE,
    ENCODING,
    NAMESPACE_LEGACY,
    NAMESPACE_MAGIC_ENV,
    DecodedMessage,
    Envelope,
)

logger = logging.getLogger(__name__)

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)


def strip_whitespace(data: str) -> str:
    return "".join(data.split())


def parse_xml(document: Union[str, bytes]) -> etree._Element:
    if isinstance(document, str):
        document = document.encode("utf-8")
    try:
        root = etree.fromstring(document.strip(), parser=_PARSER)
    except (etree.XMLSyntaxError, ValueError) as e:
        raise MalformedEnvelope(f"Received data is not XML: {e}")
    if root is None:
        raise MalformedEnvelope("Received data is not XML")
    return root


def _me(name: str) -> str:
    return f"{{{NAMESPACE_MAGIC_ENV}}}{name}"


def _child(element: etree._Element, name: str, *namespaces: Optional[str]) -> Optional[etree._Element]:
    for ns in namespaces:
        found = element.find(f"{{{ns}}}{name}" if ns else name)
        if found is not None:
            return found
    return None


def envelope_from_element(base: etree._Element) -> Envelope:
    """Read the magic-env children of `base` (an ``me:env`` or a legacy container)."""
    data = base.find(_me("data"))
    sig = base.find(_me("sig"))
    if data is None or sig is None:
        raise MalformedEnvelope("XML has no magic envelope children")
    return Envelope(
        data=strip_whitespace(data.text or ""),
        data_type=data.get("type", ""),
        encoding=(_text(base.find(_me("encoding")))),
        algorithm=(_text(base.find(_me("alg")))),
        signature=strip_whitespace(sig.text or ""),
        key_id=sig.get("key_id") or None,
    )


def parse_magic_envelope(document: Union[str, bytes]) -> Envelope:
    return envelope_from_element(parse_xml(document))


def _text(element: Optional[etree._Element]) -> str:
    if element is None or element.text is None:
        return ""
    return element.text.strip()


def _verify(envelope: Envelope, author: str, key: str) -> None:
    if envelope.algorithm != ALGORITHM:
        raise SignatureVerificationFailed(f"Unsupported envelope algorithm {envelope.algorithm!r}")
    try:
        signature = crypto.b64url_decode(envelope.signature)
    except CryptoFailure:
        raise SignatureVerificationFailed(f"Unreadable signature from {author}")
    if not crypto.rsa_verify(envelope.signable, signature, key):
        logger.info(f"Message from {author} did not verify. Discarding.")
        raise SignatureVerificationFailed(f"Message from {author} did not verify")


def _author_from_key_id(envelope: Envelope) -> str:
    if not envelope.key_id:
        raise MalformedEnvelope("No author could be decoded")
    # Some servers put the bare handle in key_id; "@" is not in either base64 alphabet
    if "@" in envelope.key_id:
        author = envelope.key_id
    else:
        try:
            author = crypto.b64_decode_lenient(envelope.key_id).decode("utf-8")
        except (CryptoFailure, UnicodeDecodeError):
            raise MalformedEnvelope("No author could be decoded")
    author = normalize_handle(author)
    if not author:
        raise MalformedEnvelope("No author could be decoded")
    return author


def _decode_data(envelope: Envelope) -> bytes:
    try:
        return crypto.b64url_decode(envelope.data)
    except CryptoFailure:
        raise MalformedEnvelope("Envelope data is not base64url")


# -----------------------------
# Outbound
# -----------------------------

def build_magic_envelope(message: str, handle: str, private_key: crypto.KeyLike) -> str:
    """Sign `message` into a modern envelope, key_id being the sender handle."""
    envelope = Envelope(
        data=strip_whitespace(crypto.b64url_encode(message)),
        data_type=DATA_TYPE,
        encoding=ENCODING,
        algorithm=ALGORITHM,
        key_id=crypto.b64url_encode(handle),
    )
    signature = crypto.b64url_encode(crypto.rsa_sign(envelope.signable, private_key))

    root = etree.Element(_me("env"), nsmap={"me": NAMESPACE_MAGIC_ENV})
    data = etree.SubElement(root, _me("data"), type=envelope.data_type)
    data.text = envelope.data
    etree.SubElement(root, _me("encoding")).text = envelope.encoding
    etree.SubElement(root, _me("alg")).text = envelope.algorithm
    sig = etree.SubElement(root, _me("sig"), key_id=envelope.key_id)
    sig.text = signature
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8").decode("utf-8")


def encode_private_data(envelope: str, public_key: Optional[crypto.KeyLike]) -> str:
    """Encrypt an envelope for one recipient."""
    if not public_key:
        raise CryptoFailure("Recipient public key missing")

    aes_key, iv = crypto.random_aes_material()
    ciphertext = crypto.aes_encrypt(aes_key, iv, envelope)
    bundle = json.dumps({"iv": crypto.b64_encode(iv), "key": crypto.b64_encode(aes_key)})
    encrypted_bundle = crypto.rsa_encrypt(public_key, bundle.encode("utf-8"))

    return json.dumps({
        "aes_key": crypto.b64_encode(encrypted_bundle),
        "encrypted_magic_envelope": crypto.b64_encode(ciphertext),
    })


def build_message(
    message: str,
    handle: str,
    private_key: crypto.KeyLike,
    recipient_key: Optional[crypto.KeyLike] = None,
    public: bool = False,
) -> str:
    envelope = build_magic_envelope(message, handle, private_key)
    if public:
        return envelope
    return encode_private_data(envelope, recipient_key)


# -----------------------------
# Inbound
# -----------------------------

def _unwrap_key_bundle(encrypted_bundle: bytes, private_key: crypto.KeyLike) -> tuple[bytes, bytes]:
    """RSA-decrypt a JSON {iv, key} bundle; returns (key, iv)."""
    raw = crypto.rsa_decrypt(private_key, encrypted_bundle)
    try:
        bundle = json.loads(raw)
        return crypto.b64_decode_lenient(bundle["key"]), crypto.b64_decode_lenient(bundle["iv"])
    except (ValueError, KeyError, TypeError):
        raise CryptoFailure("Outer key bundle did not decode")


def _decrypt_private(payload: dict, private_key: Optional[crypto.KeyLike]) -> bytes:
    if private_key is None:
        raise CryptoFailure("Private envelope received without a local private key")
    aes_key = payload.get("aes_key")
    encrypted = payload.get("encrypted_magic_envelope")
    if not isinstance(aes_key, str) or not isinstance(encrypted, str):
        raise MalformedEnvelope("Private envelope lacks aes_key or encrypted_magic_envelope")
    encrypted_bundle = crypto.b64_decode_lenient(aes_key)
    ciphertext = crypto.b64_decode_lenient(encrypted)
    key, iv = _unwrap_key_bundle(encrypted_bundle, private_key)
    return crypto.aes_decrypt(key, iv, ciphertext)


async def decode_raw(
    raw: Union[str, bytes], private_key: Optional[crypto.KeyLike], resolver: KeyResolver
) -> DecodedMessage:
    """Open a modern envelope. JSON input is a private delivery, anything else public XML."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    try:
        payload = json.loads(raw)
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        document: Union[str, bytes] = _decrypt_private(payload, private_key)
    else:
        document = raw

    envelope = parse_magic_envelope(document)
    author = _author_from_key_id(envelope)
    key = await resolver.resolve_public_key(author)
    _verify(envelope, author, key)

    try:
        message = _decode_data(envelope).decode("utf-8")
    except UnicodeDecodeError:
        raise MalformedEnvelope("Envelope payload is not UTF-8")
    return DecodedMessage(message=message, author=author, key=key)


def _legacy_header(root: etree._Element, private_key: Optional[crypto.KeyLike]) -> tuple[str, Optional[bytes], Optional[bytes]]:
    """Returns (author, inner_key, inner_iv); the inner key material is None for public messages."""
    header = _child(root, "header", NAMESPACE_LEGACY, None)
    if header is not None:
        author = _text(_child(header, "author_id", NAMESPACE_LEGACY, None))
        return author, None, None

    encrypted_header = _child(root, "encrypted_header", NAMESPACE_LEGACY, None)
    if encrypted_header is None:
        raise MalformedEnvelope("Legacy envelope has neither header nor encrypted_header")
    if private_key is None:
        raise CryptoFailure("This is no private post in the old format")

    try:
        outer = json.loads(crypto.b64_decode_lenient(encrypted_header.text or ""))
        encrypted_bundle = crypto.b64_decode_lenient(outer["aes_key"])
        ciphertext = crypto.b64_decode_lenient(outer["ciphertext"])
    except (ValueError, KeyError, TypeError, CryptoFailure):
        raise MalformedEnvelope("Encrypted header is not readable")

    key, iv = _unwrap_key_bundle(encrypted_bundle, private_key)
    decrypted = parse_xml(crypto.aes_decrypt(key, iv, ciphertext))
    author = _text(_child(decrypted, "author_id", None, NAMESPACE_LEGACY))
    inner_iv = crypto.b64_decode_lenient(_text(_child(decrypted, "iv", None, NAMESPACE_LEGACY)))
    inner_key = crypto.b64_decode_lenient(_text(_child(decrypted, "aes_key", None, NAMESPACE_LEGACY)))
    return author, inner_key, inner_iv


def _legacy_base(root: etree._Element) -> etree._Element:
    """Figure out where in the tree the signed data block is hiding."""
    for name in ("provenance", "env"):
        candidate = root.find(_me(name))
        if candidate is not None and candidate.find(_me("data")) is not None:
            return candidate
    if root.find(_me("data")) is not None:
        return root
    raise MalformedEnvelope("Unable to locate salmon data in xml")


async def decode_legacy(
    document: Union[str, bytes], private_key: Optional[crypto.KeyLike], resolver: KeyResolver
) -> DecodedMessage:
    """Open a legacy-format envelope (public header or encrypted header)."""
    root = parse_xml(document)
    author, inner_key, inner_iv = _legacy_header(root, private_key)
    envelope = envelope_from_element(_legacy_base(root))

    data = _decode_data(envelope)
    if inner_key is None:
        plaintext = data
    else:
        plaintext = crypto.aes_decrypt(inner_key, inner_iv or b"", crypto.b64_decode_lenient(data))

    author = normalize_handle(author)
    if not author:
        raise MalformedEnvelope("Could not retrieve author URI")

    key = await resolver.resolve_public_key(author)
    _verify(envelope, author, key)
    logger.debug("Legacy message verified.")

    try:
        message = plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise MalformedEnvelope("Envelope payload is not UTF-8")
    return DecodedMessage(message=message, author=author, key=key)


async def verify_magic_envelope(document: Union[str, bytes], resolver: KeyResolver) -> DecodedMessage:
    """Verify a public envelope served by a fetch endpoint; the author is the verified signer."""
    envelope = parse_magic_envelope(document)
    author = _author_from_key_id(envelope)
    key = await resolver.resolve_public_key(author)
    _verify(envelope, author, key)

    try:
        message = _decode_data(envelope).decode("utf-8")
    except UnicodeDecodeError:
        raise MalformedEnvelope("Envelope payload is not UTF-8")
    return DecodedMessage(message=message, author=author, key=key)
