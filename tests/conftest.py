"""Shared fixtures: key pairs, a static resolver and builders for old-format envelopes."""

import json

import pytest
from lxml import etree

from diaspora_fed import crypto
from diaspora_fed.identity import StaticKeyResolver
from diaspora_fed.models.envelope import (
    ALGORITHM,
    DATA_TYPE,
    ENCODING,
    NAMESPACE_LEGACY,
    NAMESPACE_MAGIC_ENV,
    Envelope,
)

ALICE = "alice@example.com"
BOB = "bob@example.net"


class KeyPair:
    def __init__(self, bits: int = 2048):
        key = crypto.generate_private_key(bits)
        self.private_pem = crypto.export_private_pem(key)
        self.public_pem = crypto.export_public_pem(key)


@pytest.fixture(scope="session")
def alice_keys() -> KeyPair:
    return KeyPair()


@pytest.fixture(scope="session")
def bob_keys() -> KeyPair:
    return KeyPair()


@pytest.fixture
def resolver(alice_keys, bob_keys) -> StaticKeyResolver:
    return StaticKeyResolver({ALICE: alice_keys.public_pem, BOB: bob_keys.public_pem})


def _signed_env(parent: etree._Element, data: str, private_pem: str) -> None:
    envelope = Envelope(data=data, data_type=DATA_TYPE, encoding=ENCODING, algorithm=ALGORITHM)
    signature = crypto.b64url_encode(crypto.rsa_sign(envelope.signable, private_pem))
    env = etree.SubElement(parent, f"{{{NAMESPACE_MAGIC_ENV}}}env")
    etree.SubElement(env, f"{{{NAMESPACE_MAGIC_ENV}}}data", type=DATA_TYPE).text = data
    etree.SubElement(env, f"{{{NAMESPACE_MAGIC_ENV}}}encoding").text = ENCODING
    etree.SubElement(env, f"{{{NAMESPACE_MAGIC_ENV}}}alg").text = ALGORITHM
    etree.SubElement(env, f"{{{NAMESPACE_MAGIC_ENV}}}sig").text = signature


def _legacy_root() -> etree._Element:
    return etree.Element(f"{{{NAMESPACE_LEGACY}}}diaspora", nsmap={None: NAMESPACE_LEGACY, "me": NAMESPACE_MAGIC_ENV})


def build_legacy_public(payload: str, author: str, private_pem: str) -> str:
    root = _legacy_root()
    header = etree.SubElement(root, f"{{{NAMESPACE_LEGACY}}}header")
    etree.SubElement(header, f"{{{NAMESPACE_LEGACY}}}author_id").text = author
    _signed_env(root, crypto.b64url_encode(payload), private_pem)
    return etree.tostring(root).decode("utf-8")


def build_legacy_private(payload: str, author: str, private_pem: str, recipient_public_pem: str) -> str:
    inner_key, inner_iv = crypto.random_aes_material()
    outer_key, outer_iv = crypto.random_aes_material()

    decrypted_header = (
        "<decrypted_header>"
        f"<iv>{crypto.b64_encode(inner_iv)}</iv>"
        f"<aes_key>{crypto.b64_encode(inner_key)}</aes_key>"
        f"<author_id>{author}</author_id>"
        "</decrypted_header>"
    )
    bundle = json.dumps({"iv": crypto.b64_encode(outer_iv), "key": crypto.b64_encode(outer_key)})
    outer = json.dumps({
        "aes_key": crypto.b64_encode(crypto.rsa_encrypt(recipient_public_pem, bundle.encode("utf-8"))),
        "ciphertext": crypto.b64_encode(crypto.aes_encrypt(outer_key, outer_iv, decrypted_header)),
    })

    root = _legacy_root()
    etree.SubElement(root, f"{{{NAMESPACE_LEGACY}}}encrypted_header").text = crypto.b64_encode(outer)
    body = crypto.b64_encode(crypto.aes_encrypt(inner_key, inner_iv, payload))
    _signed_env(root, crypto.b64url_encode(body), private_pem)
    return etree.tostring(root).decode("utf-8")


def status_message_xml(author: str = ALICE, text: str = "hello", guid: str = "g1", public: bool = False) -> str:
    return (
        "<status_message>"
        f"<author>{author}</author>"
        f"<guid>{guid}</guid>"
        "<created_at>2024-05-01T10:00:00Z</created_at>"
        f"<public>{'true' if public else 'false'}</public>"
        f"<text>{text}</text>"
        "</status_message>"
    )
