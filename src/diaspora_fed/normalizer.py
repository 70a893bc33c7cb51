"""
Message normalizer — turns a verified payload into a canonical NormalizedMessage.

Legacy payloads look like ``<XML><post><status_message>...</status_message></post></XML>``
and use older field names; modern payloads have the type as their root tag.
Both end up as the same ordered field list. The order matters: the values,
joined with ``;`` and without the signature fields, are the signed data of
relayable messages (comments and likes).
"""

import logging
from typing import Any, Mapping, Optional, Sequence, Union

from lxml import etree

from diaspora_fed import crypto
from diaspora_fed.envelope import parse_xml
from diaspora_fed.errors import (
    CryptoFailure,
    KeyResolutionFailure,
    MalformedEnvelope,
    SignatureVerificationFailed,
    SpoofedAuthor,
    UnsupportedMessageType,
)
from diaspora_fed.identity import KeyResolver, normalize_handle
from diaspora_fed.models.envelope import DecodedMessage
from diaspora_fed.models.message import (
    SIGNATURE_FIELDS,
    TYPE_ALIASES,
    EmbeddedObject,
    MessageType,
    NormalizedMessage,
)

FieldSet = Union[Mapping[str, Any], Sequence[tuple[str, Any]]]

logger = logging.getLogger(__name__)

# Renames applied to every legacy type
LEGACY_RENAMES = {
    "diaspora_handle": "author",
    "participant_handles": "participants",
    "sender_handle": "author",
    "recipient_handle": "recipient",
    "root_diaspora_id": "root_author",
}

# Renames that only apply to one canonical type
LEGACY_TYPE_RENAMES = {
    MessageType.LIKE: {"target_type": "parent_type"},
    MessageType.PARTICIPATION: {"target_type": "parent_type"},
    MessageType.STATUS_MESSAGE: {"raw_message": "text"},
    MessageType.RETRACTION: {"post_guid": "target_guid", "type": "target_type"},
}

# Types whose declared author must be the envelope signer
AUTHOR_MUST_MATCH = {MessageType.STATUS_MESSAGE, MessageType.RESHARE, MessageType.PROFILE}

# Types that carry their own author signature and may be relayed
RELAYABLE = {MessageType.COMMENT, MessageType.LIKE}


def canonical_type(name: str) -> MessageType:
    if name in TYPE_ALIASES:
        return TYPE_ALIASES[name]
    try:
        return MessageType(name)
    except ValueError:
        raise UnsupportedMessageType(name)


def legacy_field_name(type_: Optional[MessageType], name: str) -> str:
    name = LEGACY_RENAMES.get(name, name)
    if type_ is not None:
        name = LEGACY_TYPE_RENAMES.get(type_, {}).get(name, name)
    return name


def _local(element: etree._Element) -> str:
    return etree.QName(element).localname


def _value(element: etree._Element) -> str:
    return element.text or ""


def _embedded(element: etree._Element, legacy: bool) -> EmbeddedObject:
    name = _local(element)
    try:
        nested_type: Optional[MessageType] = canonical_type(name)
    except UnsupportedMessageType:
        nested_type = None
    obj = EmbeddedObject(name=name)
    for child in element:
        if not isinstance(child.tag, str):
            continue
        field = legacy_field_name(nested_type, _local(child)) if legacy else _local(child)
        if len(child):
            obj.embedded.append(_embedded(child, legacy))
        else:
            obj.fields.append((field, _value(child)))
    return obj


def split_payload(message: str) -> tuple[etree._Element, bool]:
    """Returns the typed element and whether the payload used the legacy layout."""
    root = parse_xml(message)
    if _local(root) == "XML":
        post = root.find("post")
        typed = [child for child in (post if post is not None else []) if isinstance(child.tag, str)]
        if len(typed) != 1:
            raise MalformedEnvelope("Legacy payload must hold exactly one typed element")
        return typed[0], True
    return root, False


def parse_fields(message: str, sender: Optional[str] = None) -> NormalizedMessage:
    """Structural half of normalization; no signature checks."""
    element, legacy = split_payload(message)
    orig_type = _local(element)
    type_ = canonical_type(orig_type)

    logger.debug(f"Got message type {orig_type}")

    normalized = NormalizedMessage(type=type_, sender=sender)
    signed_parts: list[str] = []

    for child in element:
        if not isinstance(child.tag, str):
            continue
        field = _local(child)
        if legacy:
            field = legacy_field_name(type_, field)
        value = _value(child)

        if field == "author_signature" and value:
            normalized.author_signature = _decode_signature(value)
        elif field == "parent_author_signature" and value:
            normalized.parent_author_signature = _decode_signature(value)
        elif field not in SIGNATURE_FIELDS:
            signed_parts.append(value)

        if field in ("parent_author_signature", "target_author_signature") and orig_type != "relayable_retraction":
            continue
        if field == "author_signature":
            continue
        if len(child):
            normalized.embedded.append(_embedded(child, legacy))
        else:
            normalized.fields.append((field, value))

    normalized.signed_data = ";".join(signed_parts)
    return normalized


def _decode_signature(value: str) -> bytes:
    try:
        return crypto.b64_decode_lenient(value)
    except CryptoFailure:
        raise SignatureVerificationFailed("Signature is not base64")


async def _key_or_reject(resolver: KeyResolver, handle: str, role: str) -> str:
    try:
        return await resolver.resolve_public_key(handle)
    except KeyResolutionFailure:
        logger.info(f"No key found for {role} {handle}")
        raise


async def normalize(decoded: DecodedMessage, resolver: KeyResolver) -> NormalizedMessage:
    """Parse, rename and verify the per-message signatures of one decoded payload."""
    message = parse_fields(decoded.message, sender=decoded.author)
    author = normalize_handle(message.author or "")

    if message.type in AUTHOR_MUST_MATCH and author != normalize_handle(decoded.author):
        logger.info("Message handle is not the same as envelope sender. Quitting this message.")
        raise SpoofedAuthor(author, decoded.author)

    if message.type not in RELAYABLE:
        return message

    if message.author_signature is None:
        logger.info(f"No author signature for type {message.type.value}")
        raise SignatureVerificationFailed(f"No author signature for type {message.type.value}")

    if message.parent_author_signature is not None:
        key = await _key_or_reject(resolver, decoded.author, "parent author")
        if not crypto.rsa_verify(message.signed_data, message.parent_author_signature, key, "sha256"):
            logger.info(f"No valid parent author signature for {decoded.author} in type {message.type.value}")
            raise SignatureVerificationFailed(f"Invalid parent author signature from {decoded.author}")

    if not author:
        raise SignatureVerificationFailed(f"{message.type.value} has no author")
    key = await _key_or_reject(resolver, author, "author")
    if not crypto.rsa_verify(message.signed_data, message.author_signature, key, "sha256"):
        logger.info(f"No valid author signature for {author} in type {message.type.value}")
        raise SignatureVerificationFailed(f"Invalid author signature from {author}")

    return message


def signed_text(fields: FieldSet) -> str:
    pairs = fields.items() if isinstance(fields, Mapping) else fields
    return ";".join(
        "" if value is None else str(value)
        for name, value in pairs
        if name not in ("author_signature", "parent_author_signature")
    )


def sign_fields(fields: FieldSet, private_key: crypto.KeyLike) -> str:
    """Base64 signature over the `;`-joined field values, signature fields excluded."""
    return crypto.b64_encode(crypto.rsa_sign(signed_text(fields), private_key, "sha256"))
