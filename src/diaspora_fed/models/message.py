"""
Normalized message models — canonical type tags and ordered field sets.
"""

from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field


class MessageType(str, Enum):
    ACCOUNT_MIGRATION = "account_migration"
    ACCOUNT_DELETION = "account_deletion"
    COMMENT = "comment"
    CONTACT = "contact"
    CONVERSATION = "conversation"
    LIKE = "like"
    MESSAGE = "message"
    PARTICIPATION = "participation"
    PHOTO = "photo"
    POLL_PARTICIPATION = "poll_participation"
    PROFILE = "profile"
    RESHARE = "reshare"
    RETRACTION = "retraction"
    STATUS_MESSAGE = "status_message"


# Legacy names that collapse into a canonical tag
TYPE_ALIASES = {
    "signed_retraction": MessageType.RETRACTION,
    "relayable_retraction": MessageType.RETRACTION,
    "request": MessageType.CONTACT,
}

SIGNATURE_FIELDS = ("author_signature", "parent_author_signature", "target_author_signature")


class EmbeddedObject(BaseModel):
    """A nested element (the message of a conversation, the profile of a migration)."""
    name: str
    fields: list[tuple[str, str]] = []
    embedded: list["EmbeddedObject"] = []

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        for key, value in self.fields:
            if key == name:
                return value
        return default

    def as_dict(self) -> dict[str, str]:
        return dict(self.fields)


EmbeddedObject.model_rebuild()


class NormalizedMessage(BaseModel):
    type: MessageType
    fields: list[tuple[str, str]] = []
    embedded: list[EmbeddedObject] = []
    author_signature: Optional[bytes] = None
    parent_author_signature: Optional[bytes] = None
    signed_data: str = ""
    sender: Optional[str] = None  # envelope signer; differs from `author` for relayed content

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        for key, value in self.fields:
            if key == name:
                return value
        return default

    def as_dict(self) -> dict[str, str]:
        return dict(self.fields)

    def children(self, name: str) -> list[EmbeddedObject]:
        return [obj for obj in self.embedded if obj.name == name]

    @property
    def author(self) -> Optional[str]:
        return self.get("author")

    @property
    def guid(self) -> Optional[str]:
        return self.get("guid")


class InboundResult(BaseModel):
    """Outcome of one inbound delivery, for the transport boundary to map to a status."""
    ok: bool
    type: Optional[MessageType] = None
    error_code: Optional[str] = None
    error: Optional[str] = None
    result: Any = Field(default=None, exclude=True)
