"""
Contact models — federated identities, local delivery targets, participation.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel

NETWORK_DIASPORA = "dspr"


class ContactType(str, Enum):
    PERSON = "person"
    RELAY = "relay"


class FederatedContact(BaseModel):
    """Cached discovery record for a remote handle."""
    id: Optional[int] = None
    handle: str
    url: str = ""
    name: str = ""
    nick: str = ""
    photo: str = ""
    guid: str = ""
    public_key: str = ""
    batch: str = ""
    notify: str = ""
    network: str = NETWORK_DIASPORA
    is_relay: bool = False
    archived: bool = False
    blocked: bool = False
    updated: Optional[datetime] = None


class Contact(BaseModel):
    """A local contact row, used as a delivery target."""
    id: Optional[int] = None
    uid: int = 0
    addr: str = ""
    name: str = ""
    url: str = ""
    network: str = NETWORK_DIASPORA
    batch: str = ""
    notify: str = ""
    public_key: str = ""
    contact_type: ContactType = ContactType.PERSON
    archived: bool = False
    blocked: bool = False


class ParticipationRecord(BaseModel):
    """A server that asked for follow-up updates on a thread."""
    thread_id: int
    contact_id: int
    federated_contact_id: int
    server: str
