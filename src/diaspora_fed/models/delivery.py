"""
Delivery models — queued jobs and per-attempt outcomes.
"""

from enum import Enum
from pydantic import BaseModel

from diaspora_fed.models.contact import NETWORK_DIASPORA


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    QUEUED = "queued"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    NO_DESTINATION = "no_destination"
    SKIPPED = "skipped"


class DeliveryJob(BaseModel):
    contact_id: int
    protocol: str = NETWORK_DIASPORA
    envelope: str
    public_batch: bool = False
    guid: str = ""


class DeliveryResult(BaseModel):
    """`status_code` is the HTTP status, 0 when there was no destination, -1 when no response arrived or the contact is delayed."""
    status_code: int
    outcome: DeliveryOutcome

    @property
    def ok(self) -> bool:
        return self.outcome in (DeliveryOutcome.DELIVERED, DeliveryOutcome.QUEUED, DeliveryOutcome.SKIPPED)
