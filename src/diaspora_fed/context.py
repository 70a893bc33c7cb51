"""
Importer context — who is receiving or sending, threaded through every call.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImporterContext(BaseModel):
    uid: int = 0                      # 0 is the public (system) importer
    handle: str = ""
    private_key: Optional[str] = None  # PEM
    base_url: str = ""
    now: datetime = Field(default_factory=utcnow)

    @property
    def is_public(self) -> bool:
        return self.uid == 0

    def host(self) -> str:
        """The host part of base_url, used to build handles."""
        return self.base_url.split("://", 1)[-1].rstrip("/")

    def my_handle(self, nick: str) -> str:
        return f"{nick}@{self.host()}"
