"""
Engine configuration — passed explicitly into every entry point.
"""

import json
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, field_validator

CONFIG_FILE = Path.home() / ".dfed" / "config.json"


class FederationConfig(BaseModel):
    enabled: bool = True           # global kill switch for inbound dispatch and transmit
    test_mode: bool = False        # transmit becomes a no-op success
    relay_servers: list[str] = []
    relay_directly: bool = False   # also serve relays that subscribed to us directly
    allow_unsigned_fetch: bool = False
    http_timeout: float = 30.0

    @field_validator("relay_servers", mode="before")
    @classmethod
    def _split_servers(cls, value):
        # Accept the comma separated form used by older installations
        if isinstance(value, str):
            return [server.strip() for server in value.split(",") if server.strip()]
        return value

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "FederationConfig":
        """Read a JSON config file; a missing or unreadable file yields the defaults."""
        try:
            data = json.loads(Path(path or CONFIG_FILE).read_text())
        except (FileNotFoundError, json.JSONDecodeError):
            data = {}
        return cls.model_validate(data)
