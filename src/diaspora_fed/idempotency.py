"""
Idempotency helpers shared by inbound handlers and outbound builders.

- NotificationCache: "have we done this recently?" on top of an external
  key/value store. Two processes may both miss and both send; that race is
  accepted.
- MessageGuard: check-then-insert for private mail under a named lock, so
  concurrent deliveries of the same GUID store a single record.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, TypeVar

from diaspora_fed.storage import Cache, ContentStore

CACHE_QUARTER_HOUR = 900

T = TypeVar("T")

logger = logging.getLogger(__name__)


class NotificationCache:
    def __init__(self, cache: Cache, ttl: int = CACHE_QUARTER_HOUR, prefix: str = "diaspora"):
        self._cache = cache
        self._ttl = ttl
        self._prefix = prefix

    def key(self, operation: str, guid: str) -> str:
        return f"{self._prefix}:{operation}:{guid}"

    def once(self, operation: str, guid: str) -> bool:
        """True the first time (operation, guid) is seen within the TTL."""
        key = self.key(operation, guid)
        if self._cache.get(key) is not None:
            return False
        self._cache.set(key, guid, self._ttl)
        return True

    def memoize(self, operation: str, guid: str, factory: Callable[[], Optional[T]]) -> Optional[T]:
        key = self.key(operation, guid)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        value = factory()
        if value is not None:
            self._cache.set(key, value, self._ttl)
        return value


class NamedLocks:
    """Process-local registry of named mutexes; swap for a DB/advisory lock across hosts."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(name, threading.Lock())
        with lock:
            yield


class MessageGuard:
    def __init__(self, store: ContentStore, locks: Optional[NamedLocks] = None, lock_name: str = "mail"):
        self._store = store
        self._locks = locks or NamedLocks()
        self._lock_name = lock_name

    def insert_once(self, uid: int, guid: str, fields: dict[str, Any]) -> Optional[int]:
        """Store one private message; None when the GUID was already delivered."""
        with self._locks.hold(self._lock_name):
            if self._store.mail_exists(uid, guid):
                logger.debug(f"duplicate message {guid} already delivered.")
                return None
            return self._store.insert_mail({**fields, "uid": uid, "guid": guid})
