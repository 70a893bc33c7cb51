"""
Collaborator interfaces the engine calls out to, with in-memory implementations.

The engine never owns persistence: contacts, items, participations and the
delivery queue belong to the host application. The memory classes back the
CLI and the test-suite, and document the expected semantics.
"""

from __future__ import annotations

import itertools
import threading
import time
from typing import Any, Callable, Optional, Protocol

from diaspora_fed.models.contact import Contact, ContactType, FederatedContact, ParticipationRecord
from diaspora_fed.models.delivery import DeliveryJob


def normalise_link(url: str) -> str:
    """Scheme-less, lower-cased, without trailing slash; used to compare server URLs."""
    return url.split("://", 1)[-1].rstrip("/").lower()


class IdentityStore(Protocol):
    def get_federated_contact(self, handle: str) -> Optional[FederatedContact]: ...
    def get_federated_contact_by_id(self, fcontact_id: int) -> Optional[FederatedContact]: ...
    def upsert_federated_contact(self, record: FederatedContact) -> FederatedContact: ...
    def get_contact(self, contact_id: int) -> Optional[Contact]: ...
    def get_local_contact(self, handle: str, uid: int) -> Optional[Contact]: ...
    def get_relay_contact(self, server_url: str) -> Optional[Contact]: ...
    def upsert_relay_contact(self, server_url: str, fields: dict[str, Any]) -> Contact: ...
    def mark_contact_archived(self, contact_id: int) -> None: ...
    def mark_contact_unarchived(self, contact_id: int) -> None: ...


class ContentStore(Protocol):
    def item_exists(self, uid: int, guid: str) -> Optional[int]: ...
    def insert_item(self, fields: dict[str, Any]) -> int: ...
    def delete_item(self, uid: int, guid: str) -> bool: ...
    def distribute_to_followers(self, item_id: int, signed_payload: Optional[str] = None) -> None: ...
    def thread_tags(self, item_id: int) -> Optional[list[str]]: ...
    def participations(self, thread_id: int) -> list[ParticipationRecord]: ...
    def add_participation(self, record: ParticipationRecord) -> None: ...
    def relay_servers(self, scope: str) -> list[str]: ...
    def relay_servers_for_tags(self, tags: list[str]) -> list[str]: ...
    def mail_exists(self, uid: int, guid: str) -> bool: ...
    def insert_mail(self, fields: dict[str, Any]) -> int: ...


class DeliveryQueue(Protocol):
    def enqueue_delivery(self, job: DeliveryJob) -> None: ...
    def was_recently_delayed(self, contact_id: int) -> bool: ...


class Cache(Protocol):
    """An atomic key/value store with per-key expiry (memcache, redis, a DB table...)."""
    def get(self, key: str) -> Any: ...
    def set(self, key: str, value: Any, ttl: int) -> None: ...


class MemoryStore:
    """Thread-safe in-memory IdentityStore + ContentStore."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self.federated: dict[str, FederatedContact] = {}
        self.contacts: dict[int, Contact] = {}
        self.items: dict[int, dict[str, Any]] = {}
        self.mail: dict[int, dict[str, Any]] = {}
        self.tags: dict[int, list[str]] = {}
        self.participation: list[ParticipationRecord] = []
        self.servers: dict[str, dict[str, Any]] = {}  # url -> {"scope": "all"|"tags", "tags": [...]}
        self.distributed: list[tuple[int, Optional[str]]] = []

    def _next_id(self) -> int:
        return next(self._ids)

    # -- identity --------------------------------------------------------

    def get_federated_contact(self, handle: str) -> Optional[FederatedContact]:
        return self.federated.get(handle.lower())

    def get_federated_contact_by_id(self, fcontact_id: int) -> Optional[FederatedContact]:
        for record in self.federated.values():
            if record.id == fcontact_id:
                return record
        return None

    def upsert_federated_contact(self, record: FederatedContact) -> FederatedContact:
        with self._lock:
            key = record.handle.lower()
            existing = self.federated.get(key)
            record = record.model_copy(update={
                "handle": key,
                "id": existing.id if existing else (record.id or self._next_id()),
            })
            self.federated[key] = record
            return record

    def add_contact(self, contact: Contact) -> Contact:
        with self._lock:
            if contact.id is None:
                contact = contact.model_copy(update={"id": self._next_id()})
            self.contacts[contact.id] = contact  # type: ignore[index]
            return contact

    def get_contact(self, contact_id: int) -> Optional[Contact]:
        return self.contacts.get(contact_id)

    def get_local_contact(self, handle: str, uid: int) -> Optional[Contact]:
        handle = handle.lower()
        for contact in self.contacts.values():
            if contact.uid == uid and contact.addr.lower() == handle:
                return contact
        return None

    def get_relay_contact(self, server_url: str) -> Optional[Contact]:
        nurl = normalise_link(server_url)
        for contact in self.contacts.values():
            if contact.uid == 0 and contact.contact_type == ContactType.RELAY and normalise_link(contact.url) == nurl:
                return contact
        return None

    def upsert_relay_contact(self, server_url: str, fields: dict[str, Any]) -> Contact:
        with self._lock:
            existing = self.get_relay_contact(server_url)
            if existing:
                updated = existing.model_copy(update=fields)
            else:
                updated = Contact(**{"uid": 0, "url": server_url, "contact_type": ContactType.RELAY, **fields})
            return self.add_contact(updated)

    def _set_archived(self, contact_id: int, archived: bool) -> None:
        with self._lock:
            contact = self.contacts.get(contact_id)
            if contact is not None:
                self.contacts[contact_id] = contact.model_copy(update={"archived": archived})

    def mark_contact_archived(self, contact_id: int) -> None:
        self._set_archived(contact_id, True)

    def mark_contact_unarchived(self, contact_id: int) -> None:
        self._set_archived(contact_id, False)

    # -- content ---------------------------------------------------------

    def item_exists(self, uid: int, guid: str) -> Optional[int]:
        for item_id, item in self.items.items():
            if item.get("uid") == uid and item.get("guid") == guid:
                return item_id
        return None

    def insert_item(self, fields: dict[str, Any]) -> int:
        with self._lock:
            item_id = self._next_id()
            self.items[item_id] = dict(fields)
            return item_id

    def delete_item(self, uid: int, guid: str) -> bool:
        with self._lock:
            item_id = self.item_exists(uid, guid)
            if item_id is None:
                return False
            del self.items[item_id]
            self.participation = [p for p in self.participation if p.thread_id != item_id]
            return True

    def distribute_to_followers(self, item_id: int, signed_payload: Optional[str] = None) -> None:
        self.distributed.append((item_id, signed_payload))

    def thread_tags(self, item_id: int) -> Optional[list[str]]:
        item = self.items.get(item_id)
        if item is None:
            return None
        return self.tags.get(item.get("parent", item_id), [])

    def participations(self, thread_id: int) -> list[ParticipationRecord]:
        return [p for p in self.participation if p.thread_id == thread_id]

    def add_participation(self, record: ParticipationRecord) -> None:
        with self._lock:
            for existing in self.participation:
                if existing.thread_id == record.thread_id and existing.server == record.server:
                    return
            self.participation.append(record)

    def relay_servers(self, scope: str) -> list[str]:
        return [url for url, sub in self.servers.items() if sub.get("scope") == scope]

    def relay_servers_for_tags(self, tags: list[str]) -> list[str]:
        wanted = {tag.lower() for tag in tags}
        return [
            url for url, sub in self.servers.items()
            if sub.get("scope") == "tags" and wanted & {t.lower() for t in sub.get("tags", [])}
        ]

    def mail_exists(self, uid: int, guid: str) -> bool:
        return any(m.get("uid") == uid and m.get("guid") == guid for m in self.mail.values())

    def insert_mail(self, fields: dict[str, Any]) -> int:
        mail_id = self._next_id()
        self.mail[mail_id] = dict(fields)
        return mail_id


class MemoryQueue:
    def __init__(self) -> None:
        self.jobs: list[DeliveryJob] = []
        self.delayed: set[int] = set()

    def enqueue_delivery(self, job: DeliveryJob) -> None:
        self.jobs.append(job)

    def was_recently_delayed(self, contact_id: int) -> bool:
        return contact_id in self.delayed


class MemoryCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            expires, value = entry
            if expires <= self._clock():
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: int) -> None:
        with self._lock:
            self._data[key] = (self._clock() + ttl, value)
