"""
Identity resolution — handle → public key and delivery endpoints.

Lookups go through the federated-contact cache first. A record is refreshed
by a discovery probe when it is missing, older than 14 days, or has no GUID.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from diaspora_fed.crypto import b64_decode_lenient
from diaspora_fed.errors import CryptoFailure, KeyResolutionFailure
from diaspora_fed.models.contact import NETWORK_DIASPORA, FederatedContact
from diaspora_fed.storage import IdentityStore
from diaspora_fed.transport.http import HttpClient

REFRESH_AFTER = timedelta(days=14)

REL_SEED_LOCATION = "http://joindiaspora.com/seed_location"
REL_GUID = "http://joindiaspora.com/guid"
REL_HCARD = "http://microformats.org/profile/hcard"
REL_PROFILE = "http://webfinger.net/rel/profile-page"
REL_AVATAR = "http://webfinger.net/rel/avatar"
REL_PUBLIC_KEY = "diaspora-public-key"

logger = logging.getLogger(__name__)


class KeyResolver(Protocol):
    async def resolve_public_key(self, handle: str) -> str: ...


class Probe(Protocol):
    async def probe(self, handle: str) -> Optional[FederatedContact]: ...


def normalize_handle(handle: str) -> str:
    handle = handle.strip()
    if handle.startswith("acct:"):
        handle = handle[5:]
    return handle.lower()


class WebFingerProbe:
    """Discovers a Diaspora person through the host's WebFinger (JRD) document."""

    def __init__(self, http: HttpClient, scheme: str = "https"):
        self._http = http
        self._scheme = scheme

    async def probe(self, handle: str) -> Optional[FederatedContact]:
        handle = normalize_handle(handle)
        if "@" not in handle:
            return None
        host = handle.split("@", 1)[1]
        jrd = await self._http.get_json(
            f"{self._scheme}://{host}/.well-known/webfinger",
            params={"resource": f"acct:{handle}"},
        )
        if not isinstance(jrd, dict):
            logger.info(f"No webfinger document for {handle}")
            return None
        return self._from_jrd(handle, jrd)

    @staticmethod
    def _from_jrd(handle: str, jrd: dict[str, Any]) -> Optional[FederatedContact]:
        links: dict[str, dict[str, Any]] = {}
        for link in jrd.get("links", []):
            if isinstance(link, dict) and link.get("rel"):
                links.setdefault(link["rel"], link)

        seed = links.get(REL_SEED_LOCATION, {}).get("href", "")
        if not seed:
            # Not a Diaspora-speaking account
            return None
        seed = seed.rstrip("/")

        guid = links.get(REL_GUID, {}).get("href", "")
        public_key = ""
        encoded_key = links.get(REL_PUBLIC_KEY, {}).get("href", "")
        if encoded_key:
            try:
                public_key = b64_decode_lenient(encoded_key).decode("ascii")
            except (CryptoFailure, UnicodeDecodeError):
                logger.info(f"Unreadable public key in webfinger for {handle}")

        props = jrd.get("properties") or {}
        return FederatedContact(
            handle=handle,
            url=links.get(REL_PROFILE, {}).get("href", "") or f"{seed}/u/{handle.split('@', 1)[0]}",
            name=props.get("http://schema.org/name", "") or handle.split("@", 1)[0],
            nick=handle.split("@", 1)[0],
            photo=links.get(REL_AVATAR, {}).get("href", ""),
            guid=guid,
            public_key=public_key,
            batch=f"{seed}/receive/public",
            notify=f"{seed}/receive/users/{guid}" if guid else "",
            network=NETWORK_DIASPORA,
        )


class IdentityResolver:
    def __init__(
        self,
        store: IdentityStore,
        probe: Optional[Probe] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._probe = probe
        self._clock = clock

    def _is_stale(self, person: FederatedContact) -> bool:
        if not person.guid:
            return True
        if person.updated is None:
            return True
        updated = person.updated
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        return updated < self._clock() - REFRESH_AFTER

    async def person_by_handle(self, handle: str) -> Optional[FederatedContact]:
        handle = normalize_handle(handle)
        person = self._store.get_federated_contact(handle)
        if person is not None and not self._is_stale(person):
            return person

        if self._probe is None:
            return person

        logger.debug(f"create or refresh federated contact {handle}")
        probed = await self._probe.probe(handle)
        if probed is not None and probed.network == NETWORK_DIASPORA:
            probed = probed.model_copy(update={"updated": self._clock()})
            if person is not None:
                probed = probed.model_copy(update={
                    "id": person.id, "archived": person.archived, "blocked": person.blocked,
                })
            return self._store.upsert_federated_contact(probed)
        return person

    async def resolve_public_key(self, handle: str) -> str:
        logger.debug(f"Fetching key for {handle}")
        person = await self.person_by_handle(handle)
        if person is None or not person.public_key:
            raise KeyResolutionFailure(handle)
        return person.public_key


class StaticKeyResolver:
    """Fixed handle → key map, for offline tools and tests."""

    def __init__(self, keys: Optional[dict[str, str]] = None):
        self._keys = {normalize_handle(h): k for h, k in (keys or {}).items()}

    def add(self, handle: str, public_key: str) -> None:
        self._keys[normalize_handle(handle)] = public_key

    async def resolve_public_key(self, handle: str) -> str:
        try:
            return self._keys[normalize_handle(handle)]
        except KeyError:
            raise KeyResolutionFailure(handle)
