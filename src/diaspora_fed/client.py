"""
Federation / AsyncFederation — the engine facade.

Wires the codec, normalizer, dispatcher, identity resolver and delivery
engine around the collaborators of the host application. Inbound entry
points never raise for protocol failures; they return an InboundResult the
transport boundary turns into an HTTP status.
"""

import asyncio
import logging
from typing import Any, Awaitable, Mapping, Optional, Union

import httpx

from diaspora_fed.config import FederationConfig
from diaspora_fed.context import ImporterContext
from diaspora_fed.delivery import Delivery
from diaspora_fed.dispatcher import Dispatcher, Handler
from diaspora_fed.envelope import decode_legacy, decode_raw
from diaspora_fed.errors import FederationError
from diaspora_fed.fetch import PostFetcher, server_root
from diaspora_fed.idempotency import MessageGuard, NamedLocks, NotificationCache
from diaspora_fed.identity import IdentityResolver, KeyResolver, Probe, WebFingerProbe
from diaspora_fed.models.contact import Contact
from diaspora_fed.models.delivery import DeliveryResult
from diaspora_fed.models.envelope import DecodedMessage
from diaspora_fed.models.message import InboundResult, MessageType
from diaspora_fed.normalizer import normalize
from diaspora_fed.relay import DeliveryTargets
from diaspora_fed.storage import Cache, DeliveryQueue, MemoryCache, MemoryQueue, MemoryStore
from diaspora_fed.transport.http import HttpClient

logger = logging.getLogger(__name__)


class AsyncFederation:
    """Async federation engine (primary)."""

    def __init__(
        self,
        config: Optional[FederationConfig] = None,
        store: Optional[MemoryStore] = None,
        queue: Optional[DeliveryQueue] = None,
        cache: Optional[Cache] = None,
        http: Optional[HttpClient] = None,
        handlers: Optional[Mapping[MessageType, Handler]] = None,
        probe: Optional[Probe] = None,
        key_resolver: Optional[KeyResolver] = None,
        base_url: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        locks: Optional[NamedLocks] = None,
    ):
        self.config = config or FederationConfig()
        self.store = store if store is not None else MemoryStore()
        self.queue = queue if queue is not None else MemoryQueue()
        self.http = http or HttpClient(timeout=self.config.http_timeout, transport=transport)
        self._base_url = base_url

        self.identity = IdentityResolver(self.store, probe if probe is not None else WebFingerProbe(self.http))
        self.keys: KeyResolver = key_resolver or self.identity
        self.notifications = NotificationCache(cache if cache is not None else MemoryCache())
        self.guard = MessageGuard(self.store, locks)
        self.dispatcher = Dispatcher(handlers)
        self.targets = DeliveryTargets(self.config, self.store, self.store, base_url)
        self.delivery = Delivery(self.config, self.identity, self.store, self.queue, self.http, self.notifications)
        self.fetcher = PostFetcher(self.config, self.http, self.keys)

    def register(self, type_: MessageType, handler: Handler) -> None:
        self.dispatcher.register(type_, handler)

    # -- inbound ---------------------------------------------------------

    async def _process(
        self, context: ImporterContext, decoding: Awaitable[DecodedMessage], private: bool
    ) -> InboundResult:
        type_ = None
        try:
            decoded = await decoding
            message = await normalize(decoded, self.keys)
            type_ = message.type
            result = await self.dispatcher.dispatch(context, message, private)
        except FederationError as e:
            logger.info(f"Inbound message rejected ({e.code}): {e}")
            return InboundResult(ok=False, type=type_, error_code=e.code, error=str(e))
        return InboundResult(ok=True, type=type_, result=result)

    def _public_context(self) -> ImporterContext:
        return ImporterContext(uid=0, base_url=self._base_url)

    async def receive_public(self, raw: Union[str, bytes]) -> InboundResult:
        """Handle a delivery to the public batch endpoint."""
        if not self.config.enabled:
            return InboundResult(ok=False, error_code="disabled", error="Federation is disabled")
        return await self._process(self._public_context(), decode_raw(raw, None, self.keys), private=False)

    async def receive_private(self, context: ImporterContext, raw: Union[str, bytes]) -> InboundResult:
        """Handle a delivery to a user's notify endpoint."""
        if not self.config.enabled:
            return InboundResult(ok=False, error_code="disabled", error="Federation is disabled")
        return await self._process(context, decode_raw(raw, context.private_key, self.keys), private=True)

    async def receive_legacy(self, context: ImporterContext, xml: Union[str, bytes]) -> InboundResult:
        """Handle an old-format delivery; the endpoint it arrived at decides the channel."""
        if not self.config.enabled:
            return InboundResult(ok=False, error_code="disabled", error="Federation is disabled")
        decoding = decode_legacy(xml, context.private_key, self.keys)
        return await self._process(context, decoding, private=not context.is_public)

    async def store_by_guid(self, guid: str, server: str) -> Optional[InboundResult]:
        """Fetch a post from its origin server and dispatch it publicly; None when it could not be fetched."""
        root = server_root(server)
        if root is None:
            return None

        logger.debug(f"Trying to fetch item {guid} from {root}")
        decoded = await self.fetcher.fetch_message(guid, root)
        if decoded is None:
            return None

        logger.debug(f"Successfully fetched item {guid} from {root}")
        return await self._process(self._public_context(), _ready(decoded), private=False)

    # -- outbound --------------------------------------------------------

    def relay_list(self, item_id: int, contacts: Optional[list[Contact]] = None) -> list[Contact]:
        return self.targets.relay_list(item_id, contacts)

    def participants_for_thread(self, thread_id: int, contacts: Optional[list[Contact]] = None) -> list[Contact]:
        return self.targets.participants_for_thread(thread_id, contacts)

    async def transmit(self, contact: Contact, envelope: str, public_batch: bool, **kwargs: Any) -> DeliveryResult:
        return await self.delivery.transmit(contact, envelope, public_batch, **kwargs)

    async def build_and_transmit(
        self, owner: ImporterContext, contact: Contact, type_: str, message: Mapping[str, Any], **kwargs: Any
    ) -> DeliveryResult:
        return await self.delivery.build_and_transmit(owner, contact, type_, message, **kwargs)

    async def close(self) -> None:
        await self.http.close()


async def _ready(value: DecodedMessage) -> DecodedMessage:
    return value


class Federation:
    """Sync wrapper around AsyncFederation. Runs the event loop internally."""

    def __init__(self, **kwargs: Any):
        self._async = AsyncFederation(**kwargs)
        self._loop = asyncio.new_event_loop()

    def _run(self, coro: Any) -> Any:
        return self._loop.run_until_complete(coro)

    @property
    def config(self) -> FederationConfig:
        return self._async.config

    @property
    def store(self) -> MemoryStore:
        return self._async.store

    @property
    def delivery(self) -> Delivery:
        return self._async.delivery

    @property
    def targets(self) -> DeliveryTargets:
        return self._async.targets

    def register(self, type_: MessageType, handler: Handler) -> None:
        self._async.register(type_, handler)

    def receive_public(self, raw: Union[str, bytes]) -> InboundResult:
        return self._run(self._async.receive_public(raw))

    def receive_private(self, context: ImporterContext, raw: Union[str, bytes]) -> InboundResult:
        return self._run(self._async.receive_private(context, raw))

    def receive_legacy(self, context: ImporterContext, xml: Union[str, bytes]) -> InboundResult:
        return self._run(self._async.receive_legacy(context, xml))

    def store_by_guid(self, guid: str, server: str) -> Optional[InboundResult]:
        return self._run(self._async.store_by_guid(guid, server))

    def relay_list(self, item_id: int, contacts: Optional[list[Contact]] = None) -> list[Contact]:
        return self._async.relay_list(item_id, contacts)

    def participants_for_thread(self, thread_id: int, contacts: Optional[list[Contact]] = None) -> list[Contact]:
        return self._async.participants_for_thread(thread_id, contacts)

    def transmit(self, contact: Contact, envelope: str, public_batch: bool, **kwargs: Any) -> DeliveryResult:
        return self._run(self._async.transmit(contact, envelope, public_batch, **kwargs))

    def build_and_transmit(
        self, owner: ImporterContext, contact: Contact, type_: str, message: Mapping[str, Any], **kwargs: Any
    ) -> DeliveryResult:
        return self._run(self._async.build_and_transmit(owner, contact, type_, message, **kwargs))

    def close(self) -> None:
        self._run(self._async.close())
        self._loop.close()
