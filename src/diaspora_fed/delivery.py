"""
Outbound delivery — serialize, envelope and transmit messages to peers.

A single attempt moves Built → Transmitting → Delivered | Queued | failed.
A queued job only leaves the queue when an external worker calls
`transmit(..., queue_run=True)` again; nothing here retries on its own.
"""

import logging
import uuid
from typing import Any, Mapping, Optional

from lxml import etree

from diaspora_fed import crypto
from diaspora_fed.config import FederationConfig
from diaspora_fed.context import ImporterContext
from diaspora_fed.envelope import build_message
from diaspora_fed.errors import CryptoFailure, NoDestination, TransportFailure
from diaspora_fed.identity import IdentityResolver
from diaspora_fed.idempotency import NotificationCache
from diaspora_fed.models.contact import NETWORK_DIASPORA, Contact, ContactType
from diaspora_fed.models.delivery import DeliveryJob, DeliveryOutcome, DeliveryResult
from diaspora_fed.models.message import MessageType
from diaspora_fed.normalizer import sign_fields
from diaspora_fed.storage import DeliveryQueue, IdentityStore
from diaspora_fed.transport.http import HttpClient

CONTENT_TYPE_PUBLIC = "application/magic-envelope+xml"
CONTENT_TYPE_PRIVATE = "application/json"

logger = logging.getLogger(__name__)


def create_guid() -> str:
    return uuid.uuid4().hex


def _append(parent: etree._Element, name: str, value: Any) -> None:
    if isinstance(value, Mapping):
        child = etree.SubElement(parent, name)
        for key, nested in value.items():
            _append(child, key, nested)
    elif isinstance(value, (list, tuple)):
        for entry in value:
            _append(parent, name, entry)
    else:
        child = etree.SubElement(parent, name)
        if isinstance(value, bool):
            child.text = "true" if value else "false"
        elif value is not None:
            child.text = str(value)


def build_post_xml(type_: str, message: Mapping[str, Any]) -> str:
    """Serialize a field mapping into the modern per-type XML schema."""
    root = etree.Element(str(type_))
    for name, value in message.items():
        _append(root, name, value)
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8").decode("utf-8")


class Delivery:
    def __init__(
        self,
        config: FederationConfig,
        resolver: IdentityResolver,
        identity: IdentityStore,
        queue: DeliveryQueue,
        http: HttpClient,
        notifications: NotificationCache,
    ):
        self._config = config
        self._resolver = resolver
        self._identity = identity
        self._queue = queue
        self._http = http
        self._notifications = notifications

    # -- transmission ----------------------------------------------------

    async def destination(self, contact: Contact, public_batch: bool) -> str:
        dest_url = contact.batch if public_batch else contact.notify

        # Prefer the federated record, the local row may hold stale endpoints
        if contact.addr:
            fcontact = await self._resolver.person_by_handle(contact.addr)
            if fcontact is not None:
                dest_url = (fcontact.batch if public_batch else fcontact.notify) or dest_url

        if not dest_url:
            raise NoDestination(contact.id)
        return dest_url

    async def transmit(
        self,
        contact: Contact,
        envelope: str,
        public_batch: bool,
        queue_run: bool = False,
        guid: str = "",
        no_queue: bool = False,
    ) -> DeliveryResult:
        if not self._config.enabled:
            return DeliveryResult(status_code=200, outcome=DeliveryOutcome.SKIPPED)

        try:
            dest_url = await self.destination(contact, public_batch)
        except NoDestination:
            logger.info(f"no url for contact: {contact.id} batch mode = {public_batch}")
            return DeliveryResult(status_code=0, outcome=DeliveryOutcome.NO_DESTINATION)

        logid = uuid.uuid4().hex[:4]
        logger.debug(f"transmit: {logid}-{guid} {dest_url}")

        retry_after = False
        if not queue_run and contact.id is not None and self._queue.was_recently_delayed(contact.id):
            return_code = 0
        elif self._config.test_mode:
            logger.debug("test_mode")
            return DeliveryResult(status_code=200, outcome=DeliveryOutcome.SKIPPED)
        else:
            content_type = CONTENT_TYPE_PUBLIC if public_batch else CONTENT_TYPE_PRIVATE
            try:
                resp = await self._http.post(f"{dest_url}/", envelope, content_type)
                return_code = resp.status_code
                retry_after = "retry-after" in resp.headers
            except TransportFailure as e:
                logger.info(str(e))
                return_code = 0

        logger.info(f"transmit: {logid}-{guid} to {dest_url} returns: {return_code}")

        if not return_code or (return_code == 503 and retry_after):
            outcome = DeliveryOutcome.TRANSIENT_FAILURE
            if not no_queue and contact.id is not None and contact.contact_type != ContactType.RELAY:
                logger.debug("queue message")
                self._queue.enqueue_delivery(DeliveryJob(
                    contact_id=contact.id,
                    protocol=NETWORK_DIASPORA,
                    envelope=envelope,
                    public_batch=public_batch,
                    guid=guid,
                ))
                outcome = DeliveryOutcome.QUEUED
            # The message could not be delivered; the contact may be dead
            if contact.id is not None:
                self._identity.mark_contact_archived(contact.id)
        elif 200 <= return_code <= 299:
            outcome = DeliveryOutcome.DELIVERED
            if contact.id is not None:
                self._identity.mark_contact_unarchived(contact.id)
        else:
            outcome = DeliveryOutcome.PERMANENT_FAILURE

        return DeliveryResult(status_code=return_code or -1, outcome=outcome)

    async def _recipient_key(self, contact: Contact) -> Optional[str]:
        if contact.public_key:
            return contact.public_key
        if contact.addr:
            person = await self._resolver.person_by_handle(contact.addr)
            if person is not None and person.public_key:
                return person.public_key
        return None

    async def build_and_transmit(
        self,
        owner: ImporterContext,
        contact: Contact,
        type_: str,
        message: Mapping[str, Any],
        public_batch: bool = False,
        guid: str = "",
        spool: bool = False,
    ) -> DeliveryResult:
        msg = build_post_xml(type_, message)
        logger.debug(f"send guid {guid}")

        if not owner.private_key:
            logger.info(f"No private key for {owner.handle}, cannot sign {type_}")
            return DeliveryResult(status_code=0, outcome=DeliveryOutcome.PERMANENT_FAILURE)

        recipient_key = None if public_batch else await self._recipient_key(contact)
        try:
            envelope = build_message(msg, owner.handle, owner.private_key, recipient_key, public_batch)
        except CryptoFailure as e:
            logger.info(f"pubkey missing: contact id: {contact.id} ({e})")
            return DeliveryResult(status_code=0, outcome=DeliveryOutcome.PERMANENT_FAILURE)

        if spool:
            if contact.id is None:
                return DeliveryResult(status_code=0, outcome=DeliveryOutcome.NO_DESTINATION)
            self._queue.enqueue_delivery(DeliveryJob(
                contact_id=contact.id, envelope=envelope, public_batch=public_batch, guid=guid,
            ))
            return DeliveryResult(status_code=0, outcome=DeliveryOutcome.QUEUED)

        result = await self.transmit(contact, envelope, public_batch, guid=guid)
        logger.debug(f"guid: {guid} result {result.status_code}")
        return result

    # -- message builders ------------------------------------------------

    async def send_participation(self, owner: ImporterContext, contact: Contact, item_guid: str,
                                 private: bool = False) -> Optional[DeliveryResult]:
        """Ask the thread owner's server for further updates. Sent at most once per quarter hour."""
        if private:
            return None
        # It doesn't matter what is stored, only that repeated notifications are suppressed
        if not self._notifications.once("sendParticipation", item_guid):
            return None

        message = {
            "author": owner.handle,
            "guid": create_guid(),
            "parent_type": "Post",
            "parent_guid": item_guid,
        }
        logger.debug(f"Send participation for {item_guid} by {owner.handle}")
        return await self.build_and_transmit(owner, contact, MessageType.PARTICIPATION.value, message)

    async def send_share(self, owner: ImporterContext, contact: Contact) -> DeliveryResult:
        message = {"author": owner.handle, "recipient": contact.addr, "following": "true", "sharing": "true"}
        return await self.build_and_transmit(owner, contact, MessageType.CONTACT.value, message)

    async def send_unshare(self, owner: ImporterContext, contact: Contact) -> DeliveryResult:
        message = {"author": owner.handle, "recipient": contact.addr, "following": "false", "sharing": "false"}
        return await self.build_and_transmit(owner, contact, MessageType.CONTACT.value, message)

    async def send_status(self, owner: ImporterContext, contact: Contact, message: Mapping[str, Any],
                          public_batch: bool = False, type_: str = MessageType.STATUS_MESSAGE.value) -> DeliveryResult:
        """Send a status message or reshare built by the caller."""
        return await self.build_and_transmit(owner, contact, type_, message, public_batch, message.get("guid", ""))

    def construct_comment(self, owner: ImporterContext, guid: str, parent_guid: str, text: str,
                          created_at: str, thread_parent_guid: Optional[str] = None) -> dict[str, Any]:
        def build() -> dict[str, Any]:
            comment: dict[str, Any] = {
                "author": owner.handle,
                "guid": guid,
                "created_at": created_at,
                "parent_guid": parent_guid,
                "text": text,
                "author_signature": "",
            }
            # Only threaded comments name their direct parent
            if thread_parent_guid:
                comment["thread_parent_guid"] = thread_parent_guid
            return comment

        comment = self._notifications.memoize("constructComment", guid, build)
        return dict(comment or {})

    @staticmethod
    def construct_like(owner: ImporterContext, guid: str, parent_guid: str, parent_type: str = "Post",
                       positive: Optional[bool] = True) -> dict[str, Any]:
        return {
            "author": owner.handle,
            "guid": guid,
            "parent_guid": parent_guid,
            "parent_type": parent_type,
            "positive": None if positive is None else ("true" if positive else "false"),
            "author_signature": "",
        }

    async def send_followup(self, owner: ImporterContext, contact: Contact, type_: str,
                            message: Mapping[str, Any], public_batch: bool = False) -> DeliveryResult:
        """Send our own comment or like, signed by its author."""
        message = dict(message)
        message["author_signature"] = sign_fields(message, owner.private_key)  # type: ignore[arg-type]
        return await self.build_and_transmit(owner, contact, type_, message, public_batch, message.get("guid", ""))

    async def send_relay(self, owner: ImporterContext, contact: Contact, type_: str,
                         message: Mapping[str, Any], public_batch: bool = False) -> DeliveryResult:
        """Relay someone else's comment or like as thread owner, adding our parent_author_signature."""
        relayed: dict[str, Any] = {}
        for field, value in message.items():
            # Signatures stored by older versions still use the legacy names
            if field == "diaspora_handle":
                field = "author"
            elif field == "target_type":
                field = "parent_type"
            relayed[field] = value
        relayed["parent_author_signature"] = sign_fields(relayed, owner.private_key)  # type: ignore[arg-type]
        logger.debug(f"Relayed {type_} {relayed.get('guid')}")
        return await self.build_and_transmit(owner, contact, type_, relayed, public_batch, relayed.get("guid", ""))

    async def send_retraction(self, owner: ImporterContext, contact: Contact, author: str, target_guid: str,
                              target_type: str, public_batch: bool = False) -> DeliveryResult:
        message = {"author": author, "target_guid": target_guid, "target_type": target_type}
        return await self.build_and_transmit(
            owner, contact, MessageType.RETRACTION.value, message, public_batch, target_guid,
        )

    async def send_mail(self, owner: ImporterContext, contact: Contact, conversation: Mapping[str, Any],
                        message: Mapping[str, Any], reply: bool) -> DeliveryResult:
        """A reply goes out as `message`; the first mail of a thread as `conversation` embedding it."""
        msg = {"author": owner.handle, **message}
        if reply:
            return await self.build_and_transmit(owner, contact, MessageType.MESSAGE.value, msg, False, msg.get("guid", ""))
        conv = {"author": owner.handle, **conversation, "message": msg}
        return await self.build_and_transmit(owner, contact, MessageType.CONVERSATION.value, conv, False, msg.get("guid", ""))

    async def send_account_migration(self, owner: ImporterContext, contact: Contact, old_handle: str,
                                     profile: Mapping[str, Any]) -> DeliveryResult:
        new_handle = profile.get("author", owner.handle)
        signed = f"AccountMigration:{old_handle}:{new_handle}"
        signature = crypto.b64_encode(crypto.rsa_sign(signed, owner.private_key, "sha256"))  # type: ignore[arg-type]
        message = {"author": old_handle, "profile": dict(profile), "signature": signature}
        return await self.build_and_transmit(owner, contact, MessageType.ACCOUNT_MIGRATION.value, message)

    async def send_profile(self, owner: ImporterContext, contacts: list[Contact],
                           profile: Mapping[str, Any]) -> list[DeliveryResult]:
        message = {"author": owner.handle, **profile}
        results = []
        for contact in contacts:
            results.append(await self.build_and_transmit(owner, contact, MessageType.PROFILE.value, message))
        return results
