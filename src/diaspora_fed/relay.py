"""
Delivery target sets — relay servers and thread participants.

Both operations merge into a caller-supplied contact list and deduplicate by
batch endpoint, since several contacts on one server share one public inbox.
"""

import logging
from typing import Optional

from diaspora_fed.config import FederationConfig
from diaspora_fed.models.contact import NETWORK_DIASPORA, Contact, FederatedContact, ParticipationRecord
from diaspora_fed.storage import ContentStore, IdentityStore, normalise_link

logger = logging.getLogger(__name__)


def merge_by_batch(contacts: list[Contact], candidate: Contact) -> list[Contact]:
    if any(entry.batch == candidate.batch for entry in contacts):
        return contacts
    return [*contacts, candidate]


class DeliveryTargets:
    def __init__(self, config: FederationConfig, identity: IdentityStore, content: ContentStore, base_url: str = ""):
        self._config = config
        self._identity = identity
        self._content = content
        self._base_url = base_url

    def set_relay_contact(self, server_url: str, **network_fields) -> Contact:
        """Create or update the synthetic contact standing for a relay server."""
        fields = {
            "name": "relay",
            "url": server_url,
            "network": NETWORK_DIASPORA,
            "batch": f"{server_url.rstrip('/')}/receive/public",
            "blocked": False,
        }
        fields.update(network_fields)
        return self._identity.upsert_relay_contact(server_url, fields)

    def get_relay_contact(self, server_url: str) -> Optional[Contact]:
        """The relay contact for a server, created on first use; None if it must not be served."""
        contact = self._identity.get_relay_contact(server_url)
        if contact is None:
            return self.set_relay_contact(server_url)
        if contact.archived or contact.blocked:
            return None
        return contact

    def _server_list(self, item_id: int) -> list[str]:
        servers: dict[str, str] = {}
        for server in self._config.relay_servers:
            servers[server.strip()] = server.strip()

        if not self._config.relay_directly:
            return list(servers.values())

        # Distribution follows the thread parent so the thread stays complete
        tags = self._content.thread_tags(item_id)
        if tags is None:
            logger.info(f"Item {item_id} not found; only static relays are used")
            return list(servers.values())

        for url in self._content.relay_servers("all"):
            servers[url] = url
        if tags:
            for url in self._content.relay_servers_for_tags(tags):
                servers[url] = url
        return list(servers.values())

    def relay_list(self, item_id: int, contacts: Optional[list[Contact]] = None) -> list[Contact]:
        result = list(contacts or [])
        own = normalise_link(self._base_url) if self._base_url else None

        for server_url in self._server_list(item_id):
            if not server_url:
                continue
            # We don't send messages to ourselves
            if own and normalise_link(server_url) == own:
                continue
            contact = self.get_relay_contact(server_url)
            if contact is None:
                continue
            result = merge_by_batch(result, contact)
        return result

    def participants_for_thread(self, thread_id: int, contacts: Optional[list[Contact]] = None) -> list[Contact]:
        result = list(contacts or [])
        for record in self._content.participations(thread_id):
            contact = self._identity.get_contact(record.contact_id)
            fcontact = self._identity.get_federated_contact_by_id(record.federated_contact_id)
            if contact is None or fcontact is None:
                continue

            update = {}
            if fcontact.network:
                update["network"] = fcontact.network
            if not contact.batch and fcontact.batch:
                update["batch"] = fcontact.batch
            result = merge_by_batch(result, contact.model_copy(update=update))
        return result

    def record_participation(self, thread_id: int, contact_id: int, person: FederatedContact) -> ParticipationRecord:
        """Remember that `person`'s server wants follow-ups for this thread."""
        handle = person.handle
        server = handle.split("@", 1)[1] if "@" in handle else handle
        record = ParticipationRecord(
            thread_id=thread_id,
            contact_id=contact_id,
            federated_contact_id=person.id or 0,
            server=server,
        )
        logger.debug(f"Received participation for ID: {thread_id} - Contact: {contact_id} - Server: {server}")
        self._content.add_participation(record)
        return record
