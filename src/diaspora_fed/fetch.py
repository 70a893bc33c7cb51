"""
Fetching single posts from their origin server.

Current servers publish signed envelopes at ``/fetch/post/<guid>``. Very old
servers only serve the raw payload at ``/p/<guid>.xml``; that path carries no
signature and is only consulted when ``allow_unsigned_fetch`` is set.
"""

import logging
from typing import Optional
from urllib.parse import quote, urlsplit

from diaspora_fed.config import FederationConfig
from diaspora_fed.envelope import parse_xml, verify_magic_envelope
from diaspora_fed.errors import FederationError, KeyResolutionFailure
from diaspora_fed.identity import KeyResolver, normalize_handle
from diaspora_fed.models.envelope import DecodedMessage
from diaspora_fed.transport.http import HttpClient

MAX_RESHARE_DEPTH = 5

logger = logging.getLogger(__name__)


def server_root(url: str) -> Optional[str]:
    """``scheme://host`` of a profile or server URL, None when either part is missing."""
    parts = urlsplit(url)
    if not parts.scheme or not parts.hostname:
        return None
    return f"{parts.scheme}://{parts.hostname}"


def _text(element, path: str) -> str:
    found = element.find(path)
    if found is None or found.text is None:
        return ""
    return found.text.strip()


class PostFetcher:
    def __init__(self, config: FederationConfig, http: HttpClient, resolver: KeyResolver):
        self._config = config
        self._http = http
        self._resolver = resolver

    async def _fetch_signed(self, guid: str, server: str) -> Optional[DecodedMessage]:
        source_url = f"{server}/fetch/post/{quote(guid, safe='')}"
        logger.debug(f"Fetch post from {source_url}")

        envelope = await self._http.get_text(source_url)
        if not envelope:
            return None
        try:
            decoded = await verify_magic_envelope(envelope, self._resolver)
        except FederationError as e:
            logger.debug(f"Envelope could not be verified: {e}")
            return None
        logger.debug(f"Envelope was verified, signed by {decoded.author}.")
        return decoded

    async def _fetch_unsigned(self, guid: str, server: str) -> Optional[str]:
        source_url = f"{server}/p/{quote(guid, safe='')}.xml"
        logger.debug(f"Fetch unsigned post from {source_url}")
        return await self._http.get_text(source_url)

    async def fetch_message(self, guid: str, server: str, level: int = 0) -> Optional[DecodedMessage]:
        """
        Fetch a status message, following reshares to their root.

        A signed post must name its signer as author. Only an unsigned post,
        when allowed at all, takes the author from the payload.
        """
        if level > MAX_RESHARE_DEPTH:
            return None

        signed = await self._fetch_signed(guid, server)
        if signed is not None:
            message = signed.message
        elif self._config.allow_unsigned_fetch:
            message = await self._fetch_unsigned(guid, server)
        else:
            message = None
        if message is None:
            return None

        try:
            root = parse_xml(message)
        except FederationError:
            return None

        # Old servers wrap the reshare in <XML><post>, new ones send it bare
        legacy_reshare = root.find("post/reshare")
        if legacy_reshare is not None:
            logger.debug("Message is a reshare")
            return await self.fetch_message(_text(legacy_reshare, "root_guid"), server, level + 1)
        if root.tag == "reshare":
            logger.debug("Message is a new reshare")
            return await self.fetch_message(_text(root, "root_guid"), server, level + 1)

        author = _text(root, "post/status_message/diaspora_handle")
        if not author and root.tag == "status_message":
            author = _text(root, "author")

        if not author:
            logger.debug("Message doesn't seem to be a status message")
            return None

        if signed is not None:
            if normalize_handle(author) != signed.author:
                logger.info(f"Fetched post claims author {author} but was signed by {signed.author}")
                return None
            return signed

        try:
            key = await self._resolver.resolve_public_key(author)
        except KeyResolutionFailure:
            logger.info(f"No key found for fetched post author {author}")
            return None
        return DecodedMessage(message=message, author=author, key=key)
