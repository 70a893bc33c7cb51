"""
HTTP client for peer delivery, post fetching and discovery.
"""

import logging
from typing import Any, Optional

import httpx

from diaspora_fed.errors import TransportFailure

USER_AGENT = "diaspora-fed/0.1.0"

logger = logging.getLogger(__name__)


class HttpClient:
    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._client = httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    async def post(self, url: str, content: str, content_type: str) -> httpx.Response:
        """POST a payload. Any status is returned; only a missing response raises."""
        try:
            return await self._client.post(url, content=content.encode("utf-8"), headers={"Content-Type": content_type})
        except httpx.HTTPError as e:
            raise TransportFailure(f"POST {url} failed: {e}")

    async def get_text(self, url: str, accept: Optional[str] = None) -> Optional[str]:
        """GET a document; None unless the peer answered 2xx."""
        headers = {"Accept": accept} if accept else None
        try:
            resp = await self._client.get(url, headers=headers)
        except httpx.HTTPError as e:
            logger.debug(f"GET {url} failed: {e}")
            return None
        if not resp.is_success:
            logger.debug(f"GET {url} returned HTTP {resp.status_code}")
            return None
        return resp.text

    async def get_json(self, url: str, params: Optional[dict[str, str]] = None) -> Optional[Any]:
        try:
            resp = await self._client.get(url, params=params, headers={"Accept": "application/jrd+json, application/json"})
        except httpx.HTTPError as e:
            logger.debug(f"GET {url} failed: {e}")
            return None
        if not resp.is_success:
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    async def close(self) -> None:
        await self._client.aclose()
