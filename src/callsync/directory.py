import logging
from typing import AsyncIterator

import httpx

from callsync.numbers import log_hash

logger = logging.getLogger(__name__)


class HttpDirectory:
    """Contact directory reached over HTTP.

    ``query`` streams matching contacts as ``{"displayName": ...}`` dicts.
    Callers bound the wait themselves (see ``NameResolver``).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        if client is not None:
            self._client = client
        else:
            headers = {"Accept": "application/json"}
            if api_key:
                headers["X-API-Key"] = api_key
            self._client = httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=timeout)

    async def close(self):
        await self._client.aclose()

    async def query(self, number: str) -> AsyncIterator[dict]:
        resp = await self._client.get("/contacts", params={"number": number})
        resp.raise_for_status()
        contacts = resp.json().get("contacts", [])
        logger.debug("Directory returned %d contacts for %s", len(contacts), log_hash(number))
        for contact in contacts:
            if isinstance(contact, dict):
                yield contact
