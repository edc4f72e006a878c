import logging
from typing import Any

import httpx

from callsync.circuit_breaker import CircuitBreaker
from callsync.states import ClassOfService

logger = logging.getLogger(__name__)

SUBSCRIBER_SETTINGS_SI = "SubscriberAccountSettings"
NO_SUCH_OBJECT = "noSuchObject"


class BackendError(Exception):
    """Transient backend failure; the next trigger retries."""


class NotPermittedError(BackendError):
    """The backend says this subscriber has no call list."""


class CallListClient:
    """HTTP client for the telephony backend's call list data.

    Shares one ``httpx.AsyncClient``. A circuit breaker makes calls fail fast
    for 60s after 3 consecutive transient failures.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=60.0,
            label="call list backend",
        )
        if client is not None:
            self._client = client
        else:
            headers = {"Accept": "application/json"}
            if api_key:
                headers["X-API-Key"] = api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def _get(self, path: str) -> httpx.Response:
        if not self._circuit.allow():
            raise BackendError(
                f"circuit open, retry in {self._circuit.remaining_cooldown():.0f}s"
            )
        try:
            resp = await self._client.get(path)
        except httpx.HTTPError as e:
            self._circuit.record_failure()
            raise BackendError(f"GET {path} failed: {e}") from e

        if resp.status_code == 404 or _is_no_such_object(resp):
            # Authoritative answer, not a backend fault
            self._circuit.record_success()
            raise NotPermittedError(f"GET {path}: {NO_SUCH_OBJECT}")
        if resp.is_error:
            self._circuit.record_failure()
            raise BackendError(f"GET {path} returned {resp.status_code}: {resp.text[:200]}")

        self._circuit.record_success()
        return resp

    async def fetch_call_list(self, si_name: str) -> str:
        """Raw call list payload; parsing is left to the caller."""
        resp = await self._get(f"/data/{si_name}")
        return resp.text

    async def fetch_timezone(self) -> str:
        resp = await self._get(f"/data/{SUBSCRIBER_SETTINGS_SI}")
        try:
            return resp.json()[0]["data"]["Timezone"]
        except (ValueError, LookupError, TypeError) as e:
            raise BackendError("Subscriber settings missing Timezone") from e

    async def fetch_class_of_service(self) -> ClassOfService:
        resp = await self._get("/cos")
        try:
            data = resp.json()
        except ValueError as e:
            raise BackendError("Class of service is not JSON") from e
        if not isinstance(data, dict):
            raise BackendError("Class of service is not an object")
        return ClassOfService.from_payload(data)


def _is_no_such_object(resp: httpx.Response) -> bool:
    if resp.status_code < 400:
        return False
    try:
        body: Any = resp.json()
    except ValueError:
        return NO_SUCH_OBJECT in resp.text
    return isinstance(body, dict) and body.get("error") == NO_SUCH_OBJECT
