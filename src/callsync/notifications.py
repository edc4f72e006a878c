import asyncio
import logging
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

MISSED_CALL = "MissedCall"


class NotificationSink(Protocol):
    async def fire_notification(self, kind: str) -> None: ...


class MissedCallNotifier:
    """Raises one missed-call notification per newly fetched missed call.

    Nothing is raised on first run: those calls are old history, probably
    already seen on another device.
    """

    def __init__(self, sink: Optional[NotificationSink]):
        self.sink = sink

    async def notify_missed_calls(self, count: int, first_run: bool) -> int:
        if count <= 0 or first_run or self.sink is None:
            return 0
        logger.debug("Adding notification for %d missed calls", count)
        for _ in range(count):
            await self.sink.fire_notification(MISSED_CALL)
        return count


class WebhookNotificationSink:
    """Posts notifications to a webhook, retrying once after 2s."""

    def __init__(self, *, url: str, secret: str = "", timeout: float = 15.0):
        self.url = url
        self.secret = secret
        self.timeout = timeout

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Webhook-Secret"] = self.secret
        return headers

    async def fire_notification(self, kind: str) -> None:
        payload = {"kind": kind}
        for attempt in range(2):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.url, json=payload, headers=self._headers())
                    if resp.is_error:
                        logger.error("Notification webhook returned %d: %s", resp.status_code, resp.text[:500])
                    resp.raise_for_status()
                    return
            except httpx.HTTPError as e:
                if attempt == 0:
                    logger.warning("%s notification failed (attempt 1), retrying in 2s: %s", kind, e)
                    await asyncio.sleep(2)
                else:
                    logger.error("%s notification failed after retry: %s", kind, e)
