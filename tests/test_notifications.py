import json
from unittest.mock import AsyncMock, patch

import pytest
import httpx
import respx

from callsync.notifications import MISSED_CALL, MissedCallNotifier, WebhookNotificationSink
from tests.conftest import FakeSink

WEBHOOK_URL = "https://app.example.com/api/webhook/notifications"


class TestMissedCallNotifier:
    @pytest.mark.asyncio
    async def test_one_notification_per_missed_call(self):
        sink = FakeSink()
        assert await MissedCallNotifier(sink).notify_missed_calls(3, first_run=False) == 3
        assert sink.fired == [MISSED_CALL] * 3

    @pytest.mark.asyncio
    async def test_nothing_on_first_run(self):
        sink = FakeSink()
        assert await MissedCallNotifier(sink).notify_missed_calls(3, first_run=True) == 0
        assert sink.fired == []

    @pytest.mark.asyncio
    async def test_nothing_for_zero(self):
        sink = FakeSink()
        assert await MissedCallNotifier(sink).notify_missed_calls(0, first_run=False) == 0
        assert sink.fired == []

    @pytest.mark.asyncio
    async def test_no_sink(self):
        assert await MissedCallNotifier(None).notify_missed_calls(2, first_run=False) == 0


@pytest.fixture
def webhook():
    return WebhookNotificationSink(url=WEBHOOK_URL, secret="test-secret-123")


class TestWebhookNotificationSink:
    @respx.mock
    @pytest.mark.asyncio
    async def test_posts_kind_with_secret(self, webhook):
        route = respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(200))
        await webhook.fire_notification(MISSED_CALL)
        request = route.calls[0].request
        assert request.headers["X-Webhook-Secret"] == "test-secret-123"
        assert json.loads(request.content) == {"kind": MISSED_CALL}

    @respx.mock
    @pytest.mark.asyncio
    async def test_retries_once_then_gives_up(self, webhook):
        route = respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(500))
        with patch("callsync.notifications.asyncio.sleep", new=AsyncMock()) as sleep:
            await webhook.fire_notification(MISSED_CALL)
        assert route.call_count == 2
        sleep.assert_awaited_once_with(2)

    @respx.mock
    @pytest.mark.asyncio
    async def test_retry_succeeds(self, webhook):
        route = respx.post(WEBHOOK_URL).mock(
            side_effect=[httpx.ConnectError("refused"), httpx.Response(200)]
        )
        with patch("callsync.notifications.asyncio.sleep", new=AsyncMock()):
            await webhook.fire_notification(MISSED_CALL)
        assert route.call_count == 2
