from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from concierge.services.telemetry_service import TelemetryPublisher


class TestTelemetryPublisher:
    @pytest.mark.asyncio
    async def test_without_webhook_nothing_is_scheduled(self):
        publisher = TelemetryPublisher()
        publisher.publish({"session_id": "s1"})
        assert publisher.pending == 0

    @pytest.mark.asyncio
    async def test_publish_posts_event_in_background(self):
        client = MagicMock()
        client.post = AsyncMock(return_value=MagicMock(status_code=200))
        publisher = TelemetryPublisher("http://hooks.local/events")

        with patch("concierge.services.telemetry_service.httpx.AsyncClient") as client_cls:
            client_cls.return_value.__aenter__.return_value = client
            publisher.publish({"session_id": "s1", "response_type": "generated"})
            assert publisher.pending == 1
            await publisher.drain()

        event = client.post.call_args.kwargs["json"]
        assert client.post.call_args.args[0] == "http://hooks.local/events"
        assert event["session_id"] == "s1"
        assert "timestamp" in event

    @pytest.mark.asyncio
    async def test_delivery_failure_is_swallowed(self):
        client = MagicMock()
        client.post = AsyncMock(side_effect=httpx.ConnectError("down"))
        publisher = TelemetryPublisher("http://hooks.local/events")

        with patch("concierge.services.telemetry_service.httpx.AsyncClient") as client_cls:
            client_cls.return_value.__aenter__.return_value = client
            publisher.publish({"session_id": "s1"})
            await publisher.drain()

        assert publisher.pending == 0
