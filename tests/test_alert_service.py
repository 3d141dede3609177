from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from concierge.services import alert_service


class TestSendAlert:
    @pytest.mark.asyncio
    async def test_not_configured_returns_false(self):
        with patch.object(alert_service, "ALERT_BOT_TOKEN", None), patch.object(alert_service, "ALERT_CHAT_ID", None):
            assert await alert_service.alert_error("Generation failed") is False

    @pytest.mark.asyncio
    async def test_posts_to_telegram(self):
        client = MagicMock()
        client.post = AsyncMock(return_value=MagicMock(status_code=200))

        with patch.object(alert_service, "ALERT_BOT_TOKEN", "token"), patch.object(
            alert_service, "ALERT_CHAT_ID", "42"
        ), patch("concierge.services.alert_service.httpx.AsyncClient") as client_cls:
            client_cls.return_value.__aenter__.return_value = client
            sent = await alert_service.alert_warning("Qdrant search failed", {"status": 503})

        assert sent is True
        url = client.post.call_args.args[0]
        payload = client.post.call_args.kwargs["json"]
        assert url == "https://api.telegram.org/bottoken/sendMessage"
        assert payload["chat_id"] == "42"
        assert "WARNING" in payload["text"]
        assert "status: 503" in payload["text"]

    @pytest.mark.asyncio
    async def test_http_error_returns_false(self):
        client = MagicMock()
        client.post = AsyncMock(side_effect=httpx.ConnectError("down"))

        with patch.object(alert_service, "ALERT_BOT_TOKEN", "token"), patch.object(
            alert_service, "ALERT_CHAT_ID", "42"
        ), patch("concierge.services.alert_service.httpx.AsyncClient") as client_cls:
            client_cls.return_value.__aenter__.return_value = client
            assert await alert_service.alert_error("boom") is False
