from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from concierge import main
from concierge.dependencies import get_pipeline
from concierge.main import app, run_cleanup
from tests.conftest import FakeProvider, build_test_pipeline


@pytest.fixture
def pipeline(clock):
    return build_test_pipeline(FakeProvider(), clock=clock)


@pytest.fixture
def client(mock_env, pipeline):
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestChatEndpoint:
    def test_greeting(self, client):
        response = client.post("/chat", json={"message": "hello", "sessionId": "abc"})

        assert response.status_code == 200
        body = response.json()
        assert body["sessionId"] == "abc"
        assert body["responseType"] == "greeting.opening"
        assert body["language"] == {"detected": "en", "confidence": "high"}
        assert body["message"]

    def test_snake_case_session_id_accepted(self, client):
        response = client.post("/chat", json={"message": "Góðan daginn", "session_id": "xyz"})

        body = response.json()
        assert body["sessionId"] == "xyz"
        assert body["language"]["detected"] == "is"

    def test_generated_reply(self, client):
        response = client.post("/chat", json={"message": "What is included in the Saman package?", "sessionId": "abc"})

        body = response.json()
        assert body["responseType"] == "generated"
        assert body["topic"] == "packages"
        assert "Saman Package" in body["message"]

    def test_missing_session_id_gets_one(self, client):
        body = client.post("/chat", json={"message": "hello"}).json()
        assert body["sessionId"]

    def test_empty_body_gets_empty_reply(self, client):
        body = client.post("/chat", json={}).json()
        assert body["responseType"] == "empty"

    def test_message_must_be_text(self, client):
        response = client.post("/chat", json={"message": {"nested": True}})
        assert response.status_code == 422


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_stats_count_sessions(self, client):
        client.post("/chat", json={"message": "hello", "sessionId": "a"})
        client.post("/chat", json={"message": "hello", "sessionId": "b"})

        stats = client.get("/health/stats").json()

        assert stats["sessions"] == 2
        assert stats["cache_entries"] == 0


class TestCleanup:
    @pytest.mark.asyncio
    async def test_run_cleanup_evicts_idle_state(self, pipeline, clock):
        await pipeline.handle("What is included in the Saman package?", "abc")
        clock.advance(7200)

        result = await run_cleanup(pipeline)

        assert result == {"sessions_removed": 1, "cache_entries_removed": 1}
        assert len(pipeline.store) == 0


class TestShutdown:
    @pytest.mark.asyncio
    async def test_close_pipeline_closes_cache_and_drains_telemetry(self):
        pipeline = MagicMock()
        pipeline.telemetry.drain = AsyncMock()
        pipeline.cache.close = AsyncMock()
        get_pipeline_mock = MagicMock(return_value=pipeline)
        get_pipeline_mock.cache_info.return_value = MagicMock(currsize=1)

        with patch.object(main, "get_pipeline", get_pipeline_mock):
            await main.close_pipeline()

        pipeline.telemetry.drain.assert_awaited_once()
        pipeline.cache.close.assert_awaited_once()
