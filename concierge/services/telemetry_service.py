import asyncio
from datetime import datetime, timezone
from typing import Optional

import httpx

from concierge.logging_config import get_logger

logger = get_logger("telemetry_service")


class TelemetryPublisher:
    """Fire-and-forget delivery of conversation events to a webhook."""

    def __init__(self, webhook_url: Optional[str] = None, timeout_seconds: float = 5.0):
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def publish(self, event: dict) -> None:
        event = {"timestamp": datetime.now(timezone.utc).isoformat(), **event}
        if not self.webhook_url:
            logger.debug("Telemetry event", extra={"context": event})
            return
        task = asyncio.create_task(self._send(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, event: dict) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(self.webhook_url, json=event)
            if response.status_code >= 400:
                logger.warning(
                    "Telemetry webhook rejected event",
                    extra={"context": {"status": response.status_code, "session_id": event.get("session_id")}},
                )
        except httpx.HTTPError as exc:
            logger.warning("Telemetry publish failed", extra={"context": {"error": str(exc)}})

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
