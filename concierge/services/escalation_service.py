"""Hand-off of a conversation to a live agent over the LiveChat agent API."""

import asyncio
import base64
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from concierge.logging_config import get_logger
from concierge.services.alert_service import alert_error
from concierge.services.errors import FatalUpstreamError, TransientUpstreamError
from concierge.services.fast_path import PhraseBook, normalize_phrase_text
from concierge.services.result import ErrorCode, Result

logger = get_logger("escalation_service")

RETRYABLE_STATUS_CODES = {408, 409, 429}


@dataclass
class HandoffSession:
    chat_id: str
    credentials: dict


class LiveChatGateway:
    """Minimal LiveChat agent API client: create customer, start chat, send events."""

    def __init__(
        self,
        api_url: str,
        account_id: Optional[str],
        token: Optional[str],
        group_id: int = 0,
        region: str = "fra",
        timeout_seconds: float = 10.0,
    ):
        self.api_url = api_url.rstrip("/")
        self.account_id = account_id
        self.token = token
        self.group_id = group_id
        self.region = region
        self.timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self.account_id and self.token)

    def _headers(self) -> dict:
        credentials = base64.b64encode(f"{self.account_id}:{self.token}".encode("utf-8")).decode("ascii")
        return {
            "Authorization": f"Basic {credentials}",
            "Content-Type": "application/json",
            "X-Region": self.region,
        }

    async def _action(self, client: httpx.AsyncClient, action: str, payload: dict) -> dict:
        try:
            response = await client.post(f"{self.api_url}/agent/action/{action}", headers=self._headers(), json=payload)
        except httpx.TimeoutException as exc:
            raise TransientUpstreamError(f"LiveChat {action} timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientUpstreamError(f"LiveChat {action} transport error: {exc}") from exc

        if response.status_code in RETRYABLE_STATUS_CODES or response.status_code >= 500:
            raise TransientUpstreamError(
                f"LiveChat {action} failed: {response.status_code}", status_code=response.status_code
            )
        if response.status_code >= 400:
            raise FatalUpstreamError(f"LiveChat {action} rejected: {response.status_code} - {response.text[:200]}")
        return response.json() if response.content else {}

    async def create_handoff_session(self, session_id: str, language: str) -> HandoffSession:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            customer = await self._action(
                client,
                "create_customer",
                {"name": f"Guest {session_id[:8]}", "session_fields": [{"language": language}]},
            )
            customer_id = customer.get("customer_id")
            if not customer_id:
                raise FatalUpstreamError("LiveChat create_customer returned no customer_id")
            chat = await self._action(
                client,
                "start_chat",
                {"customer_id": customer_id, "active": True, "group_id": self.group_id},
            )
        chat_id = chat.get("chat_id")
        if not chat_id:
            raise FatalUpstreamError("LiveChat start_chat returned no chat_id")
        return HandoffSession(chat_id=chat_id, credentials={"customer_id": customer_id})

    async def send_message(self, chat_id: str, text: str, credentials: dict) -> bool:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            await self._action(
                client,
                "send_event",
                {
                    "chat_id": chat_id,
                    "event": {"type": "message", "text": text, "author_id": credentials.get("customer_id")},
                },
            )
        return True


class HumanRequestDetector:
    """Keyword check for guests asking to talk to a person."""

    def __init__(self, phrases: Optional[PhraseBook] = None):
        self.phrases = phrases or PhraseBook()

    def matches(self, message: str) -> bool:
        text = normalize_phrase_text(message)
        if not text:
            return False
        return any(re.search(rf"(?<!\w){re.escape(phrase)}(?!\w)", text) for phrase in self.phrases.human_request)


class EscalationService:
    def __init__(
        self,
        gateway: LiveChatGateway,
        max_retries: int = 3,
        initial_retry_delay: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.max_retries = max(1, max_retries)
        self.initial_retry_delay = initial_retry_delay
        self.sleep = sleep

    def retry_delay(self, attempt: int) -> float:
        return self.initial_retry_delay * (2 ** (attempt - 1))

    async def escalate(self, session_id: str, language: str) -> Result[HandoffSession]:
        """Open a live-agent chat, retrying transient gateway failures."""
        if not self.gateway.configured:
            logger.warning("Escalation not configured", extra={"context": {"session_id": session_id}})
            return Result.failure("LiveChat credentials are not configured", ErrorCode.NOT_CONFIGURED.value)

        last_error = ""
        for attempt in range(1, self.max_retries + 1):
            try:
                handoff = await self.gateway.create_handoff_session(session_id, language)
            except TransientUpstreamError as exc:
                last_error = str(exc)
                logger.warning(
                    "Escalation attempt failed",
                    extra={"context": {"session_id": session_id, "attempt": attempt, "error": last_error}},
                )
                if attempt < self.max_retries:
                    await self.sleep(self.retry_delay(attempt))
                continue
            except FatalUpstreamError as exc:
                logger.error("Escalation rejected", extra={"context": {"session_id": session_id, "error": str(exc)}})
                await alert_error("Escalation rejected", {"session_id": session_id, "error": str(exc)[:100]})
                return Result.failure(str(exc), ErrorCode.REJECTED.value, attempts=attempt)

            logger.info(
                "Escalation started",
                extra={"context": {"session_id": session_id, "chat_id": handoff.chat_id, "attempt": attempt}},
            )
            return Result.success(handoff, attempts=attempt)

        await alert_error("Escalation failed", {"session_id": session_id, "error": last_error[:100]})
        return Result.failure(
            f"Escalation failed after {self.max_retries} attempts: {last_error}",
            ErrorCode.RETRIES_EXHAUSTED.value,
            attempts=self.max_retries,
        )

    async def forward(self, chat_id: str, text: str, credentials: dict) -> bool:
        """Relay a guest message into an active agent chat. Never raises."""
        try:
            return await self.gateway.send_message(chat_id, text, credentials)
        except (TransientUpstreamError, FatalUpstreamError) as exc:
            logger.warning("Forward to agent failed", extra={"context": {"chat_id": chat_id, "error": str(exc)}})
            return False
