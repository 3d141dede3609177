from typing import List, Optional

import httpx

from concierge.logging_config import get_logger
from concierge.services.errors import FatalUpstreamError, TransientUpstreamError
from concierge.services.llm.base import LLMProvider, LLMResponse

logger = get_logger("llm.openai")

RETRYABLE_STATUS_CODES = {408, 409, 429}


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions provider."""

    def __init__(self, api_key: str, default_model: str = "gpt-4o", timeout_seconds: float = 60.0):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.base_url = "https://api.openai.com/v1/chat/completions"

    async def complete(
        self,
        messages: List[dict],
        max_tokens: int = 500,
        model: Optional[str] = None,
        temperature: float = 0.7,
    ) -> LLMResponse:
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}, max_tokens={max_tokens}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException as exc:
            raise TransientUpstreamError(f"OpenAI timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientUpstreamError(f"OpenAI transport error: {exc}") from exc

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code in RETRYABLE_STATUS_CODES or response.status_code >= 500:
            logger.warning(f"OpenAI transient error: {response.status_code}")
            raise TransientUpstreamError(
                f"OpenAI API error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
            )
        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise FatalUpstreamError(f"OpenAI API error: {response.status_code} - {response.text[:200]}")

        data = response.json()
        content = ""
        if data.get("choices") and len(data["choices"]) > 0:
            message = data["choices"][0].get("message", {})
            content = message.get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
