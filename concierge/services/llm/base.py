from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMProvider(ABC):
    """Abstract base class for completion providers.

    Implementations raise ``TransientUpstreamError`` for failures worth
    retrying and ``FatalUpstreamError`` for everything else.
    """

    @abstractmethod
    async def complete(
        self,
        messages: List[dict],
        max_tokens: int = 500,
        model: Optional[str] = None,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """Generate a completion for the chat messages."""
        pass
