from typing import List, Optional
from unittest.mock import Mock

import pytest

from concierge.models.session import SessionContext
from concierge.services.chat_pipeline import ChatPipeline
from concierge.services.fast_path import FastPathChain, PhraseBook
from concierge.services.generation_service import GenerationService
from concierge.services.knowledge_service import KnowledgeRetriever, StaticKnowledgeSource
from concierge.services.language_service import LanguageClassifier
from concierge.services.llm.base import LLMProvider, LLMResponse
from concierge.services.postprocess_service import TerminologyProcessor
from concierge.services.response_cache import InMemoryResponseCache
from concierge.services.session_store import SessionStore
from concierge.services.templates import ResponseTemplates


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider(LLMProvider):
    """Scripted completion provider. Errors are raised in order before replies are returned."""

    def __init__(self, reply: str = "Our Saman Package includes lagoon access and the Skjól ritual.", errors=None):
        self.reply = reply
        self.errors = list(errors or [])
        self.calls: List[dict] = []

    async def complete(
        self,
        messages: List[dict],
        max_tokens: int = 500,
        model: Optional[str] = None,
        temperature: float = 0.7,
    ) -> LLMResponse:
        self.calls.append({"messages": messages, "max_tokens": max_tokens})
        if self.errors:
            raise self.errors.pop(0)
        return LLMResponse(content=self.reply, model="fake")


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("CLEANUP_WORKER_ENABLED", "false")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def templates():
    return ResponseTemplates()


@pytest.fixture
def phrases():
    return PhraseBook()


@pytest.fixture
def session():
    return SessionContext(session_id="session-1", created_at=0.0, last_interaction=0.0)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sleep():
    return RecordingSleep()


def build_test_pipeline(provider: LLMProvider, clock=None, sleep=None, **overrides) -> ChatPipeline:
    clock = clock or FakeClock()
    templates = ResponseTemplates()
    phrases = PhraseBook()
    options = dict(
        store=SessionStore(ttl_seconds=3600, clock=clock),
        cache=InMemoryResponseCache(ttl_seconds=3600, clock=clock),
        classifier=LanguageClassifier("en"),
        fast_path=FastPathChain.default(templates, phrases),
        retriever=KnowledgeRetriever(
            {"en": StaticKnowledgeSource("en"), "is": StaticKnowledgeSource("is")},
            templates,
        ),
        generator=GenerationService(provider, max_retries=3, initial_retry_delay=0.01, sleep=sleep or RecordingSleep()),
        postprocessor=TerminologyProcessor(),
        templates=templates,
    )
    options.update(overrides)
    return ChatPipeline(**options)


@pytest.fixture
def pipeline(provider, clock):
    return build_test_pipeline(provider, clock=clock)


@pytest.fixture
def mock_gateway():
    gateway = Mock()
    gateway.configured = True
    return gateway
