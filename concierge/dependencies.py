"""Wiring of the chat pipeline from settings."""

from functools import lru_cache

from concierge.config import Settings, settings
from concierge.logging_config import get_logger
from concierge.services.chat_pipeline import ChatPipeline
from concierge.services.escalation_service import EscalationService, HumanRequestDetector, LiveChatGateway
from concierge.services.fast_path import FastPathChain, PhraseBook
from concierge.services.generation_service import GenerationService
from concierge.services.knowledge_service import KnowledgeRetriever, StaticKnowledgeSource, VectorKnowledgeSource
from concierge.services.language_service import SUPPORTED_LANGUAGES, LanguageClassifier
from concierge.services.llm import OpenAIProvider
from concierge.services.postprocess_service import TerminologyProcessor
from concierge.services.response_cache import InMemoryResponseCache, RedisResponseCache
from concierge.services.session_store import SessionStore
from concierge.services.telemetry_service import TelemetryPublisher
from concierge.services.templates import ResponseTemplates

logger = get_logger("dependencies")


def build_knowledge_sources(config: Settings) -> dict:
    if config.knowledge_backend == "vector":
        return {
            language: VectorKnowledgeSource(
                language,
                qdrant_host=config.qdrant_host,
                collection=config.qdrant_collection,
                embedding_url=config.embedding_url,
                api_key=config.qdrant_api_key,
            )
            for language in SUPPORTED_LANGUAGES
        }
    return {language: StaticKnowledgeSource(language) for language in SUPPORTED_LANGUAGES}


def build_cache(config: Settings):
    if config.cache_backend == "redis":
        return RedisResponseCache.from_url(config.redis_url, ttl_seconds=config.cache_ttl_seconds)
    return InMemoryResponseCache(ttl_seconds=config.cache_ttl_seconds)


def build_pipeline(config: Settings) -> ChatPipeline:
    templates = ResponseTemplates(fallback_language=config.default_language)
    phrases = PhraseBook()
    provider = OpenAIProvider(
        api_key=config.openai_api_key or "",
        default_model=config.llm_model,
        timeout_seconds=config.llm_timeout_seconds,
    )
    logger.info(
        "Building pipeline",
        extra={"context": {"knowledge_backend": config.knowledge_backend, "cache_backend": config.cache_backend}},
    )
    return ChatPipeline(
        store=SessionStore(
            ttl_seconds=config.session_ttl_seconds,
            max_messages=config.max_history_messages,
            max_topics=config.topic_history_limit,
        ),
        cache=build_cache(config),
        classifier=LanguageClassifier(config.default_language),
        fast_path=FastPathChain.default(templates, phrases),
        retriever=KnowledgeRetriever(build_knowledge_sources(config), templates, config.default_language),
        generator=GenerationService(
            provider,
            max_retries=config.llm_max_retries,
            initial_retry_delay=config.llm_initial_retry_delay_seconds,
            timeout_seconds=config.llm_timeout_seconds,
            temperature=config.llm_temperature,
            model=config.llm_model,
        ),
        postprocessor=TerminologyProcessor(),
        templates=templates,
        escalation=EscalationService(
            LiveChatGateway(config.livechat_api_url, config.livechat_account_id, config.livechat_token),
            max_retries=config.escalation_max_retries,
            initial_retry_delay=config.escalation_initial_retry_delay_seconds,
        ),
        human_requests=HumanRequestDetector(phrases),
        telemetry=TelemetryPublisher(config.telemetry_webhook_url),
        history_limit=config.prompt_history_messages,
        max_knowledge_chars=config.max_knowledge_chars,
    )


@lru_cache(maxsize=1)
def get_pipeline() -> ChatPipeline:
    return build_pipeline(settings)
