"""Per-message decision pipeline.

language -> hand-off -> fast path -> cache -> retrieval -> generation ->
post-processing -> cache write -> context update -> telemetry.
"""

import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from concierge.logging_config import SessionLoggerAdapter, get_logger, log_timing
from concierge.models.session import UNKNOWN_LANGUAGE, ContextUpdate, HandoffRecord, SessionContext
from concierge.services.errors import FatalUpstreamError
from concierge.services.escalation_service import EscalationService, HumanRequestDetector
from concierge.services.fast_path import FastPathChain
from concierge.services.generation_service import GenerationService, build_prompt_bundle
from concierge.services.knowledge_service import KnowledgeRetriever
from concierge.services.language_service import LanguageClassifier, resolve_session_language
from concierge.services.postprocess_service import TerminologyProcessor
from concierge.services.response_cache import ResponseCache, build_cache_key
from concierge.services.scenario_service import has_scenario_wording
from concierge.services.session_store import SessionStore
from concierge.services.telemetry_service import TelemetryPublisher
from concierge.services.templates import ResponseTemplates
from concierge.services.topic_service import Topic

logger = get_logger("chat_pipeline")

SCENARIO_TOPICS = {Topic.LATE_ARRIVAL.value, Topic.BOOKING.value}


@dataclass
class ChatReply:
    message: str
    session_id: str
    language: str
    language_confidence: str
    response_type: str
    topic: Optional[str] = None
    knowledge_confidence: Optional[float] = None


def scenario_clearing(session: SessionContext, topic: Optional[str], message: str) -> ContextUpdate:
    """Drop scenario records once the guest has moved on to another subject."""
    if not topic or topic in SCENARIO_TOPICS or has_scenario_wording(message):
        return ContextUpdate()
    return ContextUpdate(
        clear_late_arrival=session.late_arrival is not None,
        clear_booking_modification=session.booking_modification is not None,
    )


class ChatPipeline:
    def __init__(
        self,
        store: SessionStore,
        cache: ResponseCache,
        classifier: LanguageClassifier,
        fast_path: FastPathChain,
        retriever: KnowledgeRetriever,
        generator: GenerationService,
        postprocessor: TerminologyProcessor,
        templates: ResponseTemplates,
        escalation: Optional[EscalationService] = None,
        human_requests: Optional[HumanRequestDetector] = None,
        telemetry: Optional[TelemetryPublisher] = None,
        history_limit: int = 6,
        max_knowledge_chars: int = 6000,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.cache = cache
        self.classifier = classifier
        self.fast_path = fast_path
        self.retriever = retriever
        self.generator = generator
        self.postprocessor = postprocessor
        self.templates = templates
        self.escalation = escalation
        self.human_requests = human_requests
        self.telemetry = telemetry
        self.history_limit = history_limit
        self.max_knowledge_chars = max_knowledge_chars
        self.now = now

    async def handle(self, message: str, session_id: Optional[str] = None) -> ChatReply:
        session_id = session_id or uuid.uuid4().hex
        async with self.store.session(session_id) as session:
            reply = await self._handle_locked(message or "", session)
        self._publish(reply, message or "")
        return reply

    async def _handle_locked(self, message: str, session: SessionContext) -> ChatReply:
        log = SessionLoggerAdapter(logger, {"session_id": session.session_id})
        text = message.strip()

        if not text:
            language = resolve_session_language(session.language, self.classifier.default_language)
            response = self.templates.text("errors", "empty_message", language=language)
            log.info("Empty message")
            return self._reply(session, response, language, "low", "empty")

        prior = session.language if session.language != UNKNOWN_LANGUAGE else None
        decision = self.classifier.classify(text, prior)
        language = decision.language
        log.info(
            "Language resolved",
            context={"language": language, "confidence": decision.confidence, "reason": decision.reason},
        )
        update = ContextUpdate(language=language, user_message=text)

        if session.handoff is not None:
            return await self._forward_to_agent(session, text, language, decision.confidence, update, log)
        if self.escalation and self.human_requests and self.human_requests.matches(text):
            return await self._start_handoff(session, language, decision.confidence, update, log)

        match = self.fast_path.run(text, session, language)
        if match is not None:
            update = update.merge(match.update).merge(scenario_clearing(session, match.topic, text))
            log.info("Fast path reply", context={"category": match.category})
            return self._finish(session, update, match.response, language, decision.confidence, match.category, match.topic)

        cache_key = build_cache_key(session.session_id, text, language)
        cached = await self.cache.get(cache_key)
        if cached and cached.get("message"):
            topic = cached.get("topic")
            update = update.merge(ContextUpdate(topic=topic)).merge(scenario_clearing(session, topic, text))
            log.info("Cache hit", context={"topic": topic})
            return self._finish(
                session, update, cached["message"], language, decision.confidence, "cache", topic, cached.get("confidence")
            )

        started = time.monotonic()
        outcome = await self.retriever.retrieve(text, session, language)
        log_timing(
            logger,
            "knowledge_ms",
            (time.monotonic() - started) * 1000,
            {"session_id": session.session_id, "matches": len(outcome.matches), "confidence": round(outcome.confidence, 3)},
        )
        update = update.merge(outcome.update).merge(scenario_clearing(session, outcome.topic, text))

        if outcome.direct_answer:
            return self._finish(
                session, update, outcome.direct_answer, language, decision.confidence, "context_answer", outcome.topic, outcome.confidence
            )
        if outcome.unknown:
            log.info("Unknown topic", context={"message": text[:50]})
            return self._finish(
                session, update, outcome.deflection or "", language, decision.confidence, "unknown_topic", None, 0.0
            )

        bundle = build_prompt_bundle(
            text,
            session,
            outcome.matches,
            language,
            now=self.now(),
            history_limit=self.history_limit,
            max_knowledge_chars=self.max_knowledge_chars,
        )
        try:
            generated = await self.generator.generate(bundle, text, context={"session_id": session.session_id})
        except FatalUpstreamError as exc:
            log.error("Generation failed", context={"error": str(exc)})
            response = self.templates.text("errors", "connection", language=language)
            return self._finish(session, update, response, language, decision.confidence, "error", outcome.topic)

        response = self.postprocessor.normalize(generated, text, language)
        if outcome.cacheable:
            await self.cache.set(
                cache_key, {"message": response, "topic": outcome.topic, "confidence": outcome.confidence}
            )
        return self._finish(
            session, update, response, language, decision.confidence, "generated", outcome.topic, outcome.confidence
        )

    async def _start_handoff(self, session, language, confidence, update, log) -> ChatReply:
        result = await self.escalation.escalate(session.session_id, language)
        if result.ok:
            handoff = result.value
            update = update.merge(
                ContextUpdate(
                    handoff=HandoffRecord(
                        chat_id=handoff.chat_id,
                        credentials=handoff.credentials,
                        started_at=self.store.clock(),
                    )
                )
            )
            response = self.templates.text("handoff", "connected", language=language)
            return self._finish(session, update, response, language, confidence, "handoff")

        log.warning("Hand-off unavailable", context={"error": result.error, "code": result.error_code})
        response = self.templates.text("handoff", "unavailable", language=language)
        return self._finish(session, update, response, language, confidence, "handoff_unavailable")

    async def _forward_to_agent(self, session, text, language, confidence, update, log) -> ChatReply:
        handoff = session.handoff
        delivered = await self.escalation.forward(handoff.chat_id, text, handoff.credentials) if self.escalation else False
        if delivered:
            response = self.templates.text("handoff", "forwarded", language=language)
            return self._finish(session, update, response, language, confidence, "handoff")

        log.warning("Agent chat lost, ending hand-off", context={"chat_id": handoff.chat_id})
        update = update.merge(ContextUpdate(end_handoff=True))
        response = self.templates.text("handoff", "unavailable", language=language)
        return self._finish(session, update, response, language, confidence, "handoff_unavailable")

    def _finish(
        self,
        session: SessionContext,
        update: ContextUpdate,
        response: str,
        language: str,
        language_confidence: str,
        response_type: str,
        topic: Optional[str] = None,
        knowledge_confidence: Optional[float] = None,
    ) -> ChatReply:
        self.store.apply(session, update.merge(ContextUpdate(assistant_message=response)))
        return ChatReply(
            message=response,
            session_id=session.session_id,
            language=language,
            language_confidence=language_confidence,
            response_type=response_type,
            topic=topic or session.last_topic,
            knowledge_confidence=knowledge_confidence,
        )

    def _reply(self, session: SessionContext, response: str, language: str, confidence: str, response_type: str) -> ChatReply:
        return ChatReply(
            message=response,
            session_id=session.session_id,
            language=language,
            language_confidence=confidence,
            response_type=response_type,
            topic=session.last_topic,
        )

    def _publish(self, reply: ChatReply, message: str) -> None:
        if self.telemetry is None:
            return
        try:
            self.telemetry.publish(
                {
                    "session_id": reply.session_id,
                    "language": reply.language,
                    "topic": reply.topic,
                    "response_type": reply.response_type,
                    "message": message,
                    "response": reply.message,
                }
            )
        except Exception as exc:
            logger.warning("Telemetry scheduling failed", extra={"context": {"error": str(exc)}})
