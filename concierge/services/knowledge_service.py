import json
import re
from dataclasses import dataclass, field, replace
from typing import Any, Optional, Protocol

import httpx

from concierge.logging_config import get_logger
from concierge.models.knowledge import KnowledgeMatch
from concierge.models.session import ContextUpdate, SessionContext
from concierge.services.alert_service import alert_warning
from concierge.services.data_tables import load_table
from concierge.services.templates import ResponseTemplates
from concierge.services.topic_service import (
    KNOWLEDGE_TYPE_TOPICS,
    Topic,
    detect_seasonal_context,
    detect_topic,
)

logger = get_logger("knowledge_service")

CONFIDENCE_HIGH = 0.8
CONFIDENCE_MEDIUM = 0.4
CONFIDENCE_LOW = 0.2
ACKNOWLEDGMENT_FLOOR = 0.1
MULTI_PART_CONFIDENCE = 0.9

SHORT_MESSAGE_CHARS = 20
SHORT_MESSAGE_WORDS = 4
ACKNOWLEDGMENT_WORD_LIMIT = 6

ACKNOWLEDGMENT_WORDS = (
    "great",
    "good",
    "helpful",
    "comfortable",
    "perfect",
    "thanks",
    "thank",
    "ok",
    "okay",
    "got it",
    "understood",
    "more questions",
    "another question",
    "few questions",
    "takk",
    "frábært",
    "flott",
    "ókei",
    "skil",
)
STOP_WORDS = {
    "en": {"what", "how", "when", "where", "does", "about", "have", "there", "with", "your", "this", "that", "would"},
    "is": {"hvað", "hvernig", "hvenær", "hvar", "gerir", "um", "með", "þetta", "það", "eruð", "getur"},
}

ANAPHORA_PATTERNS = {
    "en": re.compile(
        r"\b(it|its|it's|that|this|those|these|they|them)\b"
        r"|\b(you mentioned|you said|mentioned|what about|how about|regarding|about that|same one)\b"
    ),
    "is": re.compile(r"\b(það|þetta|þessi|þeir|þær|hann|hún|þar)\b|\b(hvað með|varðandi|sem þú nefndir)\b"),
}
DURATION_PATTERNS = {
    "en": re.compile(r"\b(how long|how much time|duration|take long)\b"),
    "is": re.compile(r"\b(hversu lengi|hvað tekur|hve lengi|hvað er það lengi|langan tíma)\b"),
}
PACKAGE_PATTERNS = (
    ("date_night", re.compile(r"\b(date night|for two|stefnumót\w*|fyrir tvo)\b")),
    ("saman", re.compile(r"\bsaman\b")),
    ("ser", re.compile(r"\b(sér|ser)\b")),
)
DINING_PATTERN = re.compile(r"\b(food|dining|eat|menu|drink\w*|platter|bar|restaurant)\b|\b(mat\w*|veitingar\w*|drykk\w*|platt\w*)")


class KnowledgeSource(Protocol):
    async def lookup(self, message: str) -> list[KnowledgeMatch]:
        ...


def _keyword_pattern(keyword: str) -> re.Pattern:
    body = r"\s+".join(re.escape(part) for part in keyword.casefold().split())
    return re.compile(rf"(?<!\w){body}(?!\w)")


class StaticKnowledgeSource:
    """Keyword lookup over a bundled ``kb_<language>.yaml`` pack."""

    def __init__(self, language: str, entries: Optional[list[dict]] = None):
        self.language = language
        if entries is None:
            entries = load_table(f"kb_{language}").get("entries") or []
        self._entries = [
            (entry.get("type", "general"), [_keyword_pattern(str(k)) for k in entry.get("keywords") or []], entry.get("content"))
            for entry in entries
            if isinstance(entry, dict)
        ]

    async def lookup(self, message: str) -> list[KnowledgeMatch]:
        text = (message or "").casefold()
        matches = []
        for entry_type, patterns, content in self._entries:
            if any(pattern.search(text) for pattern in patterns):
                matches.append(KnowledgeMatch(type=entry_type, content=content))
        return matches


class VectorKnowledgeSource:
    """Embedding search against a Qdrant collection, filtered by language."""

    def __init__(
        self,
        language: str,
        qdrant_host: str,
        collection: str,
        embedding_url: str,
        api_key: Optional[str] = None,
        limit: int = 5,
        score_threshold: float = 0.5,
        timeout_seconds: float = 30.0,
    ):
        self.language = language
        self.qdrant_host = qdrant_host
        self.collection = collection
        self.embedding_url = embedding_url
        self.api_key = api_key
        self.limit = limit
        self.score_threshold = score_threshold
        self.timeout_seconds = timeout_seconds

    async def get_embedding(self, client: httpx.AsyncClient, text: str) -> list[float]:
        response = await client.post(self.embedding_url, json={"inputs": text})
        if response.status_code != 200:
            raise httpx.HTTPStatusError(
                f"Embedding error: {response.status_code}", request=response.request, response=response
            )
        data = response.json()
        # Handle different response formats
        if isinstance(data, list) and len(data) > 0:
            return data[0] if isinstance(data[0], list) else data
        return data.get("embedding") or data.get("embeddings") or data

    async def lookup(self, message: str) -> list[KnowledgeMatch]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                embedding = await self.get_embedding(client, message)
                response = await client.post(
                    f"{self.qdrant_host}/collections/{self.collection}/points/search",
                    headers={"api-key": self.api_key} if self.api_key else {},
                    json={
                        "vector": embedding,
                        "limit": self.limit,
                        "score_threshold": self.score_threshold,
                        "filter": {"must": [{"key": "metadata.language", "match": {"value": self.language}}]},
                        "with_payload": True,
                    },
                )
        except httpx.HTTPError as exc:
            logger.warning("Knowledge search failed", extra={"context": {"error": str(exc), "language": self.language}})
            await alert_warning("Knowledge search failed", {"error": str(exc)[:100], "query": message[:50]})
            return []

        if response.status_code != 200:
            logger.error(f"Qdrant search error: {response.status_code} - {response.text}")
            await alert_warning("Qdrant search failed", {"status": response.status_code, "query": message[:50]})
            return []

        results = []
        for point in response.json().get("result", []):
            payload = point.get("payload", {})
            metadata = payload.get("metadata", {})
            results.append(
                KnowledgeMatch(
                    type=metadata.get("type", "general"),
                    content=payload.get("content"),
                    score=point.get("score"),
                )
            )
        logger.info(f"Knowledge search: found {len(results)} results for '{message[:30]}...'")
        return results


def _content_words(message: str, language: str) -> list[str]:
    stop_words = STOP_WORDS.get(language, set()) | STOP_WORDS["en"]
    return [word for word in re.findall(r"\w+", message.casefold()) if len(word) > 3 and word not in stop_words]


def is_acknowledgment_like(message: str) -> bool:
    text = (message or "").casefold()
    if len(text.split()) > ACKNOWLEDGMENT_WORD_LIMIT:
        return False
    return any(re.search(rf"(?<!\w){re.escape(word)}(?!\w)", text) for word in ACKNOWLEDGMENT_WORDS)


def is_short_message(message: str) -> bool:
    text = (message or "").strip()
    return len(text) < SHORT_MESSAGE_CHARS and len(text.split()) <= SHORT_MESSAGE_WORDS


def calculate_confidence(message: str, matches: list[KnowledgeMatch], language: str = "en") -> float:
    """Score how well the matches cover the message's content words."""
    if not message:
        return 0.0
    if message.count("?") >= 2 and len(matches) >= 2:
        return MULTI_PART_CONFIDENCE
    if is_acknowledgment_like(message):
        return ACKNOWLEDGMENT_FLOOR

    words = _content_words(message, language)
    if not words or not matches:
        return 0.0
    best = 0.0
    for match in matches:
        serialized = json.dumps(match.content, ensure_ascii=False, default=str).casefold()
        found = sum(1 for word in words if word in serialized)
        best = max(best, found / len(words))
    return best


def confidence_tier(score: float) -> str:
    if score >= CONFIDENCE_HIGH:
        return "high"
    if score >= CONFIDENCE_MEDIUM:
        return "medium"
    if score >= CONFIDENCE_LOW:
        return "low"
    return "none"


def topic_of(match: KnowledgeMatch) -> str:
    topic = KNOWLEDGE_TYPE_TOPICS.get(match.type)
    return topic.value if topic else match.type


def detect_package_variant(message: str) -> Optional[str]:
    text = (message or "").casefold()
    for name, pattern in PACKAGE_PATTERNS:
        if pattern.search(text):
            return name
    return None


def has_anaphora(message: str, language: str) -> bool:
    pattern = ANAPHORA_PATTERNS.get(language, ANAPHORA_PATTERNS["en"])
    return bool(pattern.search((message or "").casefold()))


def is_duration_question(message: str, language: str) -> bool:
    pattern = DURATION_PATTERNS.get(language, DURATION_PATTERNS["en"])
    return bool(pattern.search((message or "").casefold()))


@dataclass
class RetrievalOutcome:
    matches: list[KnowledgeMatch]
    confidence: float
    topic: Optional[str] = None
    unknown: bool = False
    deflection: Optional[str] = None
    direct_answer: Optional[str] = None
    cacheable: bool = True
    update: ContextUpdate = field(default_factory=ContextUpdate)

    @property
    def confidence_tier(self) -> str:
        return confidence_tier(self.confidence)


class KnowledgeRetriever:
    def __init__(self, sources: dict[str, KnowledgeSource], templates: ResponseTemplates, default_language: str = "en"):
        self.sources = sources
        self.templates = templates
        self.default_language = default_language

    def _source(self, language: str) -> KnowledgeSource:
        return self.sources.get(language) or self.sources[self.default_language]

    def duration_answer(self, topic: Optional[str], language: str) -> Optional[str]:
        if not topic:
            return None
        return self.templates.text("duration", topic, language=language) or None

    async def retrieve(self, message: str, session: SessionContext, language: str) -> RetrievalOutcome:
        remembered = session.last_topic
        anaphoric = bool(remembered) and has_anaphora(message, language)

        if anaphoric and is_duration_question(message, language):
            answer = self.duration_answer(remembered, language)
            if answer:
                logger.info(
                    "Duration follow-up answered from context",
                    extra={"context": {"session_id": session.session_id, "topic": remembered}},
                )
                match = KnowledgeMatch(type=remembered, content=answer, priority="context", duration_override=answer)
                return RetrievalOutcome(
                    matches=[match],
                    confidence=1.0,
                    topic=remembered,
                    direct_answer=answer,
                    cacheable=False,
                    update=ContextUpdate(topic=remembered),
                )

        matches = await self._source(language).lookup(message)
        update = ContextUpdate()

        package = detect_package_variant(message)
        if package:
            update.current_package = package
        elif session.current_package and DINING_PATTERN.search(message.casefold()):
            matches = matches + await self._package_context(session.current_package, language)

        if anaphoric and matches:
            scoped = [replace(match, priority="context") for match in matches if topic_of(match) == remembered]
            if scoped:
                matches = scoped

        topic = detect_topic(message, matches)
        if anaphoric and remembered and topic is None:
            topic = _as_topic(remembered)
        if topic is not None:
            update.topic = topic.value
            if topic == Topic.SEASONAL:
                update.seasonal = detect_seasonal_context(message)

        confidence = calculate_confidence(message, matches, language)
        outcome = RetrievalOutcome(matches=matches, confidence=confidence, topic=update.topic, update=update)

        if not matches and confidence == 0 and not is_short_message(message):
            outcome.unknown = True
            outcome.cacheable = False
            outcome.deflection = self.templates.choose(
                "unknown_topic",
                language=language,
                recent=session.recent_responses(),
                seed=f"{session.session_id}:{message}",
            )
        return outcome

    async def _package_context(self, package: str, language: str) -> list[KnowledgeMatch]:
        query = "date night" if package == "date_night" else package
        found = await self._source(language).lookup(query)
        return [
            replace(match, priority="current_package")
            for match in found
            if match.type == "packages" and _mentions_package(match.content, package)
        ]


def _mentions_package(content: Any, package: str) -> bool:
    if isinstance(content, dict):
        return package in content
    return package in json.dumps(content, ensure_ascii=False, default=str).casefold()


def _as_topic(value: str) -> Optional[Topic]:
    try:
        return Topic(value)
    except ValueError:
        return None
