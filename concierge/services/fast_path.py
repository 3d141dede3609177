"""Ordered deterministic detectors that can answer without retrieval or generation.

Every detector only reads the session. The winning detector describes its
state change as a ``ContextUpdate`` and the pipeline applies it in one place.
"""

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Optional, Protocol

from concierge.logging_config import get_logger
from concierge.models.session import BookingModification, ContextUpdate, LateArrivalRecord, SessionContext
from concierge.services.data_tables import load_table
from concierge.services.scenario_service import (
    ArrivalScenario,
    classify_booking_change,
    detect_arrival_scenario,
    extract_times,
    mentions_sold_out,
    normalize_scenario_text,
)
from concierge.services.templates import ResponseTemplates
from concierge.services.topic_service import Topic

logger = get_logger("fast_path")

SMALL_TALK_MAX_TOKENS = 8
ACKNOWLEDGMENT_MAX_TOKENS = 8
SIMPLE_ACKNOWLEDGMENT_MAX_TOKENS = 4

SMALL_TALK_CATEGORIES = ("wellbeing", "identity", "meeting", "returning")
ACKNOWLEDGMENT_CATEGORIES = ("ending", "continuity", "praise", "positive")

EMOTICON_PATTERN = re.compile(r"(?<!\w)(?:[:;=8][\-o^']?[)(\]\[dDpP/\\|*3]|[xX][dD]|<3|\^_\^)(?!\w)")
REPEATED_CHAR_PATTERN = re.compile(r"(\w)\1{2,}")
QUESTION_START_PATTERN = re.compile(
    r"^(what|how|when|where|which|who|why|is|are|can|could|do|does|will|would|should)\b"
    r"|^(hvað|hvernig|hvenær|hvar|hver|hvaða|hvers|er|eru|get|getur|má)\b"
)
CLAUSE_SPLIT_PATTERN = re.compile(r"[,.;:!]+|\b(?:and|but|og|en)\b", re.IGNORECASE)


def _strip_symbols(text: str) -> str:
    return "".join(
        " " if unicodedata.category(char) in {"So", "Sk", "Cs", "Co", "Cf"} or char in "\ufe0f\u200d" else char
        for char in text
    )


def normalize_phrase_text(message: str) -> str:
    """Strip emoji, emoticons and punctuation, collapse repeats, casefold."""
    text = unicodedata.normalize("NFC", message or "")
    text = EMOTICON_PATTERN.sub(" ", text)
    text = _strip_symbols(text)
    text = text.replace("'", "").replace("’", "")
    text = re.sub(r"[^\w\s]|_", " ", text)
    text = text.casefold()
    text = REPEATED_CHAR_PATTERN.sub(r"\1", text)
    return re.sub(r"\s+", " ", text).strip()


def opens_question_clause(message: str) -> bool:
    """True when any clause of the message starts like a question."""
    for clause in CLAUSE_SPLIT_PATTERN.split(message or ""):
        text = normalize_phrase_text(clause)
        if text and QUESTION_START_PATTERN.search(text):
            return True
    return False


def _phrase_list(values) -> list[str]:
    phrases = {normalize_phrase_text(str(value)) for value in values or []}
    return sorted((phrase for phrase in phrases if phrase), key=len, reverse=True)


def _contains_phrase(text: str, phrase: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(phrase)}(?!\w)", text) is not None


@dataclass
class FastPathMatch:
    category: str
    response: str
    topic: Optional[str] = None
    update: ContextUpdate = field(default_factory=ContextUpdate)
    cacheable: bool = False


class FastPathDetector(Protocol):
    name: str

    def detect(self, message: str, session: SessionContext, language: str) -> Optional[FastPathMatch]:
        ...


class PhraseBook:
    """Normalized vocabularies from ``knowledge/phrases.yaml``."""

    def __init__(self, table: Optional[dict] = None):
        table = table if table is not None else load_table("phrases")
        self.greetings = self._all_languages(table.get("greetings"))
        self.returning_markers = self._all_languages(table.get("returning_markers"))
        self.small_talk = {name: self._all_languages(values) for name, values in (table.get("small_talk") or {}).items()}
        acknowledgments = table.get("acknowledgments") or {}
        self.acknowledgments = {name: self._all_languages(values) for name, values in acknowledgments.items()}
        self.human_request = self._all_languages(table.get("human_request"))

    @staticmethod
    def _all_languages(section) -> list[str]:
        if not isinstance(section, dict):
            return []
        merged: list[str] = []
        for values in section.values():
            merged.extend(values or [])
        return _phrase_list(merged)


class ArrivalScenarioDetector:
    name = "arrival_scenario"

    def __init__(self, templates: ResponseTemplates):
        self.templates = templates

    def detect(self, message: str, session: SessionContext, language: str) -> Optional[FastPathMatch]:
        result = detect_arrival_scenario(message)
        if not result.detected:
            return None

        sold_out = session.sold_out or mentions_sold_out(message)
        path: tuple[str, ...] = ("late_arrival", result.kind.value)
        if result.kind == ArrivalScenario.MODERATE_DELAY:
            path = path + ("sold_out" if sold_out else "normal",)

        response = self.templates.choose(
            *path,
            language=language,
            recent=session.recent_responses(),
            seed=f"{session.session_id}:{message}",
            minutes=result.minutes,
        )
        is_late = result.kind != ArrivalScenario.EARLY_ARRIVAL
        update = ContextUpdate(
            topic=Topic.LATE_ARRIVAL.value,
            late_arrival=LateArrivalRecord(is_late=is_late, kind=result.kind.value, minutes=result.minutes),
            sold_out=True if sold_out and not session.sold_out else None,
            conversation_started=True,
        )
        logger.info(
            "Arrival scenario detected",
            extra={"context": {"session_id": session.session_id, "kind": result.kind.value, "minutes": result.minutes}},
        )
        return FastPathMatch(
            category=f"late_arrival.{result.kind.value}",
            response=response,
            topic=Topic.LATE_ARRIVAL.value,
            update=update,
        )


class GreetingDetector:
    name = "greeting"

    def __init__(self, templates: ResponseTemplates, phrases: PhraseBook):
        self.templates = templates
        self.phrases = phrases

    def split_marker(self, text: str) -> tuple[str, bool]:
        for marker in self.phrases.returning_markers:
            if text.endswith(" " + marker):
                return text[: -len(marker) - 1].strip(), True
        return text, False

    def detect(self, message: str, session: SessionContext, language: str) -> Optional[FastPathMatch]:
        text = normalize_phrase_text(message)
        if not text:
            return None
        base, has_marker = self.split_marker(text)
        if base not in self.phrases.greetings:
            return None

        kind = "returning" if has_marker or session.conversation_started else "opening"
        response = self.templates.choose(
            "greeting",
            kind,
            language=language,
            recent=session.recent_responses(),
            seed=f"{session.session_id}:{text}",
        )
        return FastPathMatch(
            category=f"greeting.{kind}",
            response=response,
            update=ContextUpdate(conversation_started=True, is_first_greeting=False),
        )


class BookingChangeDetector:
    name = "booking_change"

    def __init__(self, templates: ResponseTemplates):
        self.templates = templates

    def detect(self, message: str, session: SessionContext, language: str) -> Optional[FastPathMatch]:
        kind = classify_booking_change(message)
        if kind is None:
            return None
        times = extract_times(normalize_scenario_text(message))
        response = self.templates.choose(
            "booking_change",
            language=language,
            recent=session.recent_responses(),
            seed=f"{session.session_id}:{message}",
        )
        update = ContextUpdate(
            topic=Topic.BOOKING.value,
            booking_modification=BookingModification(
                requested=True,
                kind=kind.value,
                original_time=times[0].text if times else None,
            ),
            clear_late_arrival=True,
            conversation_started=True,
        )
        return FastPathMatch(
            category=f"booking_change.{kind.value}",
            response=response,
            topic=Topic.BOOKING.value,
            update=update,
        )


class SmallTalkDetector:
    name = "small_talk"

    def __init__(self, templates: ResponseTemplates, phrases: PhraseBook):
        self.templates = templates
        self.phrases = phrases

    def detect(self, message: str, session: SessionContext, language: str) -> Optional[FastPathMatch]:
        text = normalize_phrase_text(message)
        if not text or len(text.split()) > SMALL_TALK_MAX_TOKENS:
            return None
        for category in SMALL_TALK_CATEGORIES:
            if any(_contains_phrase(text, phrase) for phrase in self.phrases.small_talk.get(category, [])):
                response = self.templates.choose(
                    "small_talk",
                    category,
                    language=language,
                    recent=session.recent_responses(),
                    seed=f"{session.session_id}:{text}",
                )
                return FastPathMatch(
                    category=f"small_talk.{category}",
                    response=response,
                    topic=Topic.SMALL_TALK.value,
                    update=ContextUpdate(topic=Topic.SMALL_TALK.value, conversation_started=True),
                )
        return None


class AcknowledgmentDetector:
    name = "acknowledgment"

    def __init__(self, templates: ResponseTemplates, phrases: PhraseBook):
        self.templates = templates
        self.phrases = phrases

    def is_simple(self, text: str) -> bool:
        """True when the whole message is made of simple acknowledgment phrases."""
        remaining = text
        simple = self.phrases.acknowledgments.get("simple", [])
        while remaining:
            for phrase in simple:
                if remaining == phrase or remaining.startswith(phrase + " "):
                    remaining = remaining[len(phrase) :].strip()
                    break
            else:
                return False
        return True

    def categorize(self, message: str) -> Optional[str]:
        if "?" in (message or ""):
            return None
        text = normalize_phrase_text(message)
        if not text or opens_question_clause(message):
            return None
        tokens = len(text.split())
        if tokens <= ACKNOWLEDGMENT_MAX_TOKENS:
            for category in ACKNOWLEDGMENT_CATEGORIES:
                if any(_contains_phrase(text, phrase) for phrase in self.phrases.acknowledgments.get(category, [])):
                    return category
        if tokens <= SIMPLE_ACKNOWLEDGMENT_MAX_TOKENS and self.is_simple(text):
            return "simple"
        return None

    def follow_up_key(self, session: SessionContext) -> Optional[str]:
        if session.last_topic == Topic.SEASONAL.value and session.seasonal:
            return f"seasonal_{session.seasonal.season}"
        if session.last_topic and self.templates.has("follow_up", session.last_topic):
            return session.last_topic
        if session.last_topic:
            return "default"
        return None

    def detect(self, message: str, session: SessionContext, language: str) -> Optional[FastPathMatch]:
        category = self.categorize(message)
        if category is None:
            return None

        recent = session.recent_responses()
        seed = f"{session.session_id}:{message}"
        body = self.templates.choose("acknowledgment", category, language=language, recent=recent, seed=seed)
        if category in {"positive", "simple"}:
            prefix = self.templates.choose("acknowledgment", "confirmation", language=language, seed=seed)
            body = f"{prefix}{body}"
        if category in {"positive", "simple", "praise"}:
            key = self.follow_up_key(session)
            if key:
                follow_up = self.templates.choose("follow_up", key, language=language, recent=recent, seed=seed)
                body = f"{body} {follow_up}".strip()

        return FastPathMatch(category=f"acknowledgment.{category}", response=body)


class FastPathChain:
    def __init__(self, detectors: list[FastPathDetector]):
        self.detectors = list(detectors)

    @classmethod
    def default(cls, templates: ResponseTemplates, phrases: Optional[PhraseBook] = None) -> "FastPathChain":
        phrases = phrases or PhraseBook()
        return cls(
            [
                ArrivalScenarioDetector(templates),
                GreetingDetector(templates, phrases),
                BookingChangeDetector(templates),
                SmallTalkDetector(templates, phrases),
                AcknowledgmentDetector(templates, phrases),
            ]
        )

    def run(self, message: str, session: SessionContext, language: str) -> Optional[FastPathMatch]:
        for detector in self.detectors:
            try:
                match = detector.detect(message, session, language)
            except Exception as exc:
                logger.error(
                    "Fast-path detector failed",
                    extra={"context": {"detector": detector.name, "error": str(exc)}},
                    exc_info=True,
                )
                continue
            if match is not None:
                logger.debug(
                    "Fast-path match",
                    extra={"context": {"detector": detector.name, "category": match.category}},
                )
                return match
        return None
