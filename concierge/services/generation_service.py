"""Prompt building and retried completion calls for knowledge-grounded replies."""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from concierge.logging_config import get_logger, log_timing
from concierge.models.knowledge import KnowledgeMatch
from concierge.models.session import SessionContext
from concierge.services.alert_service import alert_error
from concierge.services.errors import FatalUpstreamError, TransientUpstreamError
from concierge.services.llm.base import LLMProvider
from concierge.services.topic_service import get_current_season, sunset_facts

logger = get_logger("generation_service")

DEFAULT_MAX_TOKENS = 500

LANGUAGE_NAMES = {"en": "English", "is": "Icelandic"}

COMPLEX_TOPIC_WORDS = (
    "ritual",
    "changing",
    "facilities",
    "packages",
    "gift",
    "menu",
    "food",
    "transport",
    "accommodation",
    "ritúal",
    "búningsklefi",
    "aðstaða",
    "saman",
    "sér",
    "matseðill",
    "veitingar",
    "stefnumót",
    "fyrir tvo",
    "platta",
    "smakk bar",
    "keimur",
    "gelmir",
    "handklæði",
)
RITUAL_PATTERN = re.compile(r"ritual|ritúal|skjól|skref|þrep")
TRANSPORT_PATTERN = re.compile(r"kemst|komast|strætó|rútu|transport|directions|shuttle|\bbus\b")
MENU_PATTERN = re.compile(r"matseð|platta|plattar|smakk bar|keimur|gelmir|veitingar|\bbar\b|drykkir|\bmenu\b")
COMPARISON_PATTERN = re.compile(r"munur|muninn|mismunur|öðruvísi|difference|compare|versus|\bvs\b")
FACILITIES_PATTERN = re.compile(r"búningsklef|aðstað|aðstöð|klefi|klefa|changing room|facilit")
MULTI_PART_PATTERN = re.compile(r"\s(and|og)\s")

SYSTEM_RULES = {
    "en": (
        "You are the concierge for Sky Lagoon, a geothermal lagoon near Reykjavík. "
        "Answer warmly and concisely in the brand voice, saying 'our' rather than 'the' for our facilities and services. "
        "Use ONLY the knowledge provided for facts about Sky Lagoon. "
        "If the knowledge does not cover the question, say so and point the guest to +354 527 6800 or reservations@skylagoon.is."
    ),
    "is": (
        "Þú ert þjónustufulltrúi Sky Lagoon, jarðhitalóns nálægt Reykjavík. "
        "Svaraðu hlýlega og hnitmiðað. Notaðu AÐEINS upplýsingarnar sem fylgja fyrir staðreyndir um Sky Lagoon. "
        "Ef upplýsingarnar svara ekki spurningunni, vísaðu á síma 527 6800 eða reservations@skylagoon.is."
    ),
}


def get_max_tokens(message: str) -> int:
    """Output budget by topic complexity of the guest message."""
    text = (message or "").casefold()

    if RITUAL_PATTERN.search(text):
        return 1000
    if TRANSPORT_PATTERN.search(text):
        return 1000
    if MENU_PATTERN.search(text):
        return 1200

    multi_part = bool(MULTI_PART_PATTERN.search(text)) or text.count("?") > 1
    comparison = bool(COMPARISON_PATTERN.search(text))
    facilities = bool(FACILITIES_PATTERN.search(text))
    complex_topic = any(word in text for word in COMPLEX_TOPIC_WORDS)

    if comparison and facilities:
        return 1200
    if complex_topic and multi_part:
        return 1000
    if complex_topic:
        return 800
    if facilities:
        return 800
    if multi_part:
        return 600
    return DEFAULT_MAX_TOKENS


def trim_text(text: str, max_chars: int) -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


@dataclass
class PromptBundle:
    system: str
    knowledge: str
    history: List[dict] = field(default_factory=list)
    user_message: str = ""
    scenario: List[str] = field(default_factory=list)

    def to_messages(self) -> List[dict]:
        system = self.system
        if self.knowledge:
            system += f"\n\nKnowledge Base Information:\n{self.knowledge}"
        if self.scenario:
            system += "\n\nConversation context:\n" + "\n".join(f"- {line}" for line in self.scenario)
        messages = [{"role": "system", "content": system}]
        messages.extend(self.history)
        messages.append({"role": "user", "content": self.user_message})
        return messages


def format_knowledge(matches: List[KnowledgeMatch], max_chars: int) -> str:
    if not matches:
        return ""
    payload = []
    for match in matches:
        item = {"type": match.type, "content": match.content}
        if match.priority:
            item["priority"] = match.priority
        if match.duration_override:
            item["duration"] = match.duration_override
        payload.append(item)
    return trim_text(json.dumps(payload, ensure_ascii=False, default=str), max_chars)


def scenario_lines(session: SessionContext) -> List[str]:
    lines = []
    if session.late_arrival and session.late_arrival.is_late:
        minutes = session.late_arrival.minutes
        detail = f" by about {minutes} minutes" if minutes is not None else ""
        lines.append(f"The guest is running late{detail} ({session.late_arrival.kind}). Bookings have a 30-minute grace period.")
    if session.booking_modification and session.booking_modification.requested:
        lines.append(
            f"The guest wants to change their booking ({session.booking_modification.kind}). "
            "Changes go through +354 527 6800 or reservations@skylagoon.is."
        )
    if session.sold_out:
        lines.append("Today is sold out, so rebooking at another time may be needed.")
    if session.current_package:
        lines.append(f"The guest is asking about the {session.current_package} package.")
    return lines


def build_prompt_bundle(
    message: str,
    session: SessionContext,
    matches: List[KnowledgeMatch],
    language: str,
    now: Optional[datetime] = None,
    history_limit: int = 6,
    max_knowledge_chars: int = 6000,
) -> PromptBundle:
    now = now or datetime.now()
    season = get_current_season(now)
    language_name = LANGUAGE_NAMES.get(language, "English")

    system = SYSTEM_RULES.get(language, SYSTEM_RULES["en"])
    system += (
        f"\n\nToday is {now.strftime('%A %d %B %Y')}. Current season: {season.label}. "
        f"Opening hours today: {season.opening_time} - {season.closing_time}. "
        f"The lagoon closes at {season.lagoon_close}, the bar at {season.bar_close} "
        f"and the last ritual starts at {season.last_ritual}."
    )
    sunset = sunset_facts(message, now)
    if sunset:
        system += f" {sunset}"
    system += f"\nThe response MUST be in {language_name}."

    history = [{"role": turn.role, "content": turn.content} for turn in session.history(history_limit)]
    return PromptBundle(
        system=system,
        knowledge=format_knowledge(matches, max_knowledge_chars),
        history=history,
        user_message=message,
        scenario=scenario_lines(session),
    )


class GenerationService:
    def __init__(
        self,
        provider: LLMProvider,
        max_retries: int = 3,
        initial_retry_delay: float = 1.0,
        timeout_seconds: float = 15.0,
        temperature: float = 0.7,
        model: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.max_retries = max(1, max_retries)
        self.initial_retry_delay = initial_retry_delay
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.model = model
        self.sleep = sleep

    def retry_delay(self, attempt: int) -> float:
        return self.initial_retry_delay * (2 ** (attempt - 1))

    async def generate(self, bundle: PromptBundle, message: Optional[str] = None, context: Optional[dict] = None) -> str:
        """Call the provider with retries. Raises FatalUpstreamError when no reply can be produced."""
        max_tokens = get_max_tokens(message if message is not None else bundle.user_message)
        messages = bundle.to_messages()
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            started = time.monotonic()
            try:
                response = await asyncio.wait_for(
                    self.provider.complete(
                        messages,
                        max_tokens=max_tokens,
                        model=self.model,
                        temperature=self.temperature,
                    ),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                last_error = TransientUpstreamError(f"LLM timeout after {self.timeout_seconds}s")
            except TransientUpstreamError as exc:
                last_error = exc
            else:
                log_timing(
                    logger,
                    "llm_ms",
                    (time.monotonic() - started) * 1000,
                    {**(context or {}), "attempt": attempt, "max_tokens": max_tokens, "messages": len(messages)},
                )
                if response.content and response.content.strip():
                    return response.content.strip()
                last_error = TransientUpstreamError("LLM returned an empty reply")

            logger.warning(
                "Completion attempt failed",
                extra={
                    "context": {**(context or {}), "attempt": attempt, "max_retries": self.max_retries, "error": str(last_error)}
                },
            )
            if attempt < self.max_retries:
                await self.sleep(self.retry_delay(attempt))

        await alert_error(
            "LLM generation failed",
            {"attempts": self.max_retries, "error": str(last_error)[:100], **(context or {})},
        )
        raise FatalUpstreamError(f"Failed after {self.max_retries} attempts: {last_error}", attempts=self.max_retries)
