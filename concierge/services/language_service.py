"""Layered language classification with session stickiness.

Strong-evidence signals come from ``knowledge/language_signals.yaml``. When
exactly one language fires it wins outright, even over the session's prior
language. When both fire the longest matched signal decides, then the prior
language, then the configured default. With no signal at all the session's
language is kept, or the default is used for a fresh session.
"""

import re
import unicodedata
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from concierge.logging_config import get_logger
from concierge.models.session import UNKNOWN_LANGUAGE
from concierge.services.data_tables import load_table

logger = get_logger("language_service")

SUPPORTED_LANGUAGES = ("en", "is")

CONFIDENCE_HIGH = "high"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_LOW = "low"

_DIGIT_TOKEN_RE = re.compile(r"\S*\d\S*")
_LETTER_RE = re.compile(r"[^\W\d_]")


@dataclass(frozen=True)
class LanguageDecision:
    language: str
    confidence: str
    reason: str
    matched: Optional[str] = None


@dataclass(frozen=True)
class LanguageSignals:
    language: str
    pattern: re.Pattern


def _word_alternation(entries: list[str]) -> str:
    ordered = sorted({entry.casefold().strip() for entry in entries if entry and entry.strip()}, key=len, reverse=True)
    return "|".join(r"\s+".join(re.escape(part) for part in entry.split()) for entry in ordered)


@lru_cache(maxsize=1)
def load_signals() -> tuple[LanguageSignals, ...]:
    table = load_table("language_signals").get("languages") or {}
    signals = []
    for language in SUPPORTED_LANGUAGES:
        entry = table.get(language) or {}
        branches = []
        words = _word_alternation(list(entry.get("phrases") or []) + list(entry.get("words") or []))
        if words:
            branches.append(rf"(?<!\w)(?:{words})(?!\w)")
        characters = entry.get("characters")
        if characters:
            branches.append(rf"\w*{characters}\w*")
        if branches:
            signals.append(LanguageSignals(language=language, pattern=re.compile("|".join(branches))))
    return tuple(signals)


def is_ambiguous_input(message: str) -> bool:
    """Pure numbers, identifier-like single tokens and bare emoji carry no language."""
    stripped = (message or "").strip()
    if not stripped:
        return True
    if not _LETTER_RE.search(stripped):
        return True
    tokens = stripped.split()
    return len(tokens) == 1 and any(char.isdigit() for char in stripped)


def prepare_for_signals(message: str) -> str:
    text = unicodedata.normalize("NFC", message or "").casefold()
    text = _DIGIT_TOKEN_RE.sub(" ", text)
    return re.sub(r"\s+", " ", text).strip()


def find_longest_signals(message: str) -> dict[str, str]:
    """Return the longest matched signal per language."""
    if is_ambiguous_input(message):
        return {}
    text = prepare_for_signals(message)
    if not text:
        return {}
    found: dict[str, str] = {}
    for signals in load_signals():
        longest = ""
        for match in signals.pattern.finditer(text):
            if len(match.group(0)) > len(longest):
                longest = match.group(0)
        if longest:
            found[signals.language] = longest
    return found


class LanguageClassifier:
    def __init__(self, default_language: str = "en"):
        if default_language not in SUPPORTED_LANGUAGES:
            raise ValueError(f"Unsupported default language: {default_language}")
        self.default_language = default_language

    def classify(self, message: str, prior_language: Optional[str] = None) -> LanguageDecision:
        prior = prior_language if prior_language in SUPPORTED_LANGUAGES else None
        found = find_longest_signals(message)

        if len(found) == 1:
            language, matched = next(iter(found.items()))
            return LanguageDecision(language, CONFIDENCE_HIGH, "strong_signal", matched)

        if len(found) > 1:
            decision = self._break_tie(found, prior)
            logger.debug(
                "Language tie-break",
                extra={"context": {"signals": found, "prior": prior, "chosen": decision.language}},
            )
            return decision

        if prior:
            return LanguageDecision(prior, CONFIDENCE_MEDIUM, "sticky")
        return LanguageDecision(self.default_language, CONFIDENCE_LOW, "default")

    def _break_tie(self, found: dict[str, str], prior: Optional[str]) -> LanguageDecision:
        longest = max(len(matched) for matched in found.values())
        leaders = [language for language in SUPPORTED_LANGUAGES if len(found.get(language, "")) == longest]
        if len(leaders) == 1:
            language = leaders[0]
        elif prior in leaders:
            language = prior
        else:
            language = self.default_language if self.default_language in leaders else leaders[0]
        return LanguageDecision(language, CONFIDENCE_HIGH, "tie_break", found[language])


def resolve_session_language(language: Optional[str], default: str = "en") -> str:
    if language and language != UNKNOWN_LANGUAGE and language in SUPPORTED_LANGUAGES:
        return language
    return default
