"""Deterministic rewrites over generated replies: brand terminology and emoji policy."""

import re
from typing import Optional

from concierge.logging_config import get_logger
from concierge.services.data_tables import load_table

logger = get_logger("postprocess_service")

EMOJI_PATTERN = re.compile(
    "["
    "\U0001F000-\U0001FAFF"
    "\u2300-\u23FF"
    "\u2600-\u27BF"
    "\u2B00-\u2BFF"
    "\uFE0F\u200D"
    "]+"
)

SERIOUS_PATTERN = re.compile(r"cancel|complaint|refund|error|hætta við|kvörtun|endurgreiðslu")

# Checked in order; the first matching rule picks the suffix.
SUFFIX_RULES = (
    ("✨", re.compile(r"ritual|ritúal|skjól")),
    ("📍", re.compile(r"\bwhere\b|location|address|\bhvar\b|staðsetning|heimilisfang")),
    ("🌞", re.compile(r"summer|july|august|sumar|júlí|ágúst")),
    ("☁️", re.compile(r"weather|temperature|veður|hitastig")),
    ("🌅", re.compile(r"evening|sunset|kvöld|sólsetur")),
)
GREETING_PATTERNS = {
    "en": re.compile(r"^(hi|hello|hey|good|welcome)\b"),
    "is": re.compile(r"^(hæ|halló|sæl|sæll|góðan|komdu)"),
}


def choose_emoji_suffix(message: str, language: str) -> str:
    """At most one allow-listed emoji for the guest's topic; none for serious topics."""
    text = (message or "").casefold().strip()
    if SERIOUS_PATTERN.search(text):
        return ""
    for emoji, pattern in SUFFIX_RULES:
        if pattern.search(text):
            return emoji
    greeting = GREETING_PATTERNS.get(language, GREETING_PATTERNS["en"])
    if greeting.search(text):
        return "😊"
    return ""


def filter_emojis(text: str, message: str, language: str) -> str:
    stripped = EMOJI_PATTERN.sub("", text or "")
    stripped = re.sub(r"[ \t]{2,}", " ", stripped)
    stripped = re.sub(r"[ \t]+([.,!?])", r"\1", stripped).strip()
    suffix = choose_emoji_suffix(message, language)
    if suffix and stripped:
        return f"{stripped} {suffix}"
    return stripped


class TerminologyProcessor:
    """Single-pass phrase rewriting over an ordered rule table.

    Every rule and protected phrase of a language is compiled into one
    alternation, longest phrase first. Protected phrases map to themselves,
    so a replacement is never itself rewritten by a later rule.
    """

    def __init__(self, table: Optional[dict] = None):
        table = table if table is not None else load_table("terminology")
        self._patterns: dict[str, re.Pattern] = {}
        self._replacements: dict[str, dict[str, str]] = {}

        rules = table.get("rules") or {}
        protected = table.get("protected") or {}
        for language in set(rules) | set(protected):
            mapping: dict[str, str] = {}
            for phrase in protected.get(language) or []:
                mapping[str(phrase).casefold()] = str(phrase)
            for rule in rules.get(language) or []:
                phrase, replacement = str(rule[0]), str(rule[1])
                mapping.setdefault(phrase.casefold(), replacement)
            if not mapping:
                continue
            phrases = sorted(mapping, key=len, reverse=True)
            body = "|".join(r"\s+".join(re.escape(part) for part in phrase.split()) for phrase in phrases)
            self._patterns[language] = re.compile(rf"(?<!\w)(?:{body})(?!\w)", re.IGNORECASE)
            self._replacements[language] = mapping

    def rewrite(self, text: str, language: str) -> str:
        pattern = self._patterns.get(language)
        if not text or pattern is None:
            return text
        mapping = self._replacements[language]
        changed = []

        def substitute(match: re.Match) -> str:
            original = match.group(0)
            key = re.sub(r"\s+", " ", original).casefold()
            replacement = mapping.get(key, original)
            if key in mapping and replacement.casefold() == key:
                # Protected phrase: keep the original wording and case.
                return original
            if original[:1].isupper() and replacement:
                replacement = replacement[0].upper() + replacement[1:]
            changed.append(key)
            return replacement

        result = pattern.sub(substitute, text)
        if changed:
            logger.debug("Terminology rewritten", extra={"context": {"language": language, "phrases": changed}})
        return result

    def normalize(self, text: str, message: str, language: str) -> str:
        return filter_emojis(self.rewrite(text, language), message, language)
