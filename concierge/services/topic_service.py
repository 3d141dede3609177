import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from concierge.models.knowledge import KnowledgeMatch
from concierge.models.session import SeasonalContext
from concierge.services.data_tables import load_table


class Topic(str, Enum):
    PACKAGES = "packages"
    RITUAL = "ritual"
    TRANSPORTATION = "transportation"
    FACILITIES = "facilities"
    SEASONAL = "seasonal"
    DINING = "dining"
    BOOKING = "booking"
    SMALL_TALK = "small_talk"
    LATE_ARRIVAL = "late_arrival"
    GROUP_BOOKINGS = "group_bookings"
    HOURS = "hours"
    GIFT_CARDS = "gift_cards"
    WEATHER = "weather"


# First match wins, so narrower topics sit above broader ones.
TOPIC_PATTERNS: tuple[tuple[Topic, re.Pattern], ...] = (
    (Topic.GIFT_CARDS, re.compile(r"\bgift\s*(card|certificate|voucher)s?\b|\bgjafabr[eé]f\w*")),
    (Topic.GROUP_BOOKINGS, re.compile(r"\b(group|groups|corporate|team building|wedding|party of)\b|\bhóp\w*")),
    (Topic.PACKAGES, re.compile(r"\b(packages?|saman|sér|ser|pure|date night)\b|\b(pakk\w*|stefnumót\w*)")),
    (Topic.RITUAL, re.compile(r"\b(ritual|skjól|skjol|seven steps|7 steps)\b|\britúal\w*")),
    (Topic.TRANSPORTATION, re.compile(r"\b(transport\w*|bus|shuttle|drive|driving|transfer|parking|taxi|airport)\b|\b(rút\w*|skutl\w*|bílastæð\w*|strætó)")),
    (Topic.FACILITIES, re.compile(r"\b(facilities|facility|changing|shower\w*|lockers?|towels?|amenities)\b|\b(búningsklef\w*|sturt\w*|aðstað\w*|aðstöð\w*)")),
    (Topic.SEASONAL, re.compile(r"\b(winter|summer|northern lights|aurora|midnight sun)\b|\b(vetur\w*|sumar\w*|norðurljós\w*|miðnætursól\w*)")),
    (Topic.DINING, re.compile(r"\b(dining|food|restaurant|eat|menu|bar|drinks?|café|cafe|smakk)\b|\b(mat\w*|veitingar\w*|drykk\w*)")),
    (Topic.HOURS, re.compile(r"\b(hours?|open|opening|close|closing|closes)\b|\b(opi[ðn]\w*|opnunartím\w*|lokað|lokar)")),
    (Topic.WEATHER, re.compile(r"\b(weather|cold|rain|raining|snow|snowing|wind)\b|\b(veður\w*|rigning\w*|snjó\w*|kalt)")),
    (Topic.BOOKING, re.compile(r"\b(book|booking|reserve|reservation|cancel\w*|refund)\b|\b(bóka\w*|bókun\w*|panta\w*|afbók\w*)")),
)

KNOWLEDGE_TYPE_TOPICS = {
    "packages": Topic.PACKAGES,
    "ritual": Topic.RITUAL,
    "transportation": Topic.TRANSPORTATION,
    "facilities": Topic.FACILITIES,
    "seasonal_information": Topic.SEASONAL,
    "dining": Topic.DINING,
    "opening_hours": Topic.HOURS,
    "policies": Topic.BOOKING,
    "booking": Topic.BOOKING,
    "group_bookings": Topic.GROUP_BOOKINGS,
    "gift_tickets": Topic.GIFT_CARDS,
    "weather": Topic.WEATHER,
}

WINTER_PATTERN = re.compile(r"\b(winter|northern lights|aurora)\b|\b(vetur\w*|norðurljós\w*)")
SUMMER_PATTERN = re.compile(r"\b(summer|midnight sun)\b|\b(sumar\w*|miðnætursól\w*)")


def detect_topic(message: str, matches: Iterable[KnowledgeMatch] = ()) -> Optional[Topic]:
    """Topic from the message wording, else from the first typed knowledge match."""
    text = (message or "").casefold()
    for topic, pattern in TOPIC_PATTERNS:
        if pattern.search(text):
            return topic
    for match in matches:
        topic = KNOWLEDGE_TYPE_TOPICS.get(match.type)
        if topic:
            return topic
    return None


def detect_seasonal_context(message: str) -> Optional[SeasonalContext]:
    text = (message or "").casefold()
    if WINTER_PATTERN.search(text):
        subtopic = "northern_lights" if re.search(r"northern lights|aurora|norðurljós", text) else "general"
        return SeasonalContext(season="winter", subtopic=subtopic)
    if SUMMER_PATTERN.search(text):
        subtopic = "midnight_sun" if re.search(r"midnight sun|miðnætursól", text) else "general"
        return SeasonalContext(season="summer", subtopic=subtopic)
    return None


@dataclass(frozen=True)
class SeasonInfo:
    season: str
    opening_time: str
    closing_time: str
    last_ritual: str
    bar_close: str
    lagoon_close: str
    label: str


_HOLIDAYS = {
    (12, 24): SeasonInfo("holiday", "11:00", "16:00", "14:00", "15:00", "15:30", "Christmas Eve"),
    (12, 25): SeasonInfo("holiday", "11:00", "18:00", "16:00", "17:00", "17:30", "Christmas Day"),
    (12, 31): SeasonInfo("holiday", "11:00", "22:00", "20:00", "21:00", "21:30", "New Year's Eve"),
    (1, 1): SeasonInfo("holiday", "11:00", "22:00", "20:00", "21:00", "21:30", "New Year's Day"),
}


def get_current_season(now: datetime) -> SeasonInfo:
    holiday = _HOLIDAYS.get((now.month, now.day))
    if holiday:
        return holiday
    if now.month >= 11 or now.month <= 5:
        return SeasonInfo("winter", "11:00 weekdays, 10:00 weekends", "22:00", "20:00", "21:00", "21:30", "winter")
    if 6 <= now.month <= 9:
        return SeasonInfo("summer", "09:00", "23:00", "21:00", "22:00", "22:30", "summer")
    return SeasonInfo("autumn", "10:00", "23:00", "21:00", "22:00", "22:30", "autumn")


SUNSET_LOCATION = "Reykjavík"
_MAY_PATTERN = re.compile(r"\b(in|during|of|for|until|by)\s+may\b")
_THIS_MONTH_PATTERN = re.compile(r"\b(this|current) month\b|\bþennan mánuð\w*|\bnúverandi mánuð\w*")
_NEXT_MONTH_PATTERN = re.compile(r"\bnext month\b|\bnæsta mánuð\w*")


def _sunset_months() -> dict:
    return load_table("sunset").get("months") or {}


def _to_minutes(value: str) -> int:
    hour, minute = str(value).split(":")
    return int(hour) * 60 + int(minute)


def get_sunset_time(now: datetime) -> Optional[str]:
    """Sunset on the sampled day closest to ``now``; the earlier sample wins a tie."""
    times = (_sunset_months().get(now.month) or {}).get("times") or {}
    if not times:
        return None
    closest = min(sorted(times), key=lambda day: abs(day - now.day))
    return str(times[closest])


def get_month_average_sunset(month: int) -> Optional[str]:
    times = (_sunset_months().get(month) or {}).get("times") or {}
    if not times:
        return None
    minutes = [_to_minutes(value) for value in times.values()]
    hour, minute = divmod(int(sum(minutes) / len(minutes) + 0.5), 60)
    return f"{hour:02d}:{minute:02d}"


def month_name(month: int, language: str = "en") -> str:
    names = (_sunset_months().get(month) or {}).get("name") or {}
    return names.get(language) or names.get("en") or str(month)


def is_sunset_query(message: str) -> bool:
    text = (message or "").casefold()
    phrases = [phrase for values in (load_table("sunset").get("queries") or {}).values() for phrase in values]
    return any(re.search(rf"(?<!\w){re.escape(phrase)}", text) for phrase in phrases)


def match_month_in_query(message: str, now: datetime) -> Optional[int]:
    """Month the guest names, in English or Icelandic, or relative to ``now``."""
    text = (message or "").casefold()
    for number, entry in sorted(_sunset_months().items()):
        for name in (entry.get("name") or {}).values():
            name = name.casefold()
            if name == "may":
                # Bare "may" is usually the verb.
                if _MAY_PATTERN.search(text):
                    return number
            elif re.search(rf"\b{re.escape(name)}\b", text):
                return number
    if _THIS_MONTH_PATTERN.search(text):
        return now.month
    if _NEXT_MONTH_PATTERN.search(text):
        return now.month % 12 + 1
    return None


def sunset_facts(message: str, now: datetime) -> str:
    """Prompt lines with today's sunset and, for sunset questions about another month, its average."""
    today = get_sunset_time(now)
    if not today:
        return ""
    facts = f"Sunset in {SUNSET_LOCATION} today is around {today}."
    if not is_sunset_query(message):
        return facts
    month = match_month_in_query(message, now)
    if month and month != now.month:
        average = get_month_average_sunset(month)
        if average:
            facts += f" In {month_name(month)} the average sunset is around {average}."
    facts += " The guest is asking about the sunset, so give the time and relate it to today's opening hours."
    return facts
