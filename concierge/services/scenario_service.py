"""Arrival-delay and booking-change scenario detection.

``detect_arrival_scenario`` is a pure function over the message text. It
never raises and never touches session state; the fast-path layer turns its
result into a reply and a context update.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from concierge.logging_config import get_logger

logger = get_logger("scenario_service")

GRACE_PERIOD_MINUTES = 30
MODIFICATION_THRESHOLD_MINUTES = 60
MIDNIGHT_WRAP_MINUTES = 12 * 60


class ArrivalScenario(str, Enum):
    NONE = "none"
    FLIGHT_DELAY = "flight_delay"
    EARLY_ARRIVAL = "early_arrival"
    WITHIN_GRACE = "within_grace"
    MODERATE_DELAY = "moderate_delay"
    SIGNIFICANT_DELAY = "significant_delay"
    UNSPECIFIED_DELAY = "unspecified_delay"


class BookingChangeKind(str, Enum):
    DIFFERENT_DAY = "different_day"
    TRANSFER_CHANGE = "transfer_change"
    REFERENCE_CHANGE = "reference_change"
    EARLIER = "earlier"
    GENERAL = "general"


@dataclass(frozen=True)
class ScenarioDetectionResult:
    kind: ArrivalScenario
    minutes: Optional[int] = None
    booking_time: Optional[str] = None
    arrival_time: Optional[str] = None

    @property
    def detected(self) -> bool:
        return self.kind != ArrivalScenario.NONE


NO_SCENARIO = ScenarioDetectionResult(ArrivalScenario.NONE)

CHANGE_PATTERN = re.compile(
    r"\b(change|changing|move|moving|reschedul\w*|switch|postpone|push back|bring forward|rebook\w*|modify|swap)\b"
    r"|\b(breyta|breyti|færa|færi|flýta|fresta)\b"
)
LATENESS_PATTERN = re.compile(
    r"\b(late|later than|delay|delayed|delays|behind|behind schedule|won't make it|wont make it|"
    r"stuck in traffic|held up)\b"
    r"|\b(sein|seinn|seint|seinni|seinka\w*|seinkun\w*|tefst|tafir|töf)\b"
)
BARE_LATENESS_PATTERN = re.compile(
    r"\b(i'm|im|i am|we're|we are|i'll|we'll|will be|be|running|going to be|gonna be|arrive|arriving|get there)"
    r"\s+(?:a (?:bit|little)\s+|\w+\s+)?late\b"
    r"|\b(delayed|running behind|stuck in traffic|held up|won't make it|wont make it)\b"
    r"|\b(sein|seinn|seinka\w*|seinkun\w*|tefst|tafir)\b"
)
VERY_LATE_PATTERN = re.compile(
    r"\b(very|really|extremely|super|so|quite|way|massively)\s+late\b"
    r"|\b(mjög|rosalega|svakalega|alltof|allt of)\s+sein\w*"
)
FLIGHT_PATTERN = re.compile(
    r"\b(flight|plane|airline|connecting flight)\b[^.?!]*\b(delay\w*|late|cancel\w*|postponed|rescheduled)\b"
    r"|\b(delay\w*|late|cancel\w*)\b[^.?!]*\b(flight|plane)\b"
    r"|\bflug\w*\b[^.?!]*\b(seinka\w*|seinkun\w*|seint|aflýst\w*|tefst)"
    r"|\b(seinkun\w*|seinka\w*)\b[^.?!]*\bflug\w*"
)
FUTURE_DAY_PATTERN = re.compile(
    r"\b(tomorrow|another day|different day|other day|next (day|week|month)|day after|"
    r"(on )?(monday|tuesday|wednesday|thursday|friday|saturday|sunday))\b"
    r"|\b(á morgun|annan dag|annan daginn|hinn daginn|næsta dag|í næstu viku|"
    r"mánudag|þriðjudag|miðvikudag|fimmtudag|föstudag|laugardag|sunnudag)\w*"
)
OPEN_DAY_PATTERN = re.compile(r"\b(another day|different day|other day)\b|\b(annan dag|annan daginn)\b")
TRANSFER_PATTERN = re.compile(
    r"\b(shuttle|transfer|bus|pick-?up|pickup|drop-?off|coach)\b|\b(skutl\w*|rút\w*|akstur\w*)"
)
BOOKING_REFERENCE_PATTERN = re.compile(
    r"\b(booking|reservation|confirmation|order)\s*(number|no\.?|ref\w*|code|id)\b"
    r"|\bbókunarnúmer\w*"
    r"|\b[a-z]{2,4}-?\d{4,}\b"
    r"|#?\b\d{6,}\b"
)
EARLIER_PATTERN = re.compile(r"\b(earlier|sooner)\b|\b(fyrr|fyrri tíma|flýta)\b")
BOOKING_WORD_PATTERN = re.compile(r"\b(booking|reservation|slot|time slot|ticket)\b|\b(bókun\w*|pöntun\w*|tíman\w*)")
SOLD_OUT_PATTERN = re.compile(r"\b(sold out|fully booked|no availability|no spaces)\b|\b(uppselt|fullbókað)")

TIME_PATTERN = re.compile(
    r"(?<![\d:.])(?:(?<!\w)(kl\.?)\s*)?(\d{1,2})(?:([:.])(\d{2}))?(?:\s*(a\.?m\.?|p\.?m\.?)(?![a-z]))?(?![\d:])",
)
BOOKING_ROLE_PATTERN = re.compile(
    r"\b(book\w*|reserv\w*|slot|appointment|scheduled|ticket)\b|\b(bókun\w*|bókaði\w*|pantaði\w*|pöntun\w*)"
)
ARRIVAL_ROLE_PATTERN = re.compile(
    r"\b(arriv\w*|get there|be there|make it|reach|land\w*|come|coming)\b"
    r"|\b(mæti\w*|mætum|komum|kem|kemst|komin|kominn|lendum|lendi|verð|verðum)\b"
)

WORD_NUMBERS = {
    "a": 1,
    "an": 1,
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "einn": 1,
    "eina": 1,
    "tvo": 2,
    "tveir": 2,
    "tvær": 2,
    "þrjá": 3,
}
_NUMBER = r"(\d+|an?|one|two|three|four|einn|eina|tvo|tveir|tvær|þrjá)"
HOURS_AND_MINUTES_PATTERN = re.compile(
    rf"\b{_NUMBER}\s*(?:hours?|hrs?|h|klukkutím\w*|klst\.?|tím\w*)\s*(?:and|og)?\s*(\d+)\s*(?:minutes?|mins?|min|mínút\w*)"
)
HOUR_AND_HALF_PATTERN = re.compile(
    rf"\b{_NUMBER}\s*(?:hours?|hrs?)\s+and\s+a\s+half\b|\b{_NUMBER}\s+and\s+a\s+half\s+hours?\b|\b(?:einn og hálfan|eina og hálfa)\s*(?:klukkutíma|klst)"
)
HALF_HOUR_PATTERN = re.compile(r"\bhalf\s+(?:an\s+)?hour\b|\bhálftíma\b|\bhálfan\s+tíma\b")
QUARTER_HOUR_PATTERN = re.compile(r"\bquarter\s+(?:of\s+an\s+)?(?:hour|hr)\b|\bkorter\w*")
HOURS_PATTERN = re.compile(rf"\b{_NUMBER}\s*(?:hours?|hrs?|klukkutím\w*|klst\.?)(?!\w)")
MINUTES_PATTERN = re.compile(r"\b(\d+)\s*(?:minutes?|mins?|min|mínút\w*)(?!\w)")


def normalize_scenario_text(message: str) -> str:
    text = (message or "").casefold()
    text = text.replace("’", "'")
    return re.sub(r"\s+", " ", text).strip()


def classify_delay(minutes: int) -> ArrivalScenario:
    if minutes < 0:
        return ArrivalScenario.EARLY_ARRIVAL
    if minutes <= GRACE_PERIOD_MINUTES:
        return ArrivalScenario.WITHIN_GRACE
    if minutes <= MODIFICATION_THRESHOLD_MINUTES:
        return ArrivalScenario.MODERATE_DELAY
    return ArrivalScenario.SIGNIFICANT_DELAY


@dataclass(frozen=True)
class TimeExpression:
    text: str
    minutes: int
    start: int
    end: int
    meridiem: Optional[str]
    hour: int


def _meridiem(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    return "pm" if raw.replace(".", "").startswith("p") else "am"


def _to_24h(hour: int, meridiem: Optional[str]) -> int:
    if meridiem == "pm" and hour < 12:
        return hour + 12
    if meridiem == "am" and hour == 12:
        return 0
    return hour


def extract_times(text: str) -> list[TimeExpression]:
    """Find clock times. Bare numbers without a separator, am/pm or ``kl.`` are ignored."""
    found: list[TimeExpression] = []
    seen: set[int] = set()
    for match in TIME_PATTERN.finditer(text):
        prefix, hour_raw, separator, minute_raw, meridiem_raw = match.groups()
        if not (separator or meridiem_raw or prefix):
            continue
        hour = int(hour_raw)
        minute = int(minute_raw) if minute_raw else 0
        meridiem = _meridiem(meridiem_raw)
        if minute >= 60 or hour > 23 or (meridiem and not 1 <= hour <= 12):
            continue
        total = _to_24h(hour, meridiem) * 60 + minute
        if total in seen:
            continue
        seen.add(total)
        found.append(
            TimeExpression(
                text=match.group(0).strip(),
                minutes=total,
                start=match.start(),
                end=match.end(),
                meridiem=meridiem,
                hour=hour,
            )
        )
    # "booked for 6pm, arriving 6:45" shares the meridiem across both times.
    marked = [expr for expr in found if expr.meridiem]
    if marked and len(marked) < len(found):
        shared = marked[0].meridiem
        adjusted = []
        for expr in found:
            if expr.meridiem is None and 1 <= expr.hour <= 12:
                total = _to_24h(expr.hour, shared) * 60 + expr.minutes % 60
                expr = TimeExpression(expr.text, total, expr.start, expr.end, shared, expr.hour)
            adjusted.append(expr)
        found = adjusted
    return found


def _role_for(text: str, window_start: int, expr: TimeExpression) -> Optional[str]:
    window = text[window_start : expr.start]
    booking = [m.end() for m in BOOKING_ROLE_PATTERN.finditer(window)]
    arrival = [m.end() for m in ARRIVAL_ROLE_PATTERN.finditer(window)]
    if not booking and not arrival:
        return None
    if (max(booking) if booking else -1) > (max(arrival) if arrival else -1):
        return "booking"
    return "arrival"


def assign_roles(text: str, times: list[TimeExpression]) -> tuple[TimeExpression, TimeExpression]:
    """Pick (booking, arrival) out of the first two times using nearby wording."""
    first, second = times[0], times[1]
    first_role = _role_for(text, 0, first)
    second_role = _role_for(text, first.end, second)

    if first_role == "arrival" and second_role != "arrival":
        return second, first
    if second_role == "booking" and first_role != "booking":
        return second, first
    return first, second


def extract_duration(text: str) -> Optional[int]:
    """Return a relative duration in minutes, or None."""
    match = HOURS_AND_MINUTES_PATTERN.search(text)
    if match:
        return _number(match.group(1)) * 60 + int(match.group(2))
    match = HOUR_AND_HALF_PATTERN.search(text)
    if match:
        value = match.group(1) or match.group(2)
        return (_number(value) if value else 1) * 60 + 30
    if HALF_HOUR_PATTERN.search(text):
        return 30
    if QUARTER_HOUR_PATTERN.search(text):
        return 15
    match = HOURS_PATTERN.search(text)
    if match:
        return _number(match.group(1)) * 60
    match = MINUTES_PATTERN.search(text)
    if match:
        return int(match.group(1))
    return None


def _number(value: str) -> int:
    if value.isdigit():
        return int(value)
    return WORD_NUMBERS.get(value, 1)


def classify_booking_change(message: str) -> Optional[BookingChangeKind]:
    """Detect booking-change requests that must not be read as lateness."""
    text = normalize_scenario_text(message)
    if not text:
        return None
    has_change = bool(CHANGE_PATTERN.search(text))
    has_lateness = bool(LATENESS_PATTERN.search(text))

    if EARLIER_PATTERN.search(text) and (has_change or BOOKING_WORD_PATTERN.search(text)):
        return BookingChangeKind.EARLIER
    if (has_change and FUTURE_DAY_PATTERN.search(text)) or OPEN_DAY_PATTERN.search(text):
        return BookingChangeKind.DIFFERENT_DAY
    if TRANSFER_PATTERN.search(text) and has_change and not has_lateness:
        return BookingChangeKind.TRANSFER_CHANGE
    if BOOKING_REFERENCE_PATTERN.search(text) and has_change:
        return BookingChangeKind.REFERENCE_CHANGE
    if has_change and BOOKING_WORD_PATTERN.search(text) and not has_lateness:
        return BookingChangeKind.GENERAL
    return None


def mentions_sold_out(message: str) -> bool:
    return bool(SOLD_OUT_PATTERN.search(normalize_scenario_text(message)))


def detect_arrival_scenario(message: str) -> ScenarioDetectionResult:
    text = normalize_scenario_text(message)
    if not text:
        return NO_SCENARIO

    times = extract_times(text)
    duration = extract_duration(text)

    if FLIGHT_PATTERN.search(text) and not times and duration is None:
        return ScenarioDetectionResult(ArrivalScenario.FLIGHT_DELAY)

    change_kind = classify_booking_change(text)
    if change_kind is not None and change_kind != BookingChangeKind.GENERAL:
        return NO_SCENARIO
    has_arrival_wording = bool(ARRIVAL_ROLE_PATTERN.search(text))
    if change_kind == BookingChangeKind.GENERAL and not has_arrival_wording:
        return NO_SCENARIO

    has_lateness = bool(LATENESS_PATTERN.search(text))
    has_booking_wording = bool(BOOKING_ROLE_PATTERN.search(text))
    if len(times) >= 2 and (has_booking_wording or has_lateness) and (has_arrival_wording or has_lateness):
        booking, arrival = assign_roles(text, times)
        difference = arrival.minutes - booking.minutes
        if difference < -MIDNIGHT_WRAP_MINUTES:
            difference += 24 * 60
        return ScenarioDetectionResult(
            classify_delay(difference),
            minutes=difference,
            booking_time=booking.text,
            arrival_time=arrival.text,
        )

    if duration is not None and has_lateness:
        return ScenarioDetectionResult(classify_delay(duration), minutes=duration)

    if VERY_LATE_PATTERN.search(text):
        return ScenarioDetectionResult(ArrivalScenario.SIGNIFICANT_DELAY)

    if BARE_LATENESS_PATTERN.search(text):
        return ScenarioDetectionResult(ArrivalScenario.UNSPECIFIED_DELAY)

    return NO_SCENARIO


def has_scenario_wording(message: str) -> bool:
    """True when the message still talks about lateness or changing a booking."""
    text = normalize_scenario_text(message)
    return bool(LATENESS_PATTERN.search(text) or CHANGE_PATTERN.search(text))
