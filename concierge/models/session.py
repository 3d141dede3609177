from dataclasses import dataclass, field
from typing import Optional

UNKNOWN_LANGUAGE = "unknown"


@dataclass
class Turn:
    role: str
    content: str
    timestamp: float


@dataclass
class LateArrivalRecord:
    is_late: bool
    kind: str
    minutes: Optional[int]
    last_update: float = 0.0


@dataclass
class BookingModification:
    requested: bool
    kind: str
    original_time: Optional[str] = None


@dataclass
class SeasonalContext:
    season: str
    subtopic: str = "general"


@dataclass
class HandoffRecord:
    chat_id: str
    credentials: dict
    started_at: float


@dataclass
class SessionContext:
    session_id: str
    created_at: float
    last_interaction: float
    language: str = UNKNOWN_LANGUAGE
    messages: list[Turn] = field(default_factory=list)
    last_topic: Optional[str] = None
    topics: list[str] = field(default_factory=list)
    late_arrival: Optional[LateArrivalRecord] = None
    booking_modification: Optional[BookingModification] = None
    seasonal: Optional[SeasonalContext] = None
    conversation_started: bool = False
    is_first_greeting: bool = True
    current_package: Optional[str] = None
    previous_package: Optional[str] = None
    sold_out: bool = False
    handoff: Optional[HandoffRecord] = None

    def recent_responses(self, limit: int = 10) -> list[str]:
        return [turn.content for turn in self.messages if turn.role == "assistant"][-limit:]

    def history(self, limit: int) -> list[Turn]:
        return self.messages[-limit:] if limit > 0 else []


@dataclass
class ContextUpdate:
    """Every change a single turn may make to a session.

    Only ``SessionStore.apply`` turns one of these into mutations.
    """

    language: Optional[str] = None
    user_message: Optional[str] = None
    assistant_message: Optional[str] = None
    topic: Optional[str] = None
    late_arrival: Optional[LateArrivalRecord] = None
    clear_late_arrival: bool = False
    booking_modification: Optional[BookingModification] = None
    clear_booking_modification: bool = False
    seasonal: Optional[SeasonalContext] = None
    conversation_started: Optional[bool] = None
    is_first_greeting: Optional[bool] = None
    current_package: Optional[str] = None
    sold_out: Optional[bool] = None
    handoff: Optional[HandoffRecord] = None
    end_handoff: bool = False

    def merge(self, other: "ContextUpdate") -> "ContextUpdate":
        """Return a copy where fields set on ``other`` win."""
        merged = ContextUpdate(**vars(self))
        defaults = ContextUpdate()
        for name, value in vars(other).items():
            if value == getattr(defaults, name):
                continue
            setattr(merged, name, value)
        return merged
