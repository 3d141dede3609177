from concierge.models.knowledge import CacheEntry, KnowledgeMatch
from concierge.models.session import (
    UNKNOWN_LANGUAGE,
    BookingModification,
    ContextUpdate,
    HandoffRecord,
    LateArrivalRecord,
    SeasonalContext,
    SessionContext,
    Turn,
)

__all__ = [
    "UNKNOWN_LANGUAGE",
    "BookingModification",
    "CacheEntry",
    "ContextUpdate",
    "HandoffRecord",
    "KnowledgeMatch",
    "LateArrivalRecord",
    "SeasonalContext",
    "SessionContext",
    "Turn",
]
