from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class KnowledgeMatch:
    type: str
    content: Any
    priority: Optional[str] = None
    duration_override: Optional[str] = None
    score: Optional[float] = None


@dataclass
class CacheEntry:
    value: dict
    created_at: float
