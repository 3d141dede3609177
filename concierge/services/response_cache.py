import json
import re
import time
from typing import Callable, Optional, Protocol

import redis.asyncio as redis_async

from concierge.logging_config import get_logger
from concierge.models.knowledge import CacheEntry

logger = get_logger("response_cache")

CACHE_KEY_PREFIX = "concierge:response:"


def normalize_cache_message(message: str) -> str:
    return re.sub(r"\s+", " ", (message or "").casefold()).strip()


def build_cache_key(session_id: str, message: str, language: str) -> str:
    return f"{session_id}:{normalize_cache_message(message)}:{language}"


class ResponseCache(Protocol):
    async def get(self, key: str) -> Optional[dict]:
        ...

    async def set(self, key: str, value: dict) -> None:
        ...

    async def sweep(self, now: Optional[float] = None) -> int:
        ...


class InMemoryResponseCache:
    """Process-local cache. Expired entries are hidden on read and purged by ``sweep``."""

    def __init__(self, ttl_seconds: float = 3600, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self.ttl_seconds

    async def get(self, key: str) -> Optional[dict]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry, self.clock()):
            return None
        return dict(entry.value)

    async def set(self, key: str, value: dict) -> None:
        self._entries[key] = CacheEntry(value=dict(value), created_at=self.clock())

    async def sweep(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        # No await between scan and delete, so a concurrent set() cannot interleave.
        expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in expired:
            del self._entries[key]
        removed = len(expired)
        if removed:
            logger.info("Cache swept", extra={"context": {"removed": removed, "remaining": len(self._entries)}})
        return removed


class RedisResponseCache:
    """Redis-backed cache; expiry is delegated to Redis ``SETEX``."""

    def __init__(self, redis_client, ttl_seconds: float = 3600, prefix: str = CACHE_KEY_PREFIX):
        self.redis = redis_client
        self.ttl_seconds = int(ttl_seconds)
        self.prefix = prefix

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: float = 3600, socket_timeout_seconds: float = 1.0):
        client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout_seconds,
            socket_connect_timeout=socket_timeout_seconds,
        )
        return cls(client, ttl_seconds=ttl_seconds)

    async def get(self, key: str) -> Optional[dict]:
        try:
            raw = await self.redis.get(self.prefix + key)
        except Exception as exc:
            logger.warning("Response cache read failed", extra={"context": {"error": str(exc)}})
            return None
        if not raw:
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            return None
        return value if isinstance(value, dict) else None

    async def set(self, key: str, value: dict) -> None:
        try:
            await self.redis.setex(self.prefix + key, self.ttl_seconds, json.dumps(value, ensure_ascii=False))
        except Exception as exc:
            logger.warning("Response cache write failed", extra={"context": {"error": str(exc)}})

    async def sweep(self, now: Optional[float] = None) -> int:
        return 0

    async def close(self) -> None:
        await self.redis.aclose()
