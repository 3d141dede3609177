"""Per-conversation state with per-key locking and TTL eviction."""

import asyncio
import time
from dataclasses import replace
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from concierge.logging_config import get_logger
from concierge.models.session import ContextUpdate, SessionContext, Turn

logger = get_logger("session_store")

DEFAULT_MAX_MESSAGES = 10
DEFAULT_MAX_TOPICS = 5


class SessionStore:
    def __init__(
        self,
        ttl_seconds: float = 3600,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        max_topics: int = DEFAULT_MAX_TOPICS,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_messages = max_messages
        self.max_topics = max_topics
        self.clock = clock
        self._contexts: dict[str, SessionContext] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._contexts)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._contexts

    def peek(self, session_id: str) -> Optional[SessionContext]:
        return self._contexts.get(session_id)

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    @asynccontextmanager
    async def session(self, session_id: str) -> AsyncIterator[SessionContext]:
        """Hold the session's lock and yield its context, creating it if needed."""
        lock = self._lock_for(session_id)
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                context = self._contexts.get(session_id)
                if context is None:
                    now = self.clock()
                    context = SessionContext(session_id=session_id, created_at=now, last_interaction=now)
                    self._contexts[session_id] = context
                    logger.debug("Session created", extra={"context": {"session_id": session_id}})
                yield context
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]

    def apply(self, context: SessionContext, update: ContextUpdate, now: Optional[float] = None) -> SessionContext:
        """Apply one turn's changes. Callers must hold the session lock."""
        now = self.clock() if now is None else now

        if update.language:
            context.language = update.language

        if update.user_message is not None:
            context.messages.append(Turn(role="user", content=update.user_message, timestamp=now))
        if update.assistant_message is not None:
            context.messages.append(Turn(role="assistant", content=update.assistant_message, timestamp=now))
        if len(context.messages) > self.max_messages:
            context.messages = context.messages[-self.max_messages :]

        if update.topic:
            context.last_topic = update.topic
            if update.topic not in context.topics:
                context.topics.append(update.topic)
            if len(context.topics) > self.max_topics:
                context.topics = context.topics[-self.max_topics :]

        if update.clear_late_arrival:
            context.late_arrival = None
        if update.late_arrival is not None:
            context.late_arrival = replace(update.late_arrival, last_update=now)
        if update.clear_booking_modification:
            context.booking_modification = None
        if update.booking_modification is not None:
            context.booking_modification = update.booking_modification

        if update.seasonal is not None:
            context.seasonal = update.seasonal
        if update.conversation_started is not None:
            context.conversation_started = update.conversation_started
        if update.is_first_greeting is not None:
            context.is_first_greeting = update.is_first_greeting
        if update.current_package and update.current_package != context.current_package:
            context.previous_package = context.current_package
            context.current_package = update.current_package
        if update.sold_out is not None:
            context.sold_out = update.sold_out

        if update.end_handoff:
            context.handoff = None
        if update.handoff is not None:
            context.handoff = update.handoff

        context.last_interaction = now
        return context

    def is_expired(self, context: SessionContext, now: float) -> bool:
        return context.last_interaction < now - self.ttl_seconds

    async def sweep(self, now: Optional[float] = None) -> int:
        """Evict contexts idle for longer than the TTL. Returns the eviction count."""
        now = self.clock() if now is None else now
        candidates = [sid for sid, ctx in list(self._contexts.items()) if self.is_expired(ctx, now)]
        removed = 0
        for session_id in candidates:
            lock = self._lock_for(session_id)
            async with lock:
                context = self._contexts.get(session_id)
                # Re-check under the lock: a request may have touched it since the snapshot.
                if context is None or not self.is_expired(context, now):
                    continue
                del self._contexts[session_id]
                removed += 1
            if session_id not in self._lock_users and session_id not in self._contexts:
                self._locks.pop(session_id, None)
        if removed:
            logger.info("Sessions swept", extra={"context": {"removed": removed, "remaining": len(self._contexts)}})
        return removed
