import asyncio

import pytest

from concierge.models.session import ContextUpdate, HandoffRecord, LateArrivalRecord
from concierge.services.session_store import SessionStore


@pytest.fixture
def store(clock):
    return SessionStore(ttl_seconds=100, max_messages=4, max_topics=2, clock=clock)


class TestApply:
    @pytest.mark.asyncio
    async def test_history_is_bounded(self, store):
        async with store.session("a") as context:
            for i in range(3):
                store.apply(context, ContextUpdate(user_message=f"q{i}", assistant_message=f"a{i}"))

        assert len(context.messages) == 4
        assert [turn.content for turn in context.messages] == ["q1", "a1", "q2", "a2"]
        assert context.recent_responses() == ["a1", "a2"]

    @pytest.mark.asyncio
    async def test_topics_are_bounded_and_unique(self, store):
        async with store.session("a") as context:
            for topic in ("ritual", "ritual", "packages", "dining"):
                store.apply(context, ContextUpdate(topic=topic))

        assert context.last_topic == "dining"
        assert context.topics == ["packages", "dining"]

    @pytest.mark.asyncio
    async def test_package_change_keeps_previous(self, store):
        async with store.session("a") as context:
            store.apply(context, ContextUpdate(current_package="saman"))
            store.apply(context, ContextUpdate(current_package="saman"))
            store.apply(context, ContextUpdate(current_package="ser"))

        assert context.current_package == "ser"
        assert context.previous_package == "saman"

    @pytest.mark.asyncio
    async def test_late_arrival_is_stamped(self, store, clock):
        async with store.session("a") as context:
            clock.advance(25)
            store.apply(context, ContextUpdate(late_arrival=LateArrivalRecord(is_late=True, kind="moderate", minutes=45)))

        assert context.late_arrival.minutes == 45
        assert context.late_arrival.last_update == clock.now
        assert context.last_interaction == clock.now

    @pytest.mark.asyncio
    async def test_clear_then_set_in_one_update(self, store):
        async with store.session("a") as context:
            store.apply(context, ContextUpdate(late_arrival=LateArrivalRecord(is_late=True, kind="moderate", minutes=45)))
            store.apply(
                context,
                ContextUpdate(
                    clear_late_arrival=True,
                    late_arrival=LateArrivalRecord(is_late=True, kind="significant", minutes=120),
                ),
            )
            assert context.late_arrival.kind == "significant"

            store.apply(context, ContextUpdate(clear_late_arrival=True))
            assert context.late_arrival is None

    @pytest.mark.asyncio
    async def test_handoff_start_and_end(self, store):
        async with store.session("a") as context:
            store.apply(context, ContextUpdate(handoff=HandoffRecord(chat_id="c1", credentials={}, started_at=1.0)))
            assert context.handoff.chat_id == "c1"
            store.apply(context, ContextUpdate(end_handoff=True))

        assert context.handoff is None


class TestSweep:
    @pytest.mark.asyncio
    async def test_evicts_idle_sessions(self, store, clock):
        async with store.session("old"):
            pass
        clock.advance(60)
        async with store.session("fresh"):
            pass
        clock.advance(60)

        assert await store.sweep() == 1
        assert "old" not in store
        assert "fresh" in store
        assert "old" not in store._locks

    @pytest.mark.asyncio
    async def test_session_touched_during_sweep_survives(self, store, clock):
        async with store.session("a"):
            pass

        async with store.session("a") as context:
            sweep_task = asyncio.create_task(store.sweep(now=clock.now + 500))
            await asyncio.sleep(0)
            store.apply(context, ContextUpdate(user_message="still here"), now=clock.now + 450)

        assert await sweep_task == 0
        assert "a" in store


class TestLocking:
    @pytest.mark.asyncio
    async def test_same_session_is_serialized(self, store):
        events = []

        async def turn(name):
            async with store.session("a"):
                events.append(f"{name}-start")
                await asyncio.sleep(0.01)
                events.append(f"{name}-end")

        await asyncio.gather(turn("first"), turn("second"))

        assert events == ["first-start", "first-end", "second-start", "second-end"]

    @pytest.mark.asyncio
    async def test_different_sessions_do_not_block(self, store):
        async def enter(session_id):
            async with store.session(session_id) as context:
                return context.session_id

        async with store.session("a"):
            assert await asyncio.wait_for(enter("b"), timeout=1) == "b"

        assert len(store) == 2
