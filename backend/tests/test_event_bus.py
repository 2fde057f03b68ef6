"""Tests for events/bus.py -- async pub/sub event bus.

Covers publish/subscribe, buffering, the topic_closed sentinel, history
replay, error isolation between subscribers, and the global singleton
accessor.
"""

import asyncio

from events.bus import EventBus, get_event_bus, reset_event_bus
from events.types import EventType, SandboxEvent

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(
    topic: str = "sbx_test",
    event_type: EventType = EventType.PROVISION_LOG,
) -> SandboxEvent:
    return SandboxEvent(
        type=event_type,
        topic=topic,
        data={"message": "Creating network...", "step": 4},
    )


# =========================================================================
# Subscribe / Publish basics
# =========================================================================


class TestSubscribePublish:
    """Basic subscribe and async publish."""

    async def test_publish_delivers_to_subscriber(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("sbx_1")
        await event_bus.publish(_make_event("sbx_1"))
        received = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert received.type == EventType.PROVISION_LOG
        assert received.topic == "sbx_1"

    async def test_publish_multiple_subscribers(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("sbx_1")
        q2 = event_bus.subscribe("sbx_1")
        await event_bus.publish(_make_event("sbx_1"))
        r1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        r2 = await asyncio.wait_for(q2.get(), timeout=1.0)
        assert r1.type == r2.type == EventType.PROVISION_LOG

    async def test_publish_does_not_cross_topics(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("sbx_1")
        q2 = event_bus.subscribe("sbx_2")
        await event_bus.publish(_make_event("sbx_1"))
        assert (await asyncio.wait_for(q1.get(), timeout=1.0)).topic == "sbx_1"
        assert q2.empty()

    async def test_emit_builds_event(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("sbx_1")
        await event_bus.emit("sbx_1", EventType.STATE_CHANGED, state="running", error_message=None)
        event = queue.get_nowait()
        assert event.type == EventType.STATE_CHANGED
        assert event.data == {"state": "running", "error_message": None}

    async def test_events_arrive_in_publish_order(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("sbx_1")
        for step in range(1, 6):
            await event_bus.emit("sbx_1", EventType.PROVISION_LOG, message=f"step {step}", step=step)
        steps = [queue.get_nowait().data["step"] for _ in range(5)]
        assert steps == [1, 2, 3, 4, 5]


# =========================================================================
# Event Buffering
# =========================================================================


class TestEventBuffering:
    """Events published before a subscriber connects are buffered."""

    async def test_buffered_events_delivered_on_subscribe(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("sbx_1", EventType.STATE_CHANGED))
        await event_bus.publish(_make_event("sbx_1", EventType.PROVISION_LOG))

        queue = event_bus.subscribe("sbx_1")
        r1 = await asyncio.wait_for(queue.get(), timeout=1.0)
        r2 = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert r1.type == EventType.STATE_CHANGED
        assert r2.type == EventType.PROVISION_LOG

    async def test_buffer_cleared_after_subscribe(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("sbx_1"))
        q1 = event_bus.subscribe("sbx_1")
        assert not q1.empty()
        # A second subscriber should NOT get the already-delivered buffer
        q2 = event_bus.subscribe("sbx_1")
        assert q2.empty()

    async def test_buffer_is_bounded(self, event_bus: EventBus) -> None:
        event_bus.MAX_HISTORY_PER_TOPIC = 3
        for step in range(5):
            await event_bus.emit("sbx_1", EventType.PROVISION_LOG, step=step)
        queue = event_bus.subscribe("sbx_1")
        assert [queue.get_nowait().data["step"] for _ in range(3)] == [2, 3, 4]
        assert queue.empty()


# =========================================================================
# History
# =========================================================================


class TestHistory:
    """History is kept for replay regardless of subscribers."""

    async def test_history_keeps_delivered_events(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("sbx_1")
        await event_bus.publish(_make_event("sbx_1"))
        queue.get_nowait()
        history = event_bus.get_event_history("sbx_1")
        assert [e.type for e in history] == [EventType.PROVISION_LOG]

    async def test_history_survives_close(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("sbx_1"))
        await event_bus.close_topic("sbx_1")
        assert len(event_bus.get_event_history("sbx_1")) == 1

    async def test_clear_history(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("sbx_1"))
        event_bus.clear_event_history("sbx_1")
        assert event_bus.get_event_history("sbx_1") == []

    async def test_history_is_a_copy(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("sbx_1"))
        event_bus.get_event_history("sbx_1").clear()
        assert len(event_bus.get_event_history("sbx_1")) == 1


# =========================================================================
# Unsubscribe
# =========================================================================


class TestUnsubscribe:
    """Unsubscribe removes a specific queue from the topic."""

    async def test_unsubscribe_removes_queue(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("sbx_1")
        event_bus.unsubscribe("sbx_1", queue)
        assert event_bus.get_subscriber_count("sbx_1") == 0

    async def test_unsubscribe_nonexistent_is_noop(self, event_bus: EventBus) -> None:
        dummy: asyncio.Queue[SandboxEvent] = asyncio.Queue()
        event_bus.unsubscribe("no_such_topic", dummy)

    async def test_unsubscribe_wrong_queue_is_noop(self, event_bus: EventBus) -> None:
        event_bus.subscribe("sbx_1")
        wrong_queue: asyncio.Queue[SandboxEvent] = asyncio.Queue()
        event_bus.unsubscribe("sbx_1", wrong_queue)
        assert event_bus.get_subscriber_count("sbx_1") == 1

    async def test_after_unsubscribe_events_not_delivered(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("sbx_1")
        event_bus.unsubscribe("sbx_1", queue)
        await event_bus.publish(_make_event("sbx_1"))
        assert queue.empty()


# =========================================================================
# close_topic -- sentinel
# =========================================================================


class TestCloseTopic:
    """close_topic sends a TOPIC_CLOSED sentinel and cleans up."""

    async def test_close_sends_sentinel(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("sbx_1")
        await event_bus.close_topic("sbx_1")
        sentinel = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert sentinel.type == EventType.TOPIC_CLOSED
        assert sentinel.topic == "sbx_1"

    async def test_close_removes_subscribers(self, event_bus: EventBus) -> None:
        event_bus.subscribe("sbx_1")
        await event_bus.close_topic("sbx_1")
        assert event_bus.get_subscriber_count("sbx_1") == 0

    async def test_close_clears_buffer(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("sbx_1"))
        await event_bus.close_topic("sbx_1")
        queue = event_bus.subscribe("sbx_1")
        assert queue.empty()

    async def test_close_nonexistent_is_noop(self, event_bus: EventBus) -> None:
        await event_bus.close_topic("no_such_topic")

    async def test_sentinel_not_in_history(self, event_bus: EventBus) -> None:
        event_bus.subscribe("sbx_1")
        await event_bus.close_topic("sbx_1")
        assert event_bus.get_event_history("sbx_1") == []


# =========================================================================
# Error isolation
# =========================================================================


class TestErrorIsolation:
    """A failing subscriber should not prevent delivery to other subscribers."""

    async def test_error_does_not_block_other_subscribers(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("sbx_1")
        q2 = event_bus.subscribe("sbx_1")
        call_count = 0

        async def failing_put(item: SandboxEvent) -> None:
            nonlocal call_count
            call_count += 1
            raise RuntimeError("subscriber error")

        q1.put = failing_put  # type: ignore[method-assign]

        await event_bus.publish(_make_event("sbx_1"))

        assert q2.get_nowait().type == EventType.PROVISION_LOG
        assert call_count == 1

    async def test_stalled_subscriber_times_out(self, event_bus: EventBus) -> None:
        event_bus.DELIVERY_TIMEOUT_SECONDS = 0.01
        q1 = event_bus.subscribe("sbx_1")
        q2 = event_bus.subscribe("sbx_1")

        async def stalled_put(item: SandboxEvent) -> None:
            await asyncio.sleep(10)

        q1.put = stalled_put  # type: ignore[method-assign]

        await asyncio.wait_for(event_bus.publish(_make_event("sbx_1")), timeout=1.0)
        assert not q2.empty()


# =========================================================================
# Global singleton
# =========================================================================


class TestGlobalEventBus:
    """get_event_bus / reset_event_bus singleton pattern."""

    def test_get_event_bus_returns_same_instance(self) -> None:
        reset_event_bus()
        assert get_event_bus() is get_event_bus()

    def test_reset_event_bus_creates_new_instance(self) -> None:
        reset_event_bus()
        bus1 = get_event_bus()
        reset_event_bus()
        assert get_event_bus() is not bus1
