"""Async event bus for sandbox progress and session output.

This module provides an EventBus class that delivers provisioning progress,
lifecycle changes and server output from the orchestrator and session
actors to UI consumers (via WebSocket).

The event bus supports:
- Multiple subscribers per topic (sandbox id)
- Async event delivery via asyncio.Queue
- Topic lifecycle management (closing a topic terminates all subscribers)
"""

import asyncio
from collections import defaultdict

import structlog

from events.types import EventType, SandboxEvent

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus keyed by topic.

    Event Buffering:
        Events published before any subscriber connects are buffered.
        When the first subscriber connects, all buffered events are
        delivered immediately. This covers provisioning that starts
        before the UI has opened its event socket.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe(sandbox_id)
        >>> await bus.publish(SandboxEvent(
        ...     type=EventType.PROVISION_LOG,
        ...     topic=sandbox_id,
        ...     data={"message": "Creating network..."},
        ... ))
        >>> event = await queue.get()
        >>> bus.unsubscribe(sandbox_id, queue)

    Attributes:
        _subscribers: Dict mapping topic to list of subscriber queues
        _event_buffer: Dict mapping topic to list of buffered events
        _event_history: Dict mapping topic to recent events for replay
    """

    # Maximum number of events retained per topic for replay and buffering.
    MAX_HISTORY_PER_TOPIC = 2000

    # A stalled consumer must not block the publisher.
    DELIVERY_TIMEOUT_SECONDS = 5.0

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[SandboxEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[SandboxEvent]] = defaultdict(list)
        self._event_history: dict[str, list[SandboxEvent]] = defaultdict(list)
        logger.info("event_bus_initialized")

    def subscribe(self, topic: str) -> asyncio.Queue[SandboxEvent]:
        """Subscribe to events for a topic.

        Buffered events (published before any subscriber connected) are
        delivered to the new subscriber immediately.

        Args:
            topic: The topic to subscribe to

        Returns:
            An asyncio.Queue that receives SandboxEvent objects
        """
        queue: asyncio.Queue[SandboxEvent] = asyncio.Queue()
        self._subscribers[topic].append(queue)
        buffered_events = self._event_buffer.pop(topic, [])

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            topic=topic,
            subscriber_count=len(self._subscribers[topic]),
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue[SandboxEvent]) -> None:
        """Remove a subscriber queue. Unknown queues are ignored."""
        if topic not in self._subscribers:
            return
        try:
            self._subscribers[topic].remove(queue)
        except ValueError:
            logger.warning("unsubscribe_queue_not_found", topic=topic)
            return

        logger.info(
            "subscriber_removed",
            topic=topic,
            subscriber_count=len(self._subscribers[topic]),
        )
        if not self._subscribers[topic]:
            del self._subscribers[topic]

    def _remember(self, event: SandboxEvent) -> None:
        history = self._event_history[event.topic]
        history.append(event)
        if len(history) > self.MAX_HISTORY_PER_TOPIC:
            self._event_history[event.topic] = history[-self.MAX_HISTORY_PER_TOPIC:]

    async def publish(self, event: SandboxEvent) -> None:
        """Publish an event to all subscribers of its topic.

        With no subscribers the event is buffered until one connects. Every
        event except the close sentinel is also kept in the topic's history.

        Args:
            event: The SandboxEvent to publish
        """
        if event.type != EventType.TOPIC_CLOSED:
            self._remember(event)

        subscribers = list(self._subscribers.get(event.topic, []))
        if not subscribers:
            buffer = self._event_buffer[event.topic]
            buffer.append(event)
            if len(buffer) > self.MAX_HISTORY_PER_TOPIC:
                del buffer[: len(buffer) - self.MAX_HISTORY_PER_TOPIC]
            logger.debug(
                "event_buffered",
                topic=event.topic,
                event_type=event.type.value,
                buffer_size=len(buffer),
            )
            return

        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=self.DELIVERY_TIMEOUT_SECONDS)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    topic=event.topic,
                    event_type=event.type.value,
                )
            except Exception as e:
                logger.error(
                    "event_delivery_failed",
                    topic=event.topic,
                    event_type=event.type.value,
                    error=str(e),
                )

        logger.debug(
            "event_published",
            topic=event.topic,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    async def emit(self, topic: str, event_type: EventType, **data: object) -> None:
        """Shorthand for publishing ``SandboxEvent(event_type, topic, data)``."""
        await self.publish(SandboxEvent(type=event_type, topic=topic, data=data))

    def get_event_history(self, topic: str) -> list[SandboxEvent]:
        """Get stored events for a topic, oldest first, for replay on reconnect."""
        return list(self._event_history.get(topic, []))

    async def close_topic(self, topic: str) -> None:
        """Close a topic and notify all subscribers.

        Puts a TOPIC_CLOSED sentinel into each subscriber queue so consumers
        can break out of their read loops, then removes all subscribers and
        clears buffered events. Event history is preserved.
        """
        queues_to_signal = self._subscribers.pop(topic, [])
        buffer_count = len(self._event_buffer.pop(topic, []))

        for queue in queues_to_signal:
            queue.put_nowait(
                SandboxEvent(
                    type=EventType.TOPIC_CLOSED,
                    topic=topic,
                    data={"reason": "topic_closed"},
                )
            )

        logger.info(
            "topic_closed",
            topic=topic,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=buffer_count,
        )

    def get_subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    def clear_event_history(self, topic: str) -> None:
        """Forget a topic's history; called when its sandbox is destroyed."""
        self._event_history.pop(topic, None)


# Global event bus instance
_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first call."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance (used by tests)."""
    global _event_bus
    _event_bus = None
    logger.info("event_bus_reset")
