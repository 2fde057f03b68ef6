"""Event system for sandbox progress and session output.

This package provides the pub/sub infrastructure between the orchestrator and
session actors on one side and WebSocket consumers on the other, based on
asyncio.Queue.

Key Components:
    - EventType: Enum of all event types in the system
    - SandboxEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation keyed by topic (sandbox id)

Event Flow:
    1. The orchestrator and session actors publish via EventBus.publish()
    2. The events WebSocket handler subscribes to a sandbox's topic
    3. Events are forwarded to the frontend as JSON
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    EventType,
    SandboxEvent,
)

__all__ = [
    # Event types
    "EventType",
    "SandboxEvent",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
