"""Sandbox lifecycle as an explicit transition table.

Every state change is a named event. ``next_state`` looks the pair
``(current state, event)`` up in ``TRANSITIONS`` and refuses anything that is
not listed, so the legal lifecycle can be checked without touching Docker:

    creating -> provisioning -> running <-> stopped
    creating | provisioning | running | stopped -> error
    running | stopped | error -> destroying -> destroyed

``provision`` is also accepted from ``error`` and ``provisioning`` so a failed
or interrupted provisioning run can be retried.
"""

from enum import StrEnum

from models.schemas import SandboxState
from sandbox.errors import InvalidTransitionError


class LifecycleEvent(StrEnum):
    PROVISION = "provision"
    MARK_RUNNING = "mark_running"
    MARK_ERROR = "mark_error"
    STOP = "stop"
    START = "start"
    BEGIN_DESTROY = "begin_destroy"
    MARK_DESTROYED = "mark_destroyed"


_S = SandboxState

TRANSITIONS: dict[LifecycleEvent, tuple[frozenset[SandboxState], SandboxState]] = {
    LifecycleEvent.PROVISION: (
        frozenset({_S.CREATING, _S.ERROR, _S.PROVISIONING}),
        _S.PROVISIONING,
    ),
    LifecycleEvent.MARK_RUNNING: (frozenset({_S.PROVISIONING}), _S.RUNNING),
    LifecycleEvent.MARK_ERROR: (
        frozenset({_S.CREATING, _S.PROVISIONING, _S.RUNNING, _S.STOPPED}),
        _S.ERROR,
    ),
    LifecycleEvent.STOP: (frozenset({_S.RUNNING}), _S.STOPPED),
    LifecycleEvent.START: (frozenset({_S.STOPPED}), _S.RUNNING),
    LifecycleEvent.BEGIN_DESTROY: (
        frozenset({_S.RUNNING, _S.STOPPED, _S.ERROR}),
        _S.DESTROYING,
    ),
    LifecycleEvent.MARK_DESTROYED: (frozenset({_S.DESTROYING}), _S.DESTROYED),
}


def can_transition(state: SandboxState, event: LifecycleEvent) -> bool:
    sources, _ = TRANSITIONS[LifecycleEvent(event)]
    return SandboxState(state) in sources


def next_state(state: SandboxState, event: LifecycleEvent) -> SandboxState:
    """Return the state reached by applying ``event`` in ``state``.

    Raises:
        InvalidTransitionError: If the pair is not in the table.
    """
    sources, target = TRANSITIONS[LifecycleEvent(event)]
    if SandboxState(state) not in sources:
        raise InvalidTransitionError(str(state), str(event))
    return target


def allowed_events(state: SandboxState) -> list[LifecycleEvent]:
    """List the events that are legal from ``state``, in table order."""
    return [event for event in TRANSITIONS if can_transition(state, event)]
