"""Sandbox lifecycle management for Docker-based development environments.

This package holds the lifecycle state machine and its errors, the helpers
that prepare a sandbox's containers (templates, tar archives, user setup,
file sync, Tailscale sidecar) and the SandboxOrchestrator in
``sandbox.orchestrator``, which is imported from there directly.
"""

from sandbox.errors import (
    InvalidTransitionError,
    ProvisioningError,
    SandboxError,
    SandboxNotFoundError,
    SandboxOperationError,
)
from sandbox.state_machine import LifecycleEvent, allowed_events, can_transition, next_state

__all__ = [
    "SandboxError",
    "SandboxNotFoundError",
    "InvalidTransitionError",
    "ProvisioningError",
    "SandboxOperationError",
    "LifecycleEvent",
    "allowed_events",
    "can_transition",
    "next_state",
]
