"""Exceptions raised by the sandbox lifecycle layer."""


class SandboxError(Exception):
    """Base class for sandbox lifecycle failures."""


class SandboxNotFoundError(SandboxError):
    def __init__(self, sandbox_id: str) -> None:
        super().__init__(f"Sandbox not found: {sandbox_id}")
        self.sandbox_id = sandbox_id


class InvalidTransitionError(SandboxError):
    """An operation is not legal from the sandbox's current state."""

    def __init__(self, state: str, event: str) -> None:
        super().__init__(f"Cannot {event} a sandbox in state {state}")
        self.state = state
        self.event = event


class ProvisioningError(SandboxError):
    """A provisioning step failed; the remaining steps were not run.

    Attributes:
        step: Human-readable label of the failed step.
    """

    def __init__(self, step: str, message: str) -> None:
        super().__init__(message)
        self.step = step


class SandboxOperationError(SandboxError):
    """A start or stop operation failed against the Docker daemon."""
