"""Exception hierarchy for the Docker Engine API client.

The client never retries. Callers decide whether a failure matters: remove
and stop operations already treat "not found" as success, everything else
propagates one of these errors.
"""

from typing import Any


class DockerError(Exception):
    """Base class for all Docker client failures."""


class DockerTransportError(DockerError):
    """The Unix socket could not be connected, read, or written in time."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class DockerProtocolError(DockerError):
    """The daemon answered with something we cannot speak.

    Raised for an unexpected status during the exec upgrade handshake or a
    response that does not parse as HTTP.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class DockerAPIError(DockerError):
    """Non-2xx response from the Docker Engine API.

    Attributes:
        status: The HTTP status code.
        message: The decoded ``message`` field of the error body, or the raw
            body text when it is not JSON.
        body: The decoded body as returned by the daemon.
    """

    def __init__(self, status: int, message: str, body: Any = None) -> None:
        super().__init__(f"Docker API error {status}: {message}")
        self.status = status
        self.message = message
        self.body = body


class DockerNotFoundError(DockerAPIError):
    """404 from the Docker Engine API."""
