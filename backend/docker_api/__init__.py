"""Docker Engine API access for sandbox containers.

This package provides a minimal async client that speaks HTTP over the Docker
Unix socket, the raw HTTP-Upgrade protocol used by interactive exec sessions,
and the demultiplexer for Docker's non-TTY stream framing.
"""

from docker_api.client import DockerClient, ExecResult
from docker_api.errors import (
    DockerAPIError,
    DockerError,
    DockerNotFoundError,
    DockerProtocolError,
    DockerTransportError,
)
from docker_api.exec_stream import ExecStream, open_exec_stream, pump
from docker_api.frames import demux_docker_stream

__all__ = [
    "DockerClient",
    "ExecResult",
    "ExecStream",
    "open_exec_stream",
    "pump",
    "demux_docker_stream",
    "DockerError",
    "DockerAPIError",
    "DockerNotFoundError",
    "DockerProtocolError",
    "DockerTransportError",
]
