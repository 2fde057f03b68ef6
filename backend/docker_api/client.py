"""Minimal Docker Engine API client over a Unix domain socket.

Every call opens its own connection (httpx with a ``uds`` transport) against
a fixed API version prefix and returns the parsed body, or raises one of the
errors in ``docker_api.errors``. Nothing is retried here; callers own their
retry policy. Remove and stop calls treat 404 as success because the resource
is already gone.
"""

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from config import settings
from docker_api import exec_stream as exec_stream_protocol
from docker_api.errors import (
    DockerAPIError,
    DockerNotFoundError,
    DockerProtocolError,
    DockerTransportError,
)
from docker_api.exec_stream import ChunkCallback, ExecStream
from docker_api.frames import demux_docker_stream

logger = structlog.get_logger(__name__)

# Polls of /exec/{id}/json after a streamed exec ends, while Docker still
# reports the process as running.
_EXIT_CODE_POLLS = 10
_EXIT_CODE_POLL_DELAY = 0.1


@dataclass
class ExecResult:
    """Result of a synchronous (non-TTY) exec."""

    exit_code: int
    output: bytes

    @property
    def text(self) -> str:
        return self.output.decode("utf-8", errors="replace")


def _split_image(image: str) -> tuple[str, str]:
    """Split ``repo[:tag]`` so a pull never fetches every tag of a repository."""
    name, _, tag = image.rpartition(":")
    if not name or "/" in tag:
        return image, "latest"
    return name, tag


def _api_error(response: httpx.Response) -> DockerAPIError:
    body: Any
    try:
        body = response.json()
        message = body.get("message", "") if isinstance(body, dict) else str(body)
    except ValueError:
        body = response.text
        message = body
    error_cls = DockerNotFoundError if response.status_code == 404 else DockerAPIError
    return error_cls(response.status_code, message.strip(), body)


class DockerClient:
    """Async Docker Engine API client.

    Attributes:
        socket_path: Path of the Docker Unix socket.
        api_version: API version path prefix (e.g. "v1.45").
        timeout: Default timeout in seconds for API calls.
    """

    def __init__(
        self,
        socket_path: str | None = None,
        api_version: str | None = None,
        *,
        timeout: float | None = None,
        pull_timeout: float | None = None,
        exec_timeout: float | None = None,
        handshake_timeout: float | None = None,
        stream_read_timeout: float | None = None,
        transport_factory: Callable[[], httpx.AsyncBaseTransport] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            socket_path: Docker socket path (default from settings).
            api_version: API version prefix (default from settings).
            timeout: Timeout for ordinary API calls.
            pull_timeout: Timeout for image pulls.
            exec_timeout: Timeout for a synchronous exec to finish.
            handshake_timeout: Timeout for the exec upgrade handshake.
            stream_read_timeout: Per-read timeout for streamed exec output.
            transport_factory: Builds the httpx transport for each call.
                Defaults to a Unix-socket transport on ``socket_path``.
        """
        self.socket_path = socket_path or settings.docker_socket_path
        self.api_version = (api_version or settings.docker_api_version).strip("/")
        self.timeout = timeout or settings.docker_request_timeout_seconds
        self.pull_timeout = pull_timeout or settings.docker_pull_timeout_seconds
        self.exec_timeout = exec_timeout or settings.docker_exec_timeout_seconds
        self.handshake_timeout = (
            handshake_timeout or settings.exec_stream_handshake_timeout_seconds
        )
        self.stream_read_timeout = (
            stream_read_timeout or settings.exec_stream_read_timeout_seconds
        )
        self._transport_factory = transport_factory

    def _http(self, timeout: float) -> httpx.AsyncClient:
        if self._transport_factory is not None:
            transport = self._transport_factory()
        else:
            transport = httpx.AsyncHTTPTransport(uds=self.socket_path)
        return httpx.AsyncClient(
            transport=transport,
            base_url=f"http://localhost/{self.api_version}",
            timeout=timeout,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        ok: tuple[int, ...] = (200,),
        not_found_ok: bool = False,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Issue one request and map the outcome.

        Returns:
            The response when its status is in ``ok``, or the 404 response
            itself when ``not_found_ok`` is set.

        Raises:
            DockerTransportError: On connect/read/write failure or timeout.
            DockerAPIError: On any other status.
        """
        try:
            async with self._http(timeout or self.timeout) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise DockerTransportError(f"{method} {path}: {e!r}") from e

        if response.status_code in ok:
            return response
        if response.status_code == 404 and not_found_ok:
            logger.debug("docker_resource_already_absent", method=method, path=path)
            return response
        raise _api_error(response)

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise DockerProtocolError(f"{method} {path}: response is not JSON") from e

    # ------------------------------------------------------------------
    # System / images
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        """Return True if the daemon answers ``/_ping``."""
        try:
            await self._request("GET", "/_ping")
            return True
        except (DockerTransportError, DockerAPIError):
            return False

    async def pull_image(self, image: str) -> None:
        """Pull an image. Pulling an image that is already present is a no-op.

        The daemon streams JSON progress lines; a line with an ``error`` key
        means the pull failed even though the status was 200.
        """
        name, tag = _split_image(image)
        response = await self._request(
            "POST",
            "/images/create",
            params={"fromImage": name, "tag": tag},
            timeout=self.pull_timeout,
        )
        for line in response.text.splitlines():
            if '"error"' not in line:
                continue
            try:
                progress = json.loads(line)
            except ValueError:
                continue
            if isinstance(progress, dict) and progress.get("error"):
                raise DockerAPIError(response.status_code, str(progress["error"]), progress)
        logger.info("image_pulled", image=f"{name}:{tag}")

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def create_container(self, config: dict[str, Any], name: str | None = None) -> str:
        """Create a container and return its id."""
        params = {"name": name} if name else None
        body = await self._json(
            "POST", "/containers/create", json=config, params=params, ok=(201,)
        )
        return body["Id"]

    async def start_container(self, container_id: str) -> None:
        """Start a container (304 "already started" counts as success)."""
        await self._request("POST", f"/containers/{container_id}/start", ok=(204, 304))

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        """Stop a container; an absent or already stopped container is fine."""
        await self._request(
            "POST",
            f"/containers/{container_id}/stop",
            params={"t": timeout},
            ok=(204, 304),
            not_found_ok=True,
            timeout=self.timeout + timeout,
        )

    async def remove_container(
        self, container_id: str, *, force: bool = False, volumes: bool = True
    ) -> None:
        """Remove a container; an absent container is fine."""
        await self._request(
            "DELETE",
            f"/containers/{container_id}",
            params={"force": force, "v": volumes},
            ok=(204,),
            not_found_ok=True,
        )

    async def inspect_container(self, container_id: str) -> dict[str, Any]:
        return await self._json("GET", f"/containers/{container_id}/json")

    async def put_archive(self, container_id: str, path: str, archive: bytes) -> None:
        """Extract a tar archive into ``path`` inside the container."""
        await self._request(
            "PUT",
            f"/containers/{container_id}/archive",
            params={"path": path},
            content=archive,
            headers={"Content-Type": "application/x-tar"},
        )

    # ------------------------------------------------------------------
    # Networks / volumes
    # ------------------------------------------------------------------

    async def create_network(self, name: str, driver: str = "bridge") -> str:
        body = await self._json(
            "POST", "/networks/create", json={"Name": name, "Driver": driver}, ok=(201,)
        )
        return body["Id"]

    async def connect_network(
        self, network_id: str, container_id: str, aliases: list[str] | None = None
    ) -> None:
        """Attach a container to a network under the given DNS aliases."""
        await self._request(
            "POST",
            f"/networks/{network_id}/connect",
            json={
                "Container": container_id,
                "EndpointConfig": {"Aliases": aliases or []},
            },
        )

    async def remove_network(self, network_id: str) -> None:
        await self._request(
            "DELETE", f"/networks/{network_id}", ok=(204,), not_found_ok=True
        )

    async def create_volume(self, name: str) -> str:
        await self._request("POST", "/volumes/create", json={"Name": name}, ok=(201,))
        return name

    async def remove_volume(self, name: str) -> None:
        await self._request("DELETE", f"/volumes/{name}", ok=(204,), not_found_ok=True)

    # ------------------------------------------------------------------
    # Exec
    # ------------------------------------------------------------------

    async def create_exec(self, container_id: str, config: dict[str, Any]) -> str:
        body = await self._json(
            "POST", f"/containers/{container_id}/exec", json=config, ok=(201,)
        )
        return body["Id"]

    async def inspect_exec(self, exec_id: str) -> dict[str, Any]:
        return await self._json("GET", f"/exec/{exec_id}/json")

    async def resize_exec(self, exec_id: str, cols: int, rows: int) -> None:
        """Resize an exec's pseudo-terminal (out of band, not on the stream)."""
        await self._request(
            "POST",
            f"/exec/{exec_id}/resize",
            params={"h": rows, "w": cols},
            ok=(200, 201),
        )

    async def open_exec_stream(self, exec_id: str) -> ExecStream:
        """Start a TTY exec over a raw upgraded connection."""
        return await exec_stream_protocol.open_exec_stream(
            self.socket_path,
            self.api_version,
            exec_id,
            timeout=self.handshake_timeout,
        )

    async def exec_run(
        self,
        container_id: str,
        cmd: list[str],
        *,
        env: list[str] | None = None,
        working_dir: str | None = None,
        user: str | None = None,
    ) -> ExecResult:
        """Run a command to completion and return its exit code and output.

        The non-TTY output stream is demultiplexed; stdout and stderr are
        concatenated in arrival order.
        """
        config: dict[str, Any] = {
            "Cmd": cmd,
            "AttachStdout": True,
            "AttachStderr": True,
            "Env": env or [],
        }
        if working_dir:
            config["WorkingDir"] = working_dir
        if user:
            config["User"] = user

        exec_id = await self.create_exec(container_id, config)
        response = await self._request(
            "POST",
            f"/exec/{exec_id}/start",
            json={"Detach": False, "Tty": False},
            timeout=self.exec_timeout,
        )
        output = demux_docker_stream(response.content)
        exit_code = await self._wait_exit_code(exec_id)
        return ExecResult(exit_code=exit_code, output=output)

    async def exec_stream(
        self,
        container_id: str,
        cmd: list[str],
        on_chunk: ChunkCallback,
        *,
        env: list[str] | None = None,
        working_dir: str | None = None,
        user: str | None = None,
    ) -> int:
        """Run a command under a TTY, streaming output chunks to ``on_chunk``.

        Returns:
            The process exit code, once it has terminated and the stream
            has closed.
        """
        config: dict[str, Any] = {
            "Cmd": cmd,
            "AttachStdin": False,
            "AttachStdout": True,
            "AttachStderr": True,
            "Tty": True,
            "Env": env or [],
        }
        if working_dir:
            config["WorkingDir"] = working_dir
        if user:
            config["User"] = user

        exec_id = await self.create_exec(container_id, config)
        stream = await self.open_exec_stream(exec_id)
        try:
            await exec_stream_protocol.pump(stream, on_chunk, self.stream_read_timeout)
        finally:
            await stream.close()
        return await self._wait_exit_code(exec_id)

    async def _wait_exit_code(self, exec_id: str) -> int:
        info: dict[str, Any] = {}
        for _ in range(_EXIT_CODE_POLLS):
            info = await self.inspect_exec(exec_id)
            if not info.get("Running") and info.get("ExitCode") is not None:
                return int(info["ExitCode"])
            await asyncio.sleep(_EXIT_CODE_POLL_DELAY)
        raise DockerProtocolError(f"Exec {exec_id[:12]} did not report an exit code")

    async def terminate_process_tree(
        self, container_id: str, pid: int, signal: str = "TERM"
    ) -> ExecResult:
        """Signal a whole process group inside a container.

        The negated pid addresses the group led by ``pid``, so every child of
        an exec'd shell is signalled, not only the shell itself.
        """
        return await self.exec_run(container_id, ["kill", f"-{signal}", f"-{pid}"])
