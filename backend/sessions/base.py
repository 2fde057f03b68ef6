"""Exec session actors binding one container process to one output sink.

An ExecSession owns exactly one upgraded exec stream for its whole life. It
moves through ``starting -> attached -> closed``:

- starting: optional container-side preparation, then the exec is created
  and the raw stream is opened. A failure here goes straight to ``closed``
  and the sink is told why.
- attached: a reader task forwards output to the sink in read order, with
  partial UTF-8 sequences carried over to the next chunk. Input is written
  to the stream immediately. Resizes are sent out of band in the background.
- closed: reached once, whatever the cause (peer closed, read error, idle
  timeout, explicit stop). The remote process group is signalled before the
  socket is released, then the sink is notified.
"""

import asyncio
import codecs
import contextlib
import uuid
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, Protocol

import structlog

from config import Settings, settings as default_settings
from docker_api import DockerClient, DockerError, DockerTransportError, ExecStream, pump
from events import EventBus, EventType
from models.schemas import Sandbox

logger = structlog.get_logger(__name__)


class SessionState(StrEnum):
    STARTING = "starting"
    ATTACHED = "attached"
    CLOSED = "closed"


class SessionStartError(Exception):
    """The session could not be attached; it is already closed."""


class SessionClosedError(Exception):
    """The session does not accept input (closed, or output-only)."""


class SessionSink(Protocol):
    """Where a session's decoded output and its end notice go."""

    async def output(self, text: str) -> None: ...

    async def closed(self, reason: str) -> None: ...


class EventBusSink:
    """Publishes session output and its end on a sandbox's event topic."""

    def __init__(
        self,
        bus: EventBus,
        topic: str,
        output_type: EventType,
        closed_type: EventType,
    ) -> None:
        self.bus = bus
        self.topic = topic
        self.output_type = output_type
        self.closed_type = closed_type

    async def output(self, text: str) -> None:
        await self.bus.emit(self.topic, self.output_type, output=text)

    async def closed(self, reason: str) -> None:
        await self.bus.emit(self.topic, self.closed_type, reason=reason)


class Utf8StreamDecoder:
    """Decodes a byte stream chunk by chunk without splitting characters.

    A multi-byte sequence cut at a chunk boundary is withheld and prefixed to
    the next chunk. Invalid bytes decode to U+FFFD.

    Examples:
        >>> d = Utf8StreamDecoder()
        >>> d.decode(b"caf\\xc3")
        'caf'
        >>> d.decode(b"\\xa9!")
        'é!'
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def decode(self, data: bytes) -> str:
        return self._decoder.decode(data)

    def flush(self) -> str:
        """Return whatever is still withheld (as replacement characters)."""
        return self._decoder.decode(b"", final=True)


class ExecSession:
    """Actor owning one TTY exec stream in one container.

    Subclasses describe the process (``build_exec_config``) and may prepare
    the container first (``prepare``) or inspect output (``on_output``).

    Attributes:
        session_id: Opaque identifier of this session instance.
        sandbox: The sandbox whose application container runs the process.
        sink: Receives decoded output and the close notice.
        label: Optional label distinguishing sessions of one kind.
        state: Current SessionState.
        exec_id: Docker exec instance id, once created.
        close_reason: Why the session closed, once it has.
    """

    kind = "exec"
    accepts_input = True

    def __init__(
        self,
        docker: DockerClient,
        sandbox: Sandbox,
        sink: SessionSink,
        *,
        label: str | None = None,
        read_timeout: float | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.session_id = uuid.uuid4().hex
        self.docker = docker
        self.sandbox = sandbox
        self.sink = sink
        self.label = label
        self.settings = settings or default_settings
        self.read_timeout = read_timeout or self.settings.session_idle_timeout_seconds
        self.state = SessionState.STARTING
        self.exec_id: str | None = None
        self.close_reason: str | None = None

        self._stream: ExecStream | None = None
        self._decoder = Utf8StreamDecoder()
        self._reader: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._teardown_started = False
        self._closed_event = asyncio.Event()
        self._close_callbacks: list[Callable[["ExecSession"], None]] = []

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    async def prepare(self) -> None:
        """Container-side setup before the exec is created."""

    def build_exec_config(self) -> dict[str, Any]:
        raise NotImplementedError

    async def on_output(self, text: str) -> None:
        await self.sink.output(text)

    async def on_input(self) -> None:
        """Called after input has been written to the stream."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def container_id(self) -> str:
        if not self.sandbox.container_id:
            raise SessionStartError(f"Sandbox {self.sandbox.id} has no application container")
        return self.sandbox.container_id

    def add_close_callback(self, callback: Callable[["ExecSession"], None]) -> None:
        self._close_callbacks.append(callback)

    async def start(self) -> None:
        """Prepare, create the exec and attach to its stream.

        Raises:
            SessionStartError: If any step fails. The sink has already been
                notified and the session is closed.
        """
        try:
            await self.prepare()
            self.exec_id = await self.docker.create_exec(
                self.container_id, self.build_exec_config()
            )
            stream = await self.docker.open_exec_stream(self.exec_id)
            self._stream = stream
        except Exception as e:
            logger.error(
                "session_start_failed",
                kind=self.kind,
                sandbox_id=self.sandbox.id,
                label=self.label,
                error=str(e),
            )
            await self._finish(f"start failed: {e}")
            raise SessionStartError(str(e)) from e

        self.state = SessionState.ATTACHED
        self._reader = asyncio.create_task(
            self._read_loop(stream), name=f"{self.kind}_{self.sandbox.id}_{self.session_id[:8]}"
        )
        logger.info(
            "session_attached",
            kind=self.kind,
            sandbox_id=self.sandbox.id,
            label=self.label,
            exec_id=stream.exec_id[:12],
        )

    async def _handle_chunk(self, chunk: bytes) -> None:
        text = self._decoder.decode(chunk)
        if text:
            await self.on_output(text)

    async def _read_loop(self, stream: ExecStream) -> None:
        reason = "exited"
        try:
            await pump(stream, self._handle_chunk, self.read_timeout)
        except asyncio.CancelledError:
            if self._teardown_started:
                raise
            reason = "cancelled"
        except DockerTransportError as e:
            reason = f"stream error: {e.reason}"
        except Exception as e:
            logger.error(
                "session_output_failed",
                kind=self.kind,
                sandbox_id=self.sandbox.id,
                error=str(e),
            )
            reason = f"error: {e}"

        if not self._teardown_started:
            self._teardown_started = True
            await self._teardown(reason)

    async def send_input(self, data: bytes | str) -> None:
        """Write input to the process's terminal immediately.

        Raises:
            SessionClosedError: If the session is output-only, not attached,
                or the write fails (the session is then torn down).
        """
        if not self.accepts_input:
            raise SessionClosedError(f"{self.kind} sessions have no input channel")
        if self.state != SessionState.ATTACHED or self._stream is None:
            raise SessionClosedError("Session is not attached")
        payload = data.encode("utf-8") if isinstance(data, str) else data
        try:
            await self._stream.send(payload)
        except DockerTransportError as e:
            self._spawn(self.stop(f"write failed: {e.reason}"))
            raise SessionClosedError(str(e)) from e
        await self.on_input()

    def resize(self, cols: int, rows: int) -> asyncio.Task[None] | None:
        """Request a terminal resize without waiting for it.

        Returns:
            The background task issuing the request, or None when the
            session is not attached.
        """
        if self.state != SessionState.ATTACHED or self.exec_id is None:
            return None
        return self._spawn(self._resize(self.exec_id, cols, rows))

    async def _resize(self, exec_id: str, cols: int, rows: int) -> None:
        try:
            await self.docker.resize_exec(exec_id, cols, rows)
        except DockerError as e:
            logger.debug(
                "session_resize_failed",
                sandbox_id=self.sandbox.id,
                cols=cols,
                rows=rows,
                error=str(e),
            )

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def stop(self, reason: str = "stopped") -> None:
        """Stop the session; returns once it is closed. Safe to call twice."""
        if self._teardown_started:
            await self._closed_event.wait()
            return
        self._teardown_started = True

        current = asyncio.current_task()
        if self._reader is not None and self._reader is not current and not self._reader.done():
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader

        await self._teardown(reason)

    async def wait_closed(self) -> str:
        await self._closed_event.wait()
        return self.close_reason or ""

    async def _teardown(self, reason: str) -> None:
        """Signal the remote process group, then release the socket."""
        if self.exec_id is not None:
            await self._terminate_remote(self.exec_id)
        if self._stream is not None:
            await self._stream.close()
        await self._finish(reason)

    async def _terminate_remote(self, exec_id: str) -> None:
        # Signal the group even when the shell itself has already exited.
        try:
            info = await self.docker.inspect_exec(exec_id)
            pid = int(info.get("Pid") or 0)
            if pid <= 0:
                return
            result = await self.docker.terminate_process_tree(self.container_id, pid)
            if result.exit_code != 0:
                logger.debug(
                    "session_process_group_already_gone",
                    kind=self.kind,
                    sandbox_id=self.sandbox.id,
                    pid=pid,
                    output=result.text.strip()[:200],
                )
        except Exception as e:
            logger.warning(
                "session_process_kill_failed",
                kind=self.kind,
                sandbox_id=self.sandbox.id,
                exec_id=exec_id[:12],
                error=str(e),
            )

    async def _finish(self, reason: str) -> None:
        self.state = SessionState.CLOSED
        self.close_reason = reason
        self._teardown_started = True
        try:
            tail = self._decoder.flush()
            if tail:
                await self.sink.output(tail)
            await self.sink.closed(reason)
        except Exception as e:
            logger.warning(
                "session_sink_close_failed",
                kind=self.kind,
                sandbox_id=self.sandbox.id,
                error=str(e),
            )
        finally:
            self._closed_event.set()
            for callback in self._close_callbacks:
                callback(self)
            logger.info(
                "session_closed",
                kind=self.kind,
                sandbox_id=self.sandbox.id,
                label=self.label,
                reason=reason,
            )
