"""Registry of live exec sessions, addressed through opaque handles.

At most one session exists per ``(kind, sandbox id, label)``. Callers get a
SessionHandle from ``start_session`` and pass it back for input, resize and
stop; a handle whose session has been replaced or has closed is stale and
rejected.

Usage:
    >>> registry = SessionRegistry(docker, event_bus=bus, on_activity=orchestrator.touch)
    >>> handle = await registry.start_session(SessionKind.TERMINAL, sandbox, sink, label="main")
    >>> await registry.send_input(handle, b"ls\\n")
    >>> registry.resize(handle, 120, 40)
    >>> await registry.stop(handle)
"""

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from config import Settings, settings as default_settings
from docker_api import DockerClient
from events import EventBus, EventType
from models.schemas import Sandbox
from sessions.base import ExecSession, SessionClosedError, SessionSink, SessionState
from sessions.code_server import CodeServerSession
from sessions.dev_server import DevServerSession
from sessions.terminal import DEFAULT_LABEL, TerminalSession

logger = structlog.get_logger(__name__)


class SessionKind(StrEnum):
    TERMINAL = "terminal"
    DEV_SERVER = "dev_server"
    CODE_SERVER = "code_server"


SESSION_CLASSES: dict[SessionKind, type[ExecSession]] = {
    SessionKind.TERMINAL: TerminalSession,
    SessionKind.DEV_SERVER: DevServerSession,
    SessionKind.CODE_SERVER: CodeServerSession,
}

SessionKey = tuple[SessionKind, str, str]


@dataclass(frozen=True)
class SessionHandle:
    """Opaque reference to one session instance."""

    kind: SessionKind
    sandbox_id: str
    label: str
    session_id: str

    @property
    def key(self) -> SessionKey:
        return (self.kind, self.sandbox_id, self.label)


def _key(kind: SessionKind, sandbox_id: str, label: str | None) -> SessionKey:
    if kind == SessionKind.TERMINAL:
        return (kind, sandbox_id, label or DEFAULT_LABEL)
    # Dev server and code-server are one per sandbox.
    return (kind, sandbox_id, "")


class SessionRegistry:
    """Owns every live session and enforces one session per key.

    Attributes:
        docker: Docker client handed to every session.
        event_bus: When set, code-server readiness is published on it.
        on_activity: Awaited with the sandbox id on terminal activity.
    """

    def __init__(
        self,
        docker: DockerClient,
        settings: Settings | None = None,
        *,
        event_bus: EventBus | None = None,
        on_activity: Callable[[str], Awaitable[None]] | None = None,
    ) -> None:
        self.docker = docker
        self.settings = settings or default_settings
        self.event_bus = event_bus
        self.on_activity = on_activity
        self._sessions: dict[SessionKey, ExecSession] = {}
        self._locks: defaultdict[SessionKey, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _build(
        self, kind: SessionKind, sandbox: Sandbox, sink: SessionSink, label: str, **opts: Any
    ) -> ExecSession:
        if kind == SessionKind.TERMINAL:
            if self.on_activity is not None and "on_activity" not in opts:
                on_activity = self.on_activity
                opts["on_activity"] = lambda: on_activity(sandbox.id)
            opts["label"] = label
        elif kind == SessionKind.CODE_SERVER:
            if self.event_bus is not None and "on_ready" not in opts:
                bus = self.event_bus
                opts["on_ready"] = lambda: bus.emit(
                    sandbox.id,
                    EventType.CODE_SERVER_STARTED,
                    port=sandbox.code_server_port,
                )
        return SESSION_CLASSES[kind](self.docker, sandbox, sink, settings=self.settings, **opts)

    def _forget(self, session: ExecSession) -> None:
        for key, current in list(self._sessions.items()):
            if current is session:
                del self._sessions[key]

    async def start_session(
        self,
        kind: SessionKind,
        sandbox: Sandbox,
        sink: SessionSink,
        *,
        label: str | None = None,
        **opts: Any,
    ) -> SessionHandle:
        """Start a session, or reuse the running dev/code server.

        A terminal started under a label already in use replaces the old
        session, which is stopped first.

        Raises:
            SessionStartError: If the session could not attach.
        """
        kind = SessionKind(kind)
        key = _key(kind, sandbox.id, label)

        async with self._locks[key]:
            existing = self._sessions.get(key)
            if existing is not None and kind != SessionKind.TERMINAL:
                logger.info("session_reused", kind=kind.value, sandbox_id=sandbox.id)
                return SessionHandle(kind, sandbox.id, key[2], existing.session_id)
            if existing is not None:
                logger.info("session_replaced", kind=kind.value, sandbox_id=sandbox.id, label=key[2])
                await existing.stop("replaced")

            session = self._build(kind, sandbox, sink, key[2], **opts)
            # A session that ends on its own leaves the registry.
            session.add_close_callback(self._forget)
            await session.start()
            if session.state != SessionState.CLOSED:
                self._sessions[key] = session

        return SessionHandle(kind, sandbox.id, key[2], session.session_id)

    def get(self, handle: SessionHandle) -> ExecSession | None:
        session = self._sessions.get(handle.key)
        if session is None or session.session_id != handle.session_id:
            return None
        return session

    def _require(self, handle: SessionHandle) -> ExecSession:
        session = self.get(handle)
        if session is None:
            raise SessionClosedError("Session is closed or was replaced")
        return session

    async def send_input(self, handle: SessionHandle, data: bytes | str) -> None:
        """Raises SessionClosedError for stale handles and output-only sessions."""
        await self._require(handle).send_input(data)

    def resize(self, handle: SessionHandle, cols: int, rows: int) -> asyncio.Task[None] | None:
        """Fire-and-forget resize; stale handles are ignored."""
        session = self.get(handle)
        if session is None:
            return None
        return session.resize(cols, rows)

    async def stop(self, handle: SessionHandle) -> None:
        session = self.get(handle)
        if session is not None:
            await session.stop()

    def is_running(
        self, kind: SessionKind, sandbox_id: str, label: str | None = None
    ) -> bool:
        return _key(SessionKind(kind), sandbox_id, label) in self._sessions

    def find(
        self, kind: SessionKind, sandbox_id: str, label: str | None = None
    ) -> ExecSession | None:
        return self._sessions.get(_key(SessionKind(kind), sandbox_id, label))

    async def stop_kind(self, kind: SessionKind, sandbox_id: str) -> None:
        """Stop the dev server or code-server of a sandbox, if running."""
        session = self.find(kind, sandbox_id)
        if session is not None:
            await session.stop()

    async def stop_all(self, sandbox_id: str) -> int:
        """Stop every session of a sandbox; returns how many were stopped."""
        sessions = [s for key, s in self._sessions.items() if key[1] == sandbox_id]
        await asyncio.gather(*(s.stop() for s in sessions), return_exceptions=True)
        if sessions:
            logger.info("sandbox_sessions_stopped", sandbox_id=sandbox_id, count=len(sessions))
        return len(sessions)

    async def stop_everything(self) -> None:
        sessions = list(self._sessions.values())
        await asyncio.gather(*(s.stop("shutdown") for s in sessions), return_exceptions=True)
        logger.info("all_sessions_stopped", count=len(sessions))

    def active_count(self) -> int:
        return len(self._sessions)
