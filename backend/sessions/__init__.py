"""Long-lived exec sessions: terminals, dev servers and code-server.

Each session is an actor owning one raw exec stream into a sandbox's
application container. The SessionRegistry hands out opaque handles and keeps
at most one session per (kind, sandbox, label).
"""

from sessions.base import (
    EventBusSink,
    ExecSession,
    SessionClosedError,
    SessionSink,
    SessionStartError,
    SessionState,
    Utf8StreamDecoder,
)
from sessions.code_server import READY_BANNER, CodeServerSession
from sessions.dev_server import DevServerSession
from sessions.registry import SessionHandle, SessionKind, SessionRegistry
from sessions.terminal import TerminalSession

__all__ = [
    "EventBusSink",
    "ExecSession",
    "SessionClosedError",
    "SessionSink",
    "SessionStartError",
    "SessionState",
    "Utf8StreamDecoder",
    "READY_BANNER",
    "CodeServerSession",
    "DevServerSession",
    "TerminalSession",
    "SessionHandle",
    "SessionKind",
    "SessionRegistry",
]
