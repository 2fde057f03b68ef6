"""WebSocket handlers for terminals and sandbox event streaming.

``/ws/sandboxes/{id}/terminal`` binds one browser terminal to one terminal
session. Client messages are JSON objects:

- ``{"type": "input", "data": "ls\\n"}``: keystrokes for the shell
- ``{"type": "resize", "cols": 120, "rows": 40}``: terminal size change
- ``{"type": "ping"}``: answered with ``{"type": "pong"}``

The server sends ``{"type": "output", "data": ...}`` for shell output and one
``{"type": "closed", "reason": ...}`` when the session ends. Disconnecting
stops the session.

``/ws/sandboxes/{id}/events`` replays the sandbox's event history, then
forwards live events until the topic is closed.
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from events import EventType
from models.schemas import SandboxState, TerminalUser
from sandbox.errors import SandboxNotFoundError
from sessions import SessionClosedError, SessionKind, SessionStartError

if TYPE_CHECKING:
    from sandbox.orchestrator import SandboxOrchestrator

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

TERMINAL_ENDED_MESSAGE = "\r\n\x1b[31mTerminal session ended.\x1b[0m\r\n"

# Close codes in the private-use range
CLOSE_NOT_FOUND = 4404
CLOSE_NOT_RUNNING = 4409
CLOSE_START_FAILED = 4500

_orchestrator: "SandboxOrchestrator | None" = None


def set_orchestrator(orchestrator: "SandboxOrchestrator") -> None:
    """Set the orchestrator used by WebSocket handlers."""
    global _orchestrator
    _orchestrator = orchestrator
    logger.info("websocket_orchestrator_configured")


def get_orchestrator() -> "SandboxOrchestrator":
    """Return the configured orchestrator for WebSocket handlers."""
    if _orchestrator is None:
        raise RuntimeError(
            "SandboxOrchestrator not configured for WebSocket handlers. "
            "Call set_orchestrator() during startup."
        )
    return _orchestrator


class WebSocketSink:
    """Session sink writing terminal output to one WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def output(self, text: str) -> None:
        with contextlib.suppress(WebSocketDisconnect, RuntimeError):
            await self.websocket.send_json({"type": "output", "data": text})

    async def closed(self, reason: str) -> None:
        with contextlib.suppress(WebSocketDisconnect, RuntimeError):
            await self.websocket.send_json({"type": "output", "data": TERMINAL_ENDED_MESSAGE})
            await self.websocket.send_json({"type": "closed", "reason": reason})


@websocket_router.websocket("/ws/sandboxes/{sandbox_id}/terminal")
async def terminal_endpoint(
    websocket: WebSocket,
    sandbox_id: str,
    label: str = Query(default="main"),
    git_name: str | None = Query(default=None),
    git_email: str | None = Query(default=None),
) -> None:
    """Attach a browser terminal to a shell in the sandbox's app container."""
    await websocket.accept()
    orchestrator = get_orchestrator()

    try:
        sandbox = await orchestrator.store.load(sandbox_id)
    except SandboxNotFoundError:
        await websocket.close(code=CLOSE_NOT_FOUND, reason="Sandbox not found")
        return
    if sandbox.state != SandboxState.RUNNING:
        await websocket.close(code=CLOSE_NOT_RUNNING, reason=f"Sandbox is {sandbox.state.value}")
        return

    user = None
    if git_name or git_email:
        user = TerminalUser(name=git_name, email=git_email)

    registry = orchestrator.sessions
    try:
        handle = await registry.start_session(
            SessionKind.TERMINAL,
            sandbox,
            WebSocketSink(websocket),
            label=label,
            user=user,
        )
    except (SessionStartError, ValueError) as e:
        logger.warning("terminal_start_failed", sandbox_id=sandbox_id, label=label, error=str(e))
        with contextlib.suppress(WebSocketDisconnect, RuntimeError):
            await websocket.close(code=CLOSE_START_FAILED, reason=str(e)[:120])
        return

    session = registry.get(handle)
    logger.info("terminal_connected", sandbox_id=sandbox_id, label=handle.label)

    async def receive_messages() -> None:
        try:
            while True:
                data = await websocket.receive_json()
                if not isinstance(data, dict):
                    logger.warning("invalid_ws_message", sandbox_id=sandbox_id)
                    continue
                await _handle_terminal_message(data)
        except WebSocketDisconnect:
            logger.info("terminal_disconnected", sandbox_id=sandbox_id, label=handle.label)
        except SessionClosedError:
            logger.info("terminal_input_after_close", sandbox_id=sandbox_id, label=handle.label)

    async def _handle_terminal_message(data: dict[str, Any]) -> None:
        message_type = data.get("type")
        if message_type == "input":
            await registry.send_input(handle, str(data.get("data", "")))
        elif message_type == "resize":
            cols, rows = data.get("cols"), data.get("rows")
            if isinstance(cols, int) and isinstance(rows, int) and cols > 0 and rows > 0:
                registry.resize(handle, cols, rows)
        elif message_type == "ping":
            await websocket.send_json({"type": "pong", "timestamp": data.get("timestamp")})
        else:
            logger.warning("unknown_terminal_message", sandbox_id=sandbox_id, message_type=message_type)

    tasks = [asyncio.create_task(receive_messages())]
    if session is not None:
        tasks.append(asyncio.create_task(session.wait_closed()))

    try:
        _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
    finally:
        await registry.stop(handle)
        with contextlib.suppress(WebSocketDisconnect, RuntimeError):
            await websocket.close()
        logger.info("terminal_cleanup_complete", sandbox_id=sandbox_id, label=handle.label)


@websocket_router.websocket("/ws/sandboxes/{sandbox_id}/events")
async def events_endpoint(websocket: WebSocket, sandbox_id: str) -> None:
    """Stream a sandbox's provisioning, state and server events.

    Reconnecting clients first receive the stored history, so a page reload
    during provisioning still shows every progress line.
    """
    await websocket.accept()
    logger.info("events_websocket_connected", sandbox_id=sandbox_id)

    event_bus = get_orchestrator().event_bus

    # Subscribe before reading history so nothing published in between is
    # lost; duplicates are dropped by timestamp below.
    queue = event_bus.subscribe(sandbox_id)

    try:
        last_replay_timestamp = 0.0
        for event in event_bus.get_event_history(sandbox_id):
            await websocket.send_json(event.model_dump(mode="json"))
            last_replay_timestamp = event.timestamp

        async def send_events() -> None:
            try:
                while True:
                    event = await queue.get()
                    if event.type == EventType.TOPIC_CLOSED:
                        await websocket.send_json(event.model_dump(mode="json"))
                        logger.info("topic_closed_sentinel", sandbox_id=sandbox_id)
                        break
                    if event.timestamp <= last_replay_timestamp:
                        continue
                    await websocket.send_json(event.model_dump(mode="json"))
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", sandbox_id=sandbox_id)

        async def receive_commands() -> None:
            try:
                while True:
                    data = await websocket.receive_json()
                    if isinstance(data, dict) and data.get("type") == "ping":
                        await websocket.send_json({"type": "pong", "timestamp": data.get("timestamp")})
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", sandbox_id=sandbox_id)

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())
        _, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("events_websocket_disconnected", sandbox_id=sandbox_id)
    except Exception as e:
        logger.error("events_websocket_error", sandbox_id=sandbox_id, error=str(e))
    finally:
        event_bus.unsubscribe(sandbox_id, queue)
        with contextlib.suppress(WebSocketDisconnect, RuntimeError):
            await websocket.close()
        logger.info("events_websocket_cleanup_complete", sandbox_id=sandbox_id)
