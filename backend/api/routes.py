"""HTTP API routes for the forgebox backend.

This module defines the endpoints for sandbox lifecycle, the dev server and
code-server sessions, and health checks. Terminals and progress events are
served over WebSocket in websocket.py.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated, NoReturn

import structlog
from fastapi import APIRouter, HTTPException, Path, Request, Response, status

from events import EventType
from models.schemas import (
    CreateSandboxRequest,
    HealthResponse,
    Sandbox,
    SandboxFilesResponse,
    SandboxResponse,
    SandboxState,
    SessionStatusResponse,
)
from sandbox.errors import (
    InvalidTransitionError,
    SandboxError,
    SandboxNotFoundError,
)
from sandbox.state_machine import LifecycleEvent, can_transition
from sessions import EventBusSink, SessionKind, SessionStartError

if TYPE_CHECKING:
    from sandbox.orchestrator import SandboxOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter()

SandboxId = Annotated[str, Path(description="The sandbox ID")]

_SESSION_EVENTS = {
    SessionKind.DEV_SERVER: (EventType.DEV_SERVER_OUTPUT, EventType.DEV_SERVER_STOPPED),
    SessionKind.CODE_SERVER: (EventType.CODE_SERVER_OUTPUT, EventType.CODE_SERVER_STOPPED),
}

# Orchestrator dependency (set during application startup)
_orchestrator: SandboxOrchestrator | None = None


def set_orchestrator(orchestrator: SandboxOrchestrator) -> None:
    """Set the orchestrator instance used by all routes.

    This should be called during application startup.
    """
    global _orchestrator
    _orchestrator = orchestrator
    logger.info("orchestrator_configured")


def get_orchestrator() -> SandboxOrchestrator:
    """Get the orchestrator instance.

    Raises:
        RuntimeError: If the orchestrator has not been configured.
    """
    if _orchestrator is None:
        logger.error("orchestrator_not_configured")
        raise RuntimeError(
            "SandboxOrchestrator not configured. Call set_orchestrator() during startup."
        )
    return _orchestrator


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _raise_http(error: Exception, action: str, sandbox_id: str) -> NoReturn:
    """Map lifecycle errors to HTTP errors."""
    if isinstance(error, SandboxNotFoundError):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sandbox {sandbox_id} not found",
        ) from error
    if isinstance(error, ValueError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error)) from error
    if isinstance(error, InvalidTransitionError):
        logger.warning("invalid_transition_requested", sandbox_id=sandbox_id, action=action, error=str(error))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error)) from error
    if isinstance(error, (SandboxError, SessionStartError)):
        logger.error(f"{action}_failed", sandbox_id=sandbox_id, error=str(error))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error)) from error

    logger.error(f"{action}_failed", sandbox_id=sandbox_id, error=str(error))
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action.replace('_', ' ')}: {error}",
    ) from error


async def _load(sandbox_id: str) -> Sandbox:
    try:
        return await get_orchestrator().store.load(sandbox_id)
    except Exception as e:
        _raise_http(e, "load_sandbox", sandbox_id)


async def _load_running(sandbox_id: str) -> Sandbox:
    sandbox = await _load(sandbox_id)
    if sandbox.state != SandboxState.RUNNING:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Sandbox {sandbox_id} is {sandbox.state.value}, not running",
        )
    return sandbox


def _session_status(kind: SessionKind, sandbox_id: str) -> SessionStatusResponse:
    session = get_orchestrator().sessions.find(kind, sandbox_id)
    ready = None
    if kind == SessionKind.CODE_SERVER:
        ready = bool(session is not None and getattr(session, "ready", False))
    return SessionStatusResponse(sandbox_id=sandbox_id, running=session is not None, ready=ready)


async def _start_session(kind: SessionKind, sandbox_id: str) -> SessionStatusResponse:
    orchestrator = get_orchestrator()
    sandbox = await _load_running(sandbox_id)
    output_type, closed_type = _SESSION_EVENTS[kind]
    sink = EventBusSink(orchestrator.event_bus, sandbox_id, output_type, closed_type)
    try:
        await orchestrator.sessions.start_session(kind, sandbox, sink)
    except SessionStartError as e:
        _raise_http(e, f"start_{kind.value}", sandbox_id)
    await orchestrator.touch(sandbox_id)
    logger.info("session_started_via_api", kind=kind.value, sandbox_id=sandbox_id)
    return _session_status(kind, sandbox_id)


async def _stop_session(kind: SessionKind, sandbox_id: str) -> SessionStatusResponse:
    await _load(sandbox_id)
    await get_orchestrator().sessions.stop_kind(kind, sandbox_id)
    return _session_status(kind, sandbox_id)


# -----------------------------------------------------------------------------
# Sandboxes
# -----------------------------------------------------------------------------


@router.post(
    "/api/sandboxes",
    response_model=SandboxResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a sandbox",
    description="Record a new sandbox and start provisioning it in the background.",
)
async def create_sandbox(request: CreateSandboxRequest) -> SandboxResponse:
    """Create a sandbox and schedule its provisioning.

    Progress is published on ``/ws/sandboxes/{id}/events``.
    """
    orchestrator = get_orchestrator()
    try:
        sandbox = await orchestrator.create(request.name, request.template, request.env_vars)
    except Exception as e:
        _raise_http(e, "create_sandbox", "new")

    orchestrator.provision_in_background(sandbox.id)
    return SandboxResponse.from_sandbox(sandbox)


@router.get(
    "/api/sandboxes/{sandbox_id}",
    response_model=SandboxResponse,
    summary="Get a sandbox",
)
async def get_sandbox(sandbox_id: SandboxId) -> SandboxResponse:
    return SandboxResponse.from_sandbox(await _load(sandbox_id))


@router.post(
    "/api/sandboxes/{sandbox_id}/provision",
    response_model=SandboxResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Provision a sandbox",
    description="Retry provisioning of a new or failed sandbox in the background.",
)
async def provision_sandbox(sandbox_id: SandboxId) -> SandboxResponse:
    orchestrator = get_orchestrator()
    sandbox = await _load(sandbox_id)
    if not can_transition(sandbox.state, LifecycleEvent.PROVISION):
        _raise_http(
            InvalidTransitionError(sandbox.state.value, LifecycleEvent.PROVISION.value),
            "provision_sandbox",
            sandbox_id,
        )
    orchestrator.provision_in_background(sandbox_id)
    return SandboxResponse.from_sandbox(sandbox)


@router.post(
    "/api/sandboxes/{sandbox_id}/start",
    response_model=SandboxResponse,
    summary="Start a stopped sandbox",
)
async def start_sandbox(sandbox_id: SandboxId) -> SandboxResponse:
    try:
        sandbox = await get_orchestrator().start(sandbox_id)
    except Exception as e:
        _raise_http(e, "start_sandbox", sandbox_id)
    return SandboxResponse.from_sandbox(sandbox)


@router.post(
    "/api/sandboxes/{sandbox_id}/stop",
    response_model=SandboxResponse,
    summary="Stop a running sandbox",
)
async def stop_sandbox(sandbox_id: SandboxId) -> SandboxResponse:
    try:
        sandbox = await get_orchestrator().stop(sandbox_id)
    except Exception as e:
        _raise_http(e, "stop_sandbox", sandbox_id)
    return SandboxResponse.from_sandbox(sandbox)


@router.post(
    "/api/sandboxes/{sandbox_id}/destroy",
    response_model=SandboxResponse,
    summary="Destroy a sandbox",
    description="Remove the sandbox's containers, sidecar and network.",
)
async def destroy_sandbox(sandbox_id: SandboxId) -> SandboxResponse:
    try:
        sandbox = await get_orchestrator().destroy(sandbox_id)
    except Exception as e:
        _raise_http(e, "destroy_sandbox", sandbox_id)
    return SandboxResponse.from_sandbox(sandbox)


# -----------------------------------------------------------------------------
# Dev server / code-server
# -----------------------------------------------------------------------------


@router.post(
    "/api/sandboxes/{sandbox_id}/dev-server",
    response_model=SessionStatusResponse,
    summary="Start the dev server",
    description="Run the template's dev server script; output is published as events.",
)
async def start_dev_server(sandbox_id: SandboxId) -> SessionStatusResponse:
    return await _start_session(SessionKind.DEV_SERVER, sandbox_id)


@router.delete(
    "/api/sandboxes/{sandbox_id}/dev-server",
    response_model=SessionStatusResponse,
    summary="Stop the dev server",
)
async def stop_dev_server(sandbox_id: SandboxId) -> SessionStatusResponse:
    return await _stop_session(SessionKind.DEV_SERVER, sandbox_id)


@router.get(
    "/api/sandboxes/{sandbox_id}/dev-server",
    response_model=SessionStatusResponse,
    summary="Dev server status",
)
async def dev_server_status(sandbox_id: SandboxId) -> SessionStatusResponse:
    await _load(sandbox_id)
    return _session_status(SessionKind.DEV_SERVER, sandbox_id)


@router.post(
    "/api/sandboxes/{sandbox_id}/code-server",
    response_model=SessionStatusResponse,
    summary="Start code-server",
    description="Start the browser IDE on the sandbox's editor port.",
)
async def start_code_server(sandbox_id: SandboxId) -> SessionStatusResponse:
    return await _start_session(SessionKind.CODE_SERVER, sandbox_id)


@router.delete(
    "/api/sandboxes/{sandbox_id}/code-server",
    response_model=SessionStatusResponse,
    summary="Stop code-server",
)
async def stop_code_server(sandbox_id: SandboxId) -> SessionStatusResponse:
    return await _stop_session(SessionKind.CODE_SERVER, sandbox_id)


@router.get(
    "/api/sandboxes/{sandbox_id}/code-server",
    response_model=SessionStatusResponse,
    summary="code-server status",
)
async def code_server_status(sandbox_id: SandboxId) -> SessionStatusResponse:
    await _load(sandbox_id)
    return _session_status(SessionKind.CODE_SERVER, sandbox_id)


# -----------------------------------------------------------------------------
# Uploaded files
# -----------------------------------------------------------------------------


@router.get(
    "/api/sandboxes/{sandbox_id}/files",
    response_model=SandboxFilesResponse,
    summary="List uploaded files",
)
async def list_files(sandbox_id: SandboxId) -> SandboxFilesResponse:
    try:
        files = await get_orchestrator().list_files(sandbox_id)
    except Exception as e:
        _raise_http(e, "list_files", sandbox_id)
    return SandboxFilesResponse(sandbox_id=sandbox_id, files=files)


@router.put(
    "/api/sandboxes/{sandbox_id}/files/{filename:path}",
    response_model=SandboxFilesResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a file",
    description="Store the request body as /uploads/<filename> and copy it into the "
    "sandbox if it is running.",
)
async def upload_file(sandbox_id: SandboxId, filename: str, request: Request) -> SandboxFilesResponse:
    content = await request.body()
    try:
        name = await get_orchestrator().upload_file(sandbox_id, filename, content)
    except Exception as e:
        _raise_http(e, "upload_file", sandbox_id)
    return SandboxFilesResponse(sandbox_id=sandbox_id, files=[name])


@router.delete(
    "/api/sandboxes/{sandbox_id}/files/{filename:path}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Delete an uploaded file",
)
async def delete_file(sandbox_id: SandboxId, filename: str) -> Response:
    try:
        existed = await get_orchestrator().delete_file(sandbox_id, filename)
    except Exception as e:
        _raise_http(e, "delete_file", sandbox_id)
    if not existed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"File {filename} not found",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with Docker and session status.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint with infrastructure status.

    Returns Docker daemon connectivity and the number of live exec sessions
    in addition to the basic health status and timestamp.
    """
    docker_available = False
    active_sessions = 0

    try:
        orchestrator = get_orchestrator()
        docker_available = await orchestrator.docker.ping()
        if orchestrator.sessions is not None:
            active_sessions = orchestrator.sessions.active_count()
    except RuntimeError:
        # Orchestrator not configured yet (e.g., during startup)
        pass
    except Exception as e:
        logger.warning("health_check_partial_failure", error=str(e))

    overall_status = "healthy" if docker_available else "unhealthy"

    return HealthResponse(
        status=overall_status,
        timestamp=time.time(),
        docker_available=docker_available,
        active_sessions=active_sessions,
    )
