"""FastAPI application entry point for the forgebox backend.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.routes import set_orchestrator as set_routes_orchestrator
from api.websocket import set_orchestrator as set_websocket_orchestrator
from api.websocket import websocket_router
from config import configure_logging, settings
from docker_api import DockerClient
from events import get_event_bus
from models.database import SandboxStore
from sandbox.file_sync import LocalDirectoryFileSource
from sandbox.orchestrator import SandboxOrchestrator
from sandbox.tailscale import TailscaleManager
from sessions import SessionRegistry

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


async def _cleanup_orphans(orchestrator: SandboxOrchestrator) -> None:
    try:
        await orchestrator.cleanup_orphans()
    except Exception as e:
        logger.warning("orphan_cleanup_aborted", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Builds the store, Docker client, event bus, Tailscale manager, session
    registry and orchestrator, and kills exec processes left behind by a
    previous run in the background.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        docker_socket=settings.docker_socket_path,
        tailscale=settings.tailscale_configured,
    )

    store = SandboxStore(settings.database_path)
    await store.init()

    docker = DockerClient()
    event_bus = get_event_bus()
    tailscale = TailscaleManager(docker, settings)
    registry = SessionRegistry(docker, settings, event_bus=event_bus, on_activity=store.touch)
    orchestrator = SandboxOrchestrator(
        docker,
        store,
        event_bus,
        tailscale=tailscale,
        sessions=registry,
        file_source=LocalDirectoryFileSource(settings.uploads_root),
        settings=settings,
    )

    set_routes_orchestrator(orchestrator)
    set_websocket_orchestrator(orchestrator)

    # Store on app.state for access
    app.state.orchestrator = orchestrator
    app.state.cleanup_task = asyncio.create_task(_cleanup_orphans(orchestrator))

    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    cleanup_task = app.state.cleanup_task
    if cleanup_task and not cleanup_task.done():
        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task

    await registry.stop_everything()

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="forgebox",
    description="Per-user development sandboxes: Docker provisioning, "
    "browser terminals, dev servers and code-server.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["sandboxes"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation."""
    return {
        "message": "forgebox API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
