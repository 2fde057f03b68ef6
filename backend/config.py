"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the forgebox
backend. All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        docker_socket_path: Unix socket of the Docker Engine API.
        docker_api_version: API version path prefix (e.g. "v1.45").
        docker_request_timeout_seconds: Timeout for ordinary Docker API calls.
        docker_pull_timeout_seconds: Timeout for image pulls.
        docker_exec_timeout_seconds: Timeout for a synchronous (non-TTY) exec.
        exec_stream_handshake_timeout_seconds: Timeout for each read while
            waiting for the exec upgrade response.
        exec_stream_read_timeout_seconds: Per-read timeout for streamed
            script output (bootstrap/startup scripts).
        session_idle_timeout_seconds: Per-read timeout for long-lived
            sessions (terminal, dev server, code-server); an idle session
            is closed after this long.
        resource_prefix: Prefix for container, network and volume names.
        db_image: Database image for the sandbox's database container.
        db_ready_attempts: Readiness check attempts before provisioning fails.
        db_ready_delay_seconds: Delay between readiness check attempts.
        app_workdir: Working directory of the application container.
        sandbox_user: Unprivileged user created inside the app container.
        sandbox_uid: UID of the unprivileged user.
        app_service_port: Port the application listens on inside the container.
        code_server_port: Port code-server listens on inside the container.
        uploads_root: Local directory holding uploaded project files.
        tailscale_enabled: If True, sandboxes get a Tailscale HTTPS sidecar.
        database_path: SQLite database for sandbox records.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Docker Engine API
    docker_socket_path: str = "/var/run/docker.sock"
    docker_api_version: str = "v1.45"
    docker_request_timeout_seconds: float = 30.0
    docker_pull_timeout_seconds: float = 300.0
    docker_exec_timeout_seconds: float = 600.0
    exec_stream_handshake_timeout_seconds: float = 10.0
    exec_stream_read_timeout_seconds: float = 300.0
    session_idle_timeout_seconds: float = 3600.0

    # Sandbox Configuration
    resource_prefix: str = "forgebox"
    db_image: str = "postgres:18-alpine"
    db_ready_attempts: int = 30
    db_ready_delay_seconds: float = 1.0
    app_workdir: str = "/app"
    sandbox_user: str = "app"
    sandbox_uid: int = 1000
    app_service_port: int = 4000
    code_server_port: int = 8080
    uploads_root: str = "./data/uploads"

    # Tailscale sidecar
    tailscale_enabled: bool = False
    tailscale_oauth_client_id: str = ""
    tailscale_oauth_client_secret: str = ""
    tailscale_tailnet_name: str = ""
    tailscale_tag: str = "tag:forgebox"
    tailscale_image: str = "tailscale/tailscale:latest"
    tailscale_api_base: str = "https://api.tailscale.com/api/v2"

    # Database Configuration
    database_path: str = "./data/sandboxes.db"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def tailscale_configured(self) -> bool:
        """True when the sidecar is enabled and every credential is present."""
        return bool(
            self.tailscale_enabled
            and self.tailscale_oauth_client_id
            and self.tailscale_oauth_client_secret
            and self.tailscale_tailnet_name
        )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
