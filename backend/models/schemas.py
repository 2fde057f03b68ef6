"""Pydantic schemas for sandbox records and API request/response models.

This module defines the sandbox data model shared by the orchestrator, the
session managers and the persistence layer, together with the HTTP API
models. All models use Pydantic v2.
"""

import secrets
import time
import uuid
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field


class SandboxState(StrEnum):
    """Sandbox lifecycle state."""

    CREATING = "creating"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"


class CodeServerExtension(BaseModel):
    """An editor extension installed into code-server after it is ready."""

    id: str = Field(
        description="Marketplace identifier",
        examples=["esbenp.prettier-vscode"],
    )
    display_name: str | None = None


class TemplateFile(BaseModel):
    """One node of a template's file tree.

    Directories carry no content; files carry template source that is
    rendered with the sandbox variables before upload.
    """

    id: str
    name: str
    content: str | None = None
    is_directory: bool = False
    parent_id: str | None = None
    sort_order: int = 0


class SandboxTemplate(BaseModel):
    """Blueprint a sandbox is provisioned from."""

    name: str
    base_image: str = Field(
        description="Image of the application container",
        examples=["elixir:1.18"],
    )
    db_image: str | None = Field(
        default=None,
        description="Database image override (defaults to settings.db_image)",
    )
    bootstrap_script: str = ""
    startup_script: str = ""
    dev_server_script: str = ""
    code_server_extensions: list[CodeServerExtension] = Field(default_factory=list)
    files: list[TemplateFile] = Field(default_factory=list)


class TerminalUser(BaseModel):
    """Identity of the person attaching a terminal.

    Used for the idempotent container-side setup: git identity and SSH key
    material for the sandbox user.
    """

    name: str | None = None
    email: str | None = None
    ssh_private_key: str | None = None


class Sandbox(BaseModel):
    """A per-user development sandbox.

    Owned by the orchestrator and changed only through state transitions.
    Container, network, port and sidecar fields are filled in as
    provisioning discovers them.
    """

    id: str
    name: str
    state: SandboxState = SandboxState.CREATING
    template: SandboxTemplate
    db_name: str
    db_password: str
    env_vars: dict[str, str] = Field(default_factory=dict)
    container_id: str | None = None
    db_container_id: str | None = None
    network_id: str | None = None
    host_port: int | None = None
    code_server_port: int | None = None
    tailscale_container_id: str | None = None
    tailscale_hostname: str | None = None
    error_message: str | None = None
    last_activity_at: float | None = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @classmethod
    def new(
        cls,
        name: str,
        template: SandboxTemplate,
        env_vars: dict[str, str] | None = None,
    ) -> "Sandbox":
        """Create a fresh sandbox record in the ``creating`` state."""
        return cls(
            id=uuid.uuid4().hex,
            name=name,
            template=template,
            db_name="proj_" + uuid.uuid4().hex,
            db_password=secrets.token_urlsafe(32),
            env_vars=env_vars or {},
        )


# -----------------------------------------------------------------------------
# API models
# -----------------------------------------------------------------------------


class CreateSandboxRequest(BaseModel):
    """Request body for creating a sandbox."""

    name: str = Field(min_length=1, max_length=100, examples=["Todo API"])
    template: SandboxTemplate
    env_vars: dict[str, str] = Field(default_factory=dict)


class SandboxResponse(BaseModel):
    """Public view of a sandbox (no credentials)."""

    id: str
    name: str
    state: SandboxState
    container_id: str | None = None
    db_container_id: str | None = None
    network_id: str | None = None
    host_port: int | None = None
    code_server_port: int | None = None
    tailscale_hostname: str | None = None
    error_message: str | None = None
    last_activity_at: float | None = None
    created_at: float
    updated_at: float

    @classmethod
    def from_sandbox(cls, sandbox: Sandbox) -> "SandboxResponse":
        return cls.model_validate(sandbox.model_dump(exclude={"db_password", "template"}))


class SessionStatusResponse(BaseModel):
    """Status of a dev-server or code-server session."""

    sandbox_id: str
    running: bool
    ready: bool | None = Field(
        default=None,
        description="code-server only: True once the server is listening",
    )


class SandboxFilesResponse(BaseModel):
    """Uploaded files of a sandbox, relative to ``/uploads``."""

    sandbox_id: str
    files: list[str]


class HealthResponse(BaseModel):
    """Health check response with infrastructure status."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    docker_available: bool = Field(
        default=False,
        description="Whether the Docker daemon is reachable",
    )
    active_sessions: int = Field(
        default=0,
        description="Number of live exec sessions",
    )
