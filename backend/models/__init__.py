"""Models module for Pydantic schemas.

This module exposes the sandbox data model and the API request/response models.
"""

from models.schemas import (
    CodeServerExtension,
    CreateSandboxRequest,
    HealthResponse,
    Sandbox,
    SandboxResponse,
    SandboxState,
    SandboxTemplate,
    SessionStatusResponse,
    TemplateFile,
    TerminalUser,
)

__all__ = [
    "CodeServerExtension",
    "CreateSandboxRequest",
    "HealthResponse",
    "Sandbox",
    "SandboxResponse",
    "SandboxState",
    "SandboxTemplate",
    "SessionStatusResponse",
    "TemplateFile",
    "TerminalUser",
]
