"""Rendering of template scripts and files with sandbox variables.

Templates use ``{{ variable }}`` placeholders and are rendered in a jinja2
sandboxed environment, so template authors cannot reach Python internals.
Undefined variables render as empty strings.
"""

from typing import Any

import structlog
from jinja2 import TemplateError
from jinja2.sandbox import SandboxedEnvironment

from config import settings
from models.schemas import Sandbox

logger = structlog.get_logger(__name__)

DB_PORT = 5432
DB_USER = "postgres"

_env = SandboxedEnvironment(keep_trailing_newline=True, autoescape=False)


class TemplateRenderError(Exception):
    """A template could not be parsed or rendered."""


def render(source: str, variables: dict[str, Any]) -> str:
    """Render ``source`` with ``variables``.

    Raises:
        TemplateRenderError: On a syntax or evaluation error.
    """
    try:
        return _env.from_string(source).render(**variables)
    except TemplateError as e:
        raise TemplateRenderError(str(e)) from e


def render_script(script: str | None, variables: dict[str, Any]) -> str:
    """Render a lifecycle script; an empty or missing script renders to ``""``."""
    if not script or not script.strip():
        return ""
    return render(script, variables)


def db_host(sandbox: Sandbox) -> str:
    """DNS alias of the database container on the sandbox network."""
    return f"db-{sandbox.id}"


def build_variables(sandbox: Sandbox) -> dict[str, Any]:
    """Variables available to every template of ``sandbox``."""
    variables: dict[str, Any] = {
        "project_name": sandbox.name,
        "db_name": sandbox.db_name,
        "db_test_name": f"{sandbox.db_name}_test",
        "db_user": DB_USER,
        "db_password": sandbox.db_password,
        "db_host": db_host(sandbox),
        "db_port": DB_PORT,
        "app_port": settings.app_service_port,
        "host_port": sandbox.host_port,
        "code_server_port": sandbox.code_server_port,
    }
    if sandbox.tailscale_hostname:
        host = sandbox.tailscale_hostname
        if settings.tailscale_tailnet_name:
            host = f"{host}.{settings.tailscale_tailnet_name}"
        variables["app_host"] = host
        variables["app_url"] = f"https://{host}"
    return variables
