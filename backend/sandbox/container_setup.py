"""Idempotent setup steps run inside a sandbox's application container.

Every step can be re-run against a container that already has it applied.
Values reach the shell scripts through the exec environment, never through
string interpolation into the script text.
"""

from typing import Any

import structlog

from config import Settings, settings as default_settings
from docker_api import DockerClient, DockerError
from models.schemas import CodeServerExtension, Sandbox, TerminalUser
from sandbox import tar_builder, templates
from sandbox.security import sanitize_output

logger = structlog.get_logger(__name__)

BASE_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# Renames or removes an image user holding the sandbox UID (node, ubuntu, ...)
# before the sandbox user is created with that UID.
ENSURE_USER_SCRIPT = r"""
set -e
if id -u "$SANDBOX_USER" >/dev/null 2>&1; then
  exit 0
fi
EXISTING=$(getent passwd "$SANDBOX_UID" | cut -d: -f1 || true)
if [ -n "$EXISTING" ]; then
  if command -v usermod >/dev/null 2>&1; then
    usermod -l "$SANDBOX_USER" -d "/home/$SANDBOX_USER" -m "$EXISTING"
    OLD_GROUP=$(getent group "$SANDBOX_UID" | cut -d: -f1 || true)
    if [ -n "$OLD_GROUP" ] && [ "$OLD_GROUP" != "$SANDBOX_USER" ]; then
      groupmod -n "$SANDBOX_USER" "$OLD_GROUP" || true
    fi
  else
    deluser "$EXISTING" || true
  fi
fi
if ! id -u "$SANDBOX_USER" >/dev/null 2>&1; then
  if command -v useradd >/dev/null 2>&1; then
    useradd -m -u "$SANDBOX_UID" -s /bin/bash "$SANDBOX_USER"
  else
    adduser -D -u "$SANDBOX_UID" -s /bin/sh "$SANDBOX_USER"
  fi
fi
mkdir -p "$APP_DIR" "/home/$SANDBOX_USER"
chown -R "$SANDBOX_USER" "$APP_DIR" "/home/$SANDBOX_USER"
"""

GIT_IDENTITY_SCRIPT = r"""
command -v git >/dev/null 2>&1 || exit 0
if [ -n "$GIT_USER_NAME" ]; then git config --global user.name "$GIT_USER_NAME"; fi
if [ -n "$GIT_USER_EMAIL" ]; then git config --global user.email "$GIT_USER_EMAIL"; fi
git config --global --add safe.directory "$APP_DIR"
"""

FIX_SSH_PERMISSIONS_SCRIPT = r"""
chown -R "$SANDBOX_USER" "$HOME/.ssh"
chmod 700 "$HOME/.ssh"
chmod 600 "$HOME/.ssh/id_ed25519"
"""

ENSURE_TMUX_SCRIPT = r"""
command -v tmux >/dev/null 2>&1 && exit 0
if command -v apt-get >/dev/null 2>&1; then
  apt-get update -qq && apt-get install -y -qq tmux
elif command -v apk >/dev/null 2>&1; then
  apk add --no-cache tmux
else
  exit 1
fi
"""

ENSURE_CODE_SERVER_SCRIPT = r"""
if command -v code-server >/dev/null 2>&1; then
  exit 0
fi
curl -fsSL https://code-server.dev/install.sh | sh
"""

SSH_CONFIG = "Host *\n  StrictHostKeyChecking accept-new\n"


class ContainerSetupError(Exception):
    """A setup script exited non-zero."""

    def __init__(self, step: str, exit_code: int, output: str = "") -> None:
        detail = f": {sanitize_output(output)}" if output.strip() else ""
        super().__init__(f"{step} failed (exit {exit_code}){detail}")
        self.step = step
        self.exit_code = exit_code


def home_dir(settings: Settings = default_settings) -> str:
    return f"/home/{settings.sandbox_user}"


def user_env(settings: Settings = default_settings) -> list[str]:
    return [
        f"SANDBOX_USER={settings.sandbox_user}",
        f"SANDBOX_UID={settings.sandbox_uid}",
        f"APP_DIR={settings.app_workdir}",
        f"HOME={home_dir(settings)}",
        f"PATH={BASE_PATH}:{home_dir(settings)}/.local/bin",
    ]


def database_env(variables: dict[str, Any]) -> list[str]:
    v = variables
    auth = f"{v['db_user']}:{v['db_password']}@{v['db_host']}:{v['db_port']}"
    return [
        f"DATABASE_URL=postgresql://{auth}/{v['db_name']}",
        f"DATABASE_TEST_URL=postgresql://{auth}/{v['db_test_name']}",
        f"DB_HOST={v['db_host']}",
        f"DB_PORT={v['db_port']}",
        f"DB_NAME={v['db_name']}",
        f"DB_TEST_NAME={v['db_test_name']}",
        f"DB_USER={v['db_user']}",
        f"DB_PASSWORD={v['db_password']}",
    ]


def runtime_env(
    sandbox: Sandbox,
    variables: dict[str, Any] | None = None,
    settings: Settings = default_settings,
) -> list[str]:
    """Environment for processes the sandbox user runs (scripts, servers).

    Database connection variables come first, then the tailnet URL when the
    sandbox has a sidecar, then the sandbox's own variables, which win.
    """
    v = variables if variables is not None else templates.build_variables(sandbox)
    env = [
        "TERM=xterm-256color",
        f"HOME={home_dir(settings)}",
        f"PATH={BASE_PATH}:{home_dir(settings)}/.local/bin",
        f"PORT={settings.app_service_port}",
        *database_env(v),
    ]
    if v.get("app_url"):
        env += [f"APP_URL={v['app_url']}", f"APP_HOST={v['app_host']}"]
    env += [f"{key}={value}" for key, value in sandbox.env_vars.items()]
    return env


async def _run(
    docker: DockerClient,
    container_id: str,
    step: str,
    script: str,
    *,
    env: list[str],
    user: str | None = None,
) -> None:
    result = await docker.exec_run(
        container_id, ["/bin/sh", "-c", script], env=env, user=user
    )
    if result.exit_code != 0:
        raise ContainerSetupError(step, result.exit_code, result.text)


async def ensure_user(
    docker: DockerClient, container_id: str, settings: Settings = default_settings
) -> None:
    """Create the sandbox user with the configured UID (as root).

    Raises:
        ContainerSetupError: If the script fails.
        DockerError: On a Docker API failure.
    """
    await _run(
        docker,
        container_id,
        "User setup",
        ENSURE_USER_SCRIPT,
        env=user_env(settings),
        user="root",
    )


async def configure_terminal_user(
    docker: DockerClient,
    container_id: str,
    user: TerminalUser | None,
    settings: Settings = default_settings,
) -> None:
    """Apply git identity and SSH key material for an attaching user."""
    if user is None:
        return
    env = user_env(settings) + [
        f"GIT_USER_NAME={user.name or ''}",
        f"GIT_USER_EMAIL={user.email or ''}",
    ]
    await _run(
        docker,
        container_id,
        "Git identity",
        GIT_IDENTITY_SCRIPT,
        env=env,
        user=settings.sandbox_user,
    )

    if user.ssh_private_key:
        key = user.ssh_private_key.rstrip("\n") + "\n"
        ssh_dir = f"{home_dir(settings).lstrip('/')}/.ssh"
        archive = tar_builder.build(
            [
                tar_builder.TarEntry(path=ssh_dir, is_directory=True, mode=0o700),
                tar_builder.TarEntry(path=f"{ssh_dir}/id_ed25519", content=key, mode=0o600),
                tar_builder.TarEntry(path=f"{ssh_dir}/config", content=SSH_CONFIG),
            ],
            uid=settings.sandbox_uid,
            gid=settings.sandbox_uid,
        )
        await docker.put_archive(container_id, "/", archive)
        await _run(
            docker,
            container_id,
            "SSH key",
            FIX_SSH_PERMISSIONS_SCRIPT,
            env=user_env(settings),
            user="root",
        )


async def ensure_tmux(docker: DockerClient, container_id: str) -> None:
    await _run(
        docker,
        container_id,
        "tmux install",
        ENSURE_TMUX_SCRIPT,
        env=[f"PATH={BASE_PATH}", "DEBIAN_FRONTEND=noninteractive"],
        user="root",
    )


async def ensure_code_server(docker: DockerClient, container_id: str) -> None:
    """Install code-server if the image does not already have it.

    Raises:
        ContainerSetupError: If the installer fails.
    """
    await _run(
        docker,
        container_id,
        "code-server install",
        ENSURE_CODE_SERVER_SCRIPT,
        env=[f"PATH={BASE_PATH}"],
        user="root",
    )


async def install_extensions(
    docker: DockerClient,
    container_id: str,
    extensions: list[CodeServerExtension],
    settings: Settings = default_settings,
) -> int:
    """Install editor extensions one by one; failures are logged and skipped.

    Returns:
        The number of extensions installed successfully.
    """
    installed = 0
    for extension in extensions:
        try:
            result = await docker.exec_run(
                container_id,
                ["code-server", "--install-extension", extension.id],
                env=user_env(settings),
                user=settings.sandbox_user,
            )
        except DockerError as e:
            logger.warning(
                "extension_install_failed",
                container_id=container_id[:12],
                extension=extension.id,
                error=str(e),
            )
            continue
        if result.exit_code != 0:
            logger.warning(
                "extension_install_failed",
                container_id=container_id[:12],
                extension=extension.id,
                exit_code=result.exit_code,
                output=sanitize_output(result.text, 500),
            )
            continue
        installed += 1
    logger.info(
        "extensions_installed",
        container_id=container_id[:12],
        installed=installed,
        requested=len(extensions),
    )
    return installed
