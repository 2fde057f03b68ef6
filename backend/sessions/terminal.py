"""Interactive terminal sessions.

The shell runs inside tmux under the session label, so a UI client that
reconnects with the same label re-attaches to the same shell state. Images
without tmux get a plain login shell.
"""

from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from docker_api import DockerClient
from models.schemas import Sandbox, TerminalUser
from sandbox import container_setup
from sandbox.security import validate_session_label
from sessions.base import ExecSession, SessionSink

logger = structlog.get_logger(__name__)

DEFAULT_LABEL = "main"

SHELL_SCRIPT = (
    "if command -v tmux >/dev/null 2>&1; then "
    'exec tmux new-session -A -s "$SESSION_LABEL"; '
    "else exec bash -l; fi"
)


class TerminalSession(ExecSession):
    """A bidirectional shell session for one UI terminal.

    Args:
        user: Identity of the attaching user, for git and SSH setup.
        on_activity: Run in the background on attach and after every input
            write, to record sandbox activity.
    """

    kind = "terminal"
    accepts_input = True

    def __init__(
        self,
        docker: DockerClient,
        sandbox: Sandbox,
        sink: SessionSink,
        *,
        user: TerminalUser | None = None,
        on_activity: Callable[[], Awaitable[None]] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(docker, sandbox, sink, **kwargs)
        self.label = validate_session_label(self.label or DEFAULT_LABEL)
        self.user = user
        self.on_activity = on_activity

    async def prepare(self) -> None:
        """Idempotent setup; a failed step is logged and skipped."""
        container_id = self.container_id
        steps: list[tuple[str, Callable[[], Awaitable[None]]]] = [
            (
                "ensure_user",
                lambda: container_setup.ensure_user(self.docker, container_id, self.settings),
            ),
            (
                "configure_user",
                lambda: container_setup.configure_terminal_user(
                    self.docker, container_id, self.user, self.settings
                ),
            ),
            ("ensure_tmux", lambda: container_setup.ensure_tmux(self.docker, container_id)),
        ]
        for name, step in steps:
            try:
                await step()
            except Exception as e:
                logger.warning(
                    "terminal_setup_step_failed",
                    sandbox_id=self.sandbox.id,
                    step=name,
                    error=str(e),
                )

    def build_exec_config(self) -> dict[str, Any]:
        return {
            "AttachStdin": True,
            "AttachStdout": True,
            "AttachStderr": True,
            "Tty": True,
            "Cmd": ["/bin/bash", "-lc", SHELL_SCRIPT],
            "Env": container_setup.runtime_env(self.sandbox, settings=self.settings)
            + [f"SESSION_LABEL={self.label}"],
            "User": self.settings.sandbox_user,
            "WorkingDir": self.settings.app_workdir,
        }

    async def start(self) -> None:
        await super().start()
        await self.on_input()

    async def on_input(self) -> None:
        if self.on_activity is not None:
            self._spawn(self._touch(self.on_activity))

    async def _touch(self, on_activity: Callable[[], Awaitable[None]]) -> None:
        try:
            await on_activity()
        except Exception as e:
            logger.debug("terminal_touch_failed", sandbox_id=self.sandbox.id, error=str(e))
