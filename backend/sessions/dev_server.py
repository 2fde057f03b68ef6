"""Dev server sessions: the template's dev server script, output only."""

from typing import Any

import structlog

from sandbox import container_setup, templates
from sessions.base import ExecSession, SessionStartError

logger = structlog.get_logger(__name__)


class DevServerSession(ExecSession):
    """Runs ``dev_server_script`` as the sandbox user and streams its output.

    One per sandbox. The script runs under ``set -e`` so early lines fail
    fast.
    """

    kind = "dev_server"
    accepts_input = False

    _script = ""

    async def prepare(self) -> None:
        variables = templates.build_variables(self.sandbox)
        self._script = templates.render_script(
            self.sandbox.template.dev_server_script, variables
        )
        if not self._script:
            raise SessionStartError("Template has no dev server script")

    def build_exec_config(self) -> dict[str, Any]:
        return {
            "AttachStdin": False,
            "AttachStdout": True,
            "AttachStderr": True,
            "Tty": True,
            "Cmd": ["/bin/bash", "-c", f"set -e\n{self._script}"],
            "Env": container_setup.runtime_env(self.sandbox, settings=self.settings),
            "User": self.settings.sandbox_user,
            "WorkingDir": self.settings.app_workdir,
        }
