"""Browser IDE sessions running code-server inside the app container."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from docker_api import DockerClient
from models.schemas import Sandbox
from sandbox import container_setup
from sessions.base import ExecSession, SessionSink

logger = structlog.get_logger(__name__)

READY_BANNER = "HTTP server listening on"


class CodeServerSession(ExecSession):
    """Runs code-server and tracks whether it is listening.

    ``ready`` flips once the startup banner has been seen in the output,
    even when the banner is split across chunks. The configured extensions
    are then installed in the background; failures there are logged only.

    Args:
        on_ready: Awaited once when the server reports ready.
    """

    kind = "code_server"
    accepts_input = False

    def __init__(
        self,
        docker: DockerClient,
        sandbox: Sandbox,
        sink: SessionSink,
        *,
        on_ready: Callable[[], Awaitable[None]] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(docker, sandbox, sink, **kwargs)
        self.on_ready = on_ready
        self.ready = False
        self.install_task: asyncio.Task[None] | None = None
        self._tail = ""

    async def prepare(self) -> None:
        await container_setup.ensure_code_server(self.docker, self.container_id)

    def build_exec_config(self) -> dict[str, Any]:
        port = self.settings.code_server_port
        command = (
            f"code-server --auth none --bind-addr 0.0.0.0:{port} "
            f"--disable-telemetry --disable-update-check {self.settings.app_workdir}"
        )
        return {
            "AttachStdin": False,
            "AttachStdout": True,
            "AttachStderr": True,
            "Tty": True,
            "Cmd": ["/bin/bash", "-c", command],
            "Env": container_setup.user_env(self.settings)
            + ["TERM=xterm-256color", f"PORT={port}"],
            "User": self.settings.sandbox_user,
            "WorkingDir": self.settings.app_workdir,
        }

    async def on_output(self, text: str) -> None:
        await self.sink.output(text)
        if self.ready:
            return

        window = self._tail + text
        if READY_BANNER not in window:
            self._tail = window[-(len(READY_BANNER) - 1):]
            return

        self.ready = True
        self._tail = ""
        logger.info("code_server_ready", sandbox_id=self.sandbox.id)
        if self.on_ready is not None:
            try:
                await self.on_ready()
            except Exception as e:
                logger.warning("code_server_ready_notify_failed", sandbox_id=self.sandbox.id, error=str(e))
        self.install_task = self._spawn(self._install_extensions())

    async def _install_extensions(self) -> None:
        extensions = self.sandbox.template.code_server_extensions
        if not extensions:
            return
        try:
            await container_setup.install_extensions(
                self.docker, self.container_id, extensions, self.settings
            )
        except Exception as e:
            logger.warning(
                "extension_install_aborted",
                sandbox_id=self.sandbox.id,
                error=str(e),
            )
