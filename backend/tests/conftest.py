"""Shared test fixtures for backend tests.

Provides a scripted in-memory Docker client, a fresh EventBus, a temporary
SandboxStore and sample sandboxes so tests never touch a real Docker daemon.
"""

import asyncio
import itertools
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from sandbox.security import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from config import Settings  # noqa: E402
from docker_api import DockerTransportError, ExecResult  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import SandboxEvent  # noqa: E402
from models.database import SandboxStore  # noqa: E402
from models.schemas import (  # noqa: E402
    CodeServerExtension,
    Sandbox,
    SandboxState,
    SandboxTemplate,
    TemplateFile,
)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    """Settings with no waits and Tailscale off."""
    return Settings(
        db_ready_attempts=3,
        db_ready_delay_seconds=0,
        tailscale_enabled=False,
        uploads_root=str(tmp_path / "uploads"),
        database_path=str(tmp_path / "sandboxes.db"),
    )


# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    return EventBus()


def drain(queue: asyncio.Queue[SandboxEvent]) -> list[SandboxEvent]:
    """Take every event currently in ``queue``."""
    events: list[SandboxEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@pytest.fixture()
async def store(tmp_path: Path) -> SandboxStore:
    """An initialized SandboxStore in a temporary directory."""
    sandbox_store = SandboxStore(str(tmp_path / "sandboxes.db"))
    await sandbox_store.init()
    return sandbox_store


# ---------------------------------------------------------------------------
# Sandboxes
# ---------------------------------------------------------------------------


def make_template(**overrides: Any) -> SandboxTemplate:
    """Create a SandboxTemplate with a trivial bootstrap script."""
    values: dict[str, Any] = {
        "name": "phoenix",
        "base_image": "elixir:1.18",
        "bootstrap_script": "exit 0",
        "startup_script": "",
        "dev_server_script": "mix phx.server",
        "code_server_extensions": [CodeServerExtension(id="elixir-lsp.elixir-ls")],
        "files": [
            TemplateFile(id="d1", name="config", is_directory=True),
            TemplateFile(
                id="f1",
                name="dev.exs",
                parent_id="d1",
                content="database: {{ db_name }}",
            ),
            TemplateFile(id="f2", name="README.md", content="# {{ project_name }}"),
        ],
    }
    values.update(overrides)
    return SandboxTemplate(**values)


def make_sandbox(
    state: SandboxState = SandboxState.RUNNING,
    container_id: str | None = "app-container-1",
    **overrides: Any,
) -> Sandbox:
    """Create a sandbox record; running with an app container by default."""
    sandbox = Sandbox.new(name="Todo API", template=overrides.pop("template", make_template()))
    return sandbox.model_copy(
        update={"state": state, "container_id": container_id, **overrides}
    )


# ---------------------------------------------------------------------------
# Fake Docker
# ---------------------------------------------------------------------------


class FakeExecStream:
    """In-memory stand-in for docker_api.ExecStream.

    Output is fed with ``feed``; ``b""`` (or ``finish``) ends the stream.
    Written input is collected in ``sent``. ``log`` is shared with the owning
    FakeDocker so call ordering across both can be asserted.
    """

    def __init__(self, exec_id: str, log: list[str]) -> None:
        self.exec_id = exec_id
        self.log = log
        self.sent: list[bytes] = []
        self.closed = False
        self.fail_writes = False
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def finish(self) -> None:
        self._queue.put_nowait(b"")

    async def send(self, data: bytes) -> None:
        if self.closed or self.fail_writes:
            raise DockerTransportError("Exec stream is closed")
        self.sent.append(data)

    async def read(self, timeout: float) -> bytes:
        if self.closed:
            return b""
        return await self._queue.get()

    async def close(self) -> None:
        if not self.closed:
            self.log.append("close")
        self.closed = True
        self._queue.put_nowait(b"")


class FakeDocker:
    """Scripted DockerClient replacement.

    Every public method is an AsyncMock, so calls can be asserted. Behaviour
    is controlled through:

    - ``exec_handler(cmd) -> ExecResult`` for synchronous execs
    - ``stream_output`` / ``stream_exit_code`` for streamed script execs
    - ``exec_info`` for ``inspect_exec``
    """

    def __init__(self) -> None:
        self.log: list[str] = []
        self.streams: list[FakeExecStream] = []
        self.exec_configs: list[dict[str, Any]] = []
        self.container_configs: dict[str, dict[str, Any]] = {}
        self.exec_handler: Callable[[list[str]], ExecResult] = lambda cmd: ExecResult(0, b"")
        self.stream_output: list[bytes] = []
        self.stream_exit_code = 0
        self.exec_info: dict[str, Any] = {"Pid": 4242, "Running": True, "ExitCode": None}
        self._ids = itertools.count(1)

        self.ping = AsyncMock(return_value=True)
        self.pull_image = AsyncMock()
        self.create_network = AsyncMock(side_effect=lambda name, driver="bridge": f"net-{name}")
        self.connect_network = AsyncMock()
        self.remove_network = AsyncMock()
        self.create_container = AsyncMock(side_effect=self._create_container)
        self.start_container = AsyncMock()
        self.stop_container = AsyncMock()
        self.remove_container = AsyncMock()
        self.inspect_container = AsyncMock(return_value={})
        self.put_archive = AsyncMock()
        self.create_volume = AsyncMock(side_effect=lambda name: name)
        self.remove_volume = AsyncMock()
        self.exec_run = AsyncMock(side_effect=self._exec_run)
        self.exec_stream = AsyncMock(side_effect=self._exec_stream)
        self.create_exec = AsyncMock(side_effect=self._create_exec)
        self.inspect_exec = AsyncMock(side_effect=lambda exec_id: dict(self.exec_info))
        self.resize_exec = AsyncMock()
        self.open_exec_stream = AsyncMock(side_effect=self._open_exec_stream)
        self.terminate_process_tree = AsyncMock(side_effect=self._terminate)

    def _create_container(self, config: dict[str, Any], name: str | None = None) -> str:
        container_id = f"container-{next(self._ids)}"
        self.container_configs[container_id] = {"name": name, **config}
        return container_id

    def _exec_run(self, container_id: str, cmd: list[str], **kwargs: Any) -> ExecResult:
        return self.exec_handler(cmd)

    async def _exec_stream(
        self, container_id: str, cmd: list[str], on_chunk: Any, **kwargs: Any
    ) -> int:
        for chunk in self.stream_output:
            await on_chunk(chunk)
        return self.stream_exit_code

    def _create_exec(self, container_id: str, config: dict[str, Any]) -> str:
        self.exec_configs.append(config)
        return f"exec-{next(self._ids)}"

    def _open_exec_stream(self, exec_id: str) -> FakeExecStream:
        stream = FakeExecStream(exec_id, self.log)
        self.streams.append(stream)
        return stream

    def _terminate(self, container_id: str, pid: int, signal: str = "TERM") -> ExecResult:
        self.log.append(f"terminate:{pid}")
        return ExecResult(0, b"")


@pytest.fixture()
def docker() -> FakeDocker:
    return FakeDocker()


# ---------------------------------------------------------------------------
# Session sink
# ---------------------------------------------------------------------------


class RecordingSink:
    """SessionSink that records output and close reasons."""

    def __init__(self, log: list[str] | None = None) -> None:
        self.outputs: list[str] = []
        self.reasons: list[str] = []
        self.log = log

    @property
    def text(self) -> str:
        return "".join(self.outputs)

    async def output(self, text: str) -> None:
        self.outputs.append(text)

    async def closed(self, reason: str) -> None:
        if self.log is not None:
            self.log.append("sink_closed")
        self.reasons.append(reason)


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


async def settle(rounds: int = 20) -> None:
    """Let background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
