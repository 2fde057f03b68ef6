"""Tests for sandbox/container_setup.py -- in-container setup steps."""

import io
import tarfile

import pytest

from config import Settings
from docker_api import DockerTransportError, ExecResult
from models.schemas import CodeServerExtension, TerminalUser
from sandbox.container_setup import (
    ContainerSetupError,
    configure_terminal_user,
    database_env,
    ensure_code_server,
    ensure_user,
    install_extensions,
    runtime_env,
    user_env,
)
from sandbox.templates import build_variables
from tests.conftest import FakeDocker, make_sandbox


def _env_dict(env: list[str]) -> dict[str, str]:
    return dict(item.split("=", 1) for item in env)


class TestEnvironment:
    def test_user_env(self, test_settings: Settings) -> None:
        env = _env_dict(user_env(test_settings))
        assert env["SANDBOX_USER"] == "app"
        assert env["SANDBOX_UID"] == "1000"
        assert env["APP_DIR"] == "/app"
        assert env["HOME"] == "/home/app"

    def test_database_env(self) -> None:
        sandbox = make_sandbox()
        env = _env_dict(database_env(build_variables(sandbox)))
        auth = f"postgres:{sandbox.db_password}@db-{sandbox.id}:5432"
        assert env["DATABASE_URL"] == f"postgresql://{auth}/{sandbox.db_name}"
        assert env["DATABASE_TEST_URL"] == f"postgresql://{auth}/{sandbox.db_name}_test"
        assert env["DB_HOST"] == f"db-{sandbox.id}"
        assert env["DB_TEST_NAME"] == f"{sandbox.db_name}_test"

    def test_runtime_env_sandbox_variables_win(self, test_settings: Settings) -> None:
        sandbox = make_sandbox(env_vars={"PORT": "5000", "MIX_ENV": "dev"})
        env = runtime_env(sandbox, settings=test_settings)
        assert env[0] == "TERM=xterm-256color"
        # later entries override earlier ones when Docker builds the environment
        assert _env_dict(env)["PORT"] == "5000"
        assert env.index("PORT=5000") > env.index("PORT=4000")
        assert "MIX_ENV=dev" in env

    def test_runtime_env_app_url(self, test_settings: Settings) -> None:
        sandbox = make_sandbox()
        variables = {**build_variables(sandbox), "app_url": "https://h.ts.net", "app_host": "h.ts.net"}
        env = _env_dict(runtime_env(sandbox, variables, settings=test_settings))
        assert env["APP_URL"] == "https://h.ts.net"
        assert env["APP_HOST"] == "h.ts.net"


class TestEnsureUser:
    async def test_runs_as_root_with_env(self, docker: FakeDocker, test_settings: Settings) -> None:
        await ensure_user(docker, "app-1", test_settings)  # type: ignore[arg-type]

        call = docker.exec_run.await_args
        assert call.args[0] == "app-1"
        assert call.args[1][:2] == ["/bin/sh", "-c"]
        assert call.kwargs["user"] == "root"
        assert "SANDBOX_UID=1000" in call.kwargs["env"]

    async def test_failure_raises(self, docker: FakeDocker, test_settings: Settings) -> None:
        docker.exec_handler = lambda cmd: ExecResult(1, b"useradd: permission denied\n")
        with pytest.raises(ContainerSetupError, match=r"User setup failed \(exit 1\): useradd"):
            await ensure_user(docker, "app-1", test_settings)  # type: ignore[arg-type]


class TestTerminalUser:
    async def test_none_is_noop(self, docker: FakeDocker, test_settings: Settings) -> None:
        await configure_terminal_user(docker, "app-1", None, test_settings)  # type: ignore[arg-type]
        docker.exec_run.assert_not_awaited()

    async def test_git_identity_passed_through_env(self, docker: FakeDocker, test_settings: Settings) -> None:
        user = TerminalUser(name="Ada O'Brien", email="ada@example.com")
        await configure_terminal_user(docker, "app-1", user, test_settings)  # type: ignore[arg-type]

        call = docker.exec_run.await_args
        assert "GIT_USER_NAME=Ada O'Brien" in call.kwargs["env"]
        assert "Ada" not in call.args[1][2]
        assert call.kwargs["user"] == "app"
        docker.put_archive.assert_not_awaited()

    async def test_ssh_key_uploaded_with_modes(self, docker: FakeDocker, test_settings: Settings) -> None:
        user = TerminalUser(name="Ada", ssh_private_key="-----BEGIN KEY-----\nabc\n-----END KEY-----")
        await configure_terminal_user(docker, "app-1", user, test_settings)  # type: ignore[arg-type]

        container_id, path, archive = docker.put_archive.await_args.args
        assert (container_id, path) == ("app-1", "/")
        with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
            members = {m.name: m for m in tar.getmembers()}
            key = tar.extractfile("home/app/.ssh/id_ed25519")
            assert key is not None
            assert key.read().endswith(b"-----END KEY-----\n")
        assert members["home/app/.ssh"].mode == 0o700
        assert members["home/app/.ssh/id_ed25519"].mode == 0o600
        assert members["home/app/.ssh/id_ed25519"].uid == 1000
        assert docker.exec_run.await_count == 2


class TestCodeServer:
    async def test_install_failure_is_fatal(self, docker: FakeDocker) -> None:
        docker.exec_handler = lambda cmd: ExecResult(7, b"curl: (7) Failed to connect")
        with pytest.raises(ContainerSetupError) as exc_info:
            await ensure_code_server(docker, "app-1")  # type: ignore[arg-type]
        assert exc_info.value.exit_code == 7

    async def test_extension_failures_are_skipped(self, docker: FakeDocker, test_settings: Settings) -> None:
        def handler(cmd: list[str]) -> ExecResult:
            if cmd[-1] == "broken.ext":
                return ExecResult(1, b"not found")
            return ExecResult(0, b"")

        docker.exec_handler = handler
        extensions = [
            CodeServerExtension(id="elixir-lsp.elixir-ls"),
            CodeServerExtension(id="broken.ext"),
            CodeServerExtension(id="esbenp.prettier-vscode"),
        ]

        installed = await install_extensions(docker, "app-1", extensions, test_settings)  # type: ignore[arg-type]

        assert installed == 2
        assert [c.args[1][-1] for c in docker.exec_run.await_args_list] == [
            "elixir-lsp.elixir-ls",
            "broken.ext",
            "esbenp.prettier-vscode",
        ]

    async def test_extension_transport_error_is_skipped(self, docker: FakeDocker, test_settings: Settings) -> None:
        docker.exec_run.side_effect = DockerTransportError("socket closed")
        extensions = [CodeServerExtension(id="a.b")]
        assert await install_extensions(docker, "app-1", extensions, test_settings) == 0  # type: ignore[arg-type]
