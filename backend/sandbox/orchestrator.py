"""Sandbox lifecycle: provisioning, start, stop, destroy and orphan cleanup.

The SandboxOrchestrator drives Docker through a sandbox's lifecycle and
persists every state change through the store's transition table. Work for
one sandbox id is serialized by a SandboxActor: operations are queued and
run one at a time, so a destroy issued while provisioning waits for the
provisioning run to finish instead of racing it.

Provisioning broadcasts a progress line on the sandbox's event topic before
each step and streams bootstrap/startup script output as it arrives. The
first failing step aborts the run; the sandbox moves to ``error`` with the
failure message and whatever container/network ids were already created,
so a later retry or destroy can clean them up.

Usage:
    >>> orchestrator = SandboxOrchestrator(docker, store, bus, tailscale=ts, sessions=registry)
    >>> sandbox = await orchestrator.create("My app", template)
    >>> sandbox = await orchestrator.provision(sandbox.id)
    >>> await orchestrator.stop(sandbox.id)
    >>> await orchestrator.destroy(sandbox.id)
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, NoReturn, TypeVar

import structlog

from config import Settings, settings as default_settings
from docker_api import DockerClient, DockerError
from events import EventBus, EventType
from models.database import SandboxStore
from models.schemas import Sandbox, SandboxState, SandboxTemplate
from sandbox import container_setup, file_sync, tar_builder, templates
from sandbox.container_setup import ContainerSetupError
from sandbox.errors import InvalidTransitionError, ProvisioningError, SandboxOperationError
from sandbox.ports import allocate_ports
from sandbox.state_machine import LifecycleEvent, next_state
from sandbox.tailscale import TailscaleManager
from sessions import SessionRegistry, Utf8StreamDecoder

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ORPHAN_CLEANUP_SCRIPT = "kill -- -1 2>/dev/null; exit 0"


class SandboxActor:
    """Runs queued operations for one sandbox id, one at a time.

    The drain task exits as soon as the queue is empty and reports itself
    idle, so actors only exist while a sandbox has work pending.
    """

    def __init__(self, sandbox_id: str, on_idle: Callable[["SandboxActor"], None]) -> None:
        self.sandbox_id = sandbox_id
        self._on_idle = on_idle
        self._queue: asyncio.Queue[
            tuple[Callable[[], Awaitable[Any]], asyncio.Future[Any]]
        ] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, operation: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((operation, future))
        if not self.busy:
            self._task = asyncio.create_task(self._drain())
        return future

    async def _drain(self) -> None:
        while not self._queue.empty():
            operation, future = self._queue.get_nowait()
            if future.cancelled():
                continue
            try:
                result = await operation()
            except Exception as e:
                if not future.cancelled():
                    future.set_exception(e)
            else:
                if not future.cancelled():
                    future.set_result(result)
        self._on_idle(self)


class SandboxOrchestrator:
    """Drives sandboxes through their lifecycle against the Docker daemon.

    Args:
        docker: Docker Engine API client.
        store: Persistence for sandbox records and state transitions.
        event_bus: Receives progress lines, script output and state changes,
            published on the sandbox id.
        tailscale: Sidecar manager; None disables sidecars.
        sessions: Registry whose sessions are stopped before stop/destroy.
        file_source: Uploaded project files to sync into containers.
        port_allocator: Returns ``n`` distinct free host ports.
    """

    def __init__(
        self,
        docker: DockerClient,
        store: SandboxStore,
        event_bus: EventBus,
        *,
        tailscale: TailscaleManager | None = None,
        sessions: SessionRegistry | None = None,
        file_source: file_sync.FileSource | None = None,
        settings: Settings | None = None,
        port_allocator: Callable[[int], list[int]] = allocate_ports,
    ) -> None:
        self.docker = docker
        self.store = store
        self.event_bus = event_bus
        self.tailscale = tailscale
        self.sessions = sessions
        self.file_source = file_source
        self.settings = settings or default_settings
        self.port_allocator = port_allocator
        self._actors: dict[str, SandboxActor] = {}
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def network_name(self, sandbox_id: str) -> str:
        return f"{self.settings.resource_prefix}-{sandbox_id}"

    def app_container_name(self, sandbox_id: str) -> str:
        return f"{self.settings.resource_prefix}-app-{sandbox_id}"

    def db_container_name(self, sandbox_id: str) -> str:
        return f"{self.settings.resource_prefix}-db-{sandbox_id}"

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def _release(self, actor: SandboxActor) -> None:
        if self._actors.get(actor.sandbox_id) is actor:
            del self._actors[actor.sandbox_id]

    async def _run(self, sandbox_id: str, operation: Callable[[], Awaitable[T]]) -> T:
        actor = self._actors.get(sandbox_id)
        if actor is None:
            actor = self._actors[sandbox_id] = SandboxActor(sandbox_id, self._release)
        return await actor.submit(operation)

    def is_busy(self, sandbox_id: str) -> bool:
        actor = self._actors.get(sandbox_id)
        return actor is not None and actor.busy

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    async def _log(self, sandbox_id: str, message: str, step: int | None = None) -> None:
        await self.event_bus.emit(sandbox_id, EventType.PROVISION_LOG, message=message, step=step)

    async def _publish_state(self, sandbox: Sandbox) -> None:
        await self.event_bus.emit(
            sandbox.id,
            EventType.STATE_CHANGED,
            state=sandbox.state.value,
            error_message=sandbox.error_message,
        )

    def _output_forwarder(self, sandbox_id: str) -> Callable[[bytes], Awaitable[None]]:
        decoder = Utf8StreamDecoder()

        async def forward(chunk: bytes) -> None:
            text = decoder.decode(chunk)
            if text:
                await self.event_bus.emit(sandbox_id, EventType.PROVISION_OUTPUT, output=text)

        return forward

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def create(
        self,
        name: str,
        template: SandboxTemplate,
        env_vars: dict[str, str] | None = None,
    ) -> Sandbox:
        """Record a new sandbox in ``creating``. Nothing is created in Docker."""
        sandbox = Sandbox.new(name=name, template=template, env_vars=env_vars or {})
        await self.store.save(sandbox)
        logger.info("sandbox_created", sandbox_id=sandbox.id, name=name)
        return sandbox

    async def provision(self, sandbox_id: str) -> Sandbox:
        """Provision a sandbox and return it in ``running``.

        Raises:
            SandboxNotFoundError: If the sandbox does not exist.
            InvalidTransitionError: If the sandbox cannot be provisioned
                from its current state.
            ProvisioningError: If a step failed. The sandbox is in ``error``.
        """
        return await self._run(sandbox_id, lambda: self._provision(sandbox_id))

    def provision_in_background(self, sandbox_id: str) -> asyncio.Task[Sandbox | None]:
        """Schedule provisioning; failures are already recorded on the sandbox."""

        async def run() -> Sandbox | None:
            try:
                return await self.provision(sandbox_id)
            except Exception as e:
                logger.warning("background_provision_failed", sandbox_id=sandbox_id, error=str(e))
                return None

        task = asyncio.create_task(run())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def start(self, sandbox_id: str) -> Sandbox:
        """Restart a stopped sandbox.

        Raises:
            InvalidTransitionError: If the sandbox is not stopped.
            SandboxOperationError: If a container could not be started. The
                state is left unchanged.
        """
        return await self._run(sandbox_id, lambda: self._start(sandbox_id))

    async def stop(self, sandbox_id: str) -> Sandbox:
        """Stop a running sandbox's sessions, sidecar and containers.

        Raises:
            InvalidTransitionError: If the sandbox is not running.
            SandboxOperationError: If a container could not be stopped.
        """
        return await self._run(sandbox_id, lambda: self._stop(sandbox_id))

    async def destroy(self, sandbox_id: str) -> Sandbox:
        """Remove every Docker resource of a sandbox and mark it destroyed.

        Removal is best-effort; resources that are already gone count as
        removed.

        Raises:
            InvalidTransitionError: If the sandbox cannot be destroyed from
                its current state.
        """
        return await self._run(sandbox_id, lambda: self._destroy(sandbox_id))

    async def touch(self, sandbox_id: str) -> None:
        await self.store.touch(sandbox_id)

    async def list_files(self, sandbox_id: str) -> list[str]:
        """Names of the sandbox's uploaded files, relative to ``/uploads``."""
        await self.store.load(sandbox_id)
        return await self._file_source().list_files(sandbox_id)

    async def upload_file(self, sandbox_id: str, filename: str, content: bytes) -> str:
        """Store an uploaded file and copy it into a running sandbox.

        The copy into the container is best-effort; a stopped sandbox gets
        its files on the next start.

        Returns:
            The normalized file name.

        Raises:
            SandboxNotFoundError: If the sandbox does not exist.
            InvalidTransitionError: If the sandbox is being destroyed.
            ValueError: If ``filename`` is absolute or escapes ``/uploads``.
        """
        return await self._run(
            sandbox_id, lambda: self._upload_file(sandbox_id, filename, content)
        )

    async def delete_file(self, sandbox_id: str, filename: str) -> bool:
        """Remove an uploaded file from storage and from a running sandbox.

        Returns:
            False if no such file was stored.
        """
        return await self._run(sandbox_id, lambda: self._delete_file(sandbox_id, filename))

    async def cleanup_orphans(self) -> int:
        """Kill leftover exec processes in every running sandbox.

        Sessions of a previous process do not survive a restart, but their
        processes keep running inside the containers. Signalling ``-1``
        reaches every process except the container's init.

        Returns:
            The number of sandboxes cleaned.
        """
        cleaned = 0
        for sandbox in await self.store.list_by_state(SandboxState.RUNNING):
            if not sandbox.container_id:
                continue
            try:
                await self.docker.exec_run(
                    sandbox.container_id,
                    ["sh", "-c", ORPHAN_CLEANUP_SCRIPT],
                    user="root",
                )
                cleaned += 1
            except Exception as e:
                logger.warning("orphan_cleanup_failed", sandbox_id=sandbox.id, error=str(e))
        logger.info("orphan_cleanup_complete", sandboxes=cleaned)
        return cleaned

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    async def _provision(self, sandbox_id: str) -> Sandbox:
        previous = await self.store.load(sandbox_id)
        sandbox = await self.store.transition(sandbox_id, LifecycleEvent.PROVISION, error_message=None)
        await self._log(sandbox_id, "Starting provisioning...", 1)
        await self._publish_state(sandbox)

        if previous.state != SandboxState.CREATING:
            await self._cleanup_partial(sandbox)
            sandbox = await self.store.load(sandbox_id)

        discovered: dict[str, Any] = {}
        step = "Starting"

        def record(**ids: Any) -> None:
            nonlocal sandbox
            discovered.update(ids)
            sandbox = sandbox.model_copy(update=ids)

        async def begin(number: int, message: str) -> None:
            nonlocal step
            step = message.rstrip(".")
            await self._log(sandbox_id, message, number)

        template = sandbox.template
        db_image = template.db_image or self.settings.db_image
        workdir = self.settings.app_workdir

        try:
            await begin(2, "Allocating ports...")
            host_port, code_server_port = self.port_allocator(2)
            record(host_port=host_port, code_server_port=code_server_port)

            await begin(3, f"Pulling image {db_image}...")
            await self.docker.pull_image(db_image)
            await self._log(sandbox_id, f"Pulling image {template.base_image}...", 3)
            await self.docker.pull_image(template.base_image)

            await begin(4, "Creating network...")
            network_id = await self.docker.create_network(self.network_name(sandbox_id))
            record(network_id=network_id)

            await begin(5, "Starting database...")
            db_container_id = await self.docker.create_container(
                self._db_container_config(sandbox, db_image, network_id),
                name=self.db_container_name(sandbox_id),
            )
            record(db_container_id=db_container_id)
            await self.docker.start_container(db_container_id)

            await begin(6, "Waiting for database...")
            await self._wait_for_database(sandbox, db_container_id)
            await self._log(sandbox_id, "Database ready", 6)

            await begin(7, "Creating test database...")
            await self._create_test_database(sandbox, db_container_id)

            await begin(8, "Creating application container...")
            container_id = await self.docker.create_container(
                self._app_container_config(sandbox, network_id),
                name=self.app_container_name(sandbox_id),
            )
            record(container_id=container_id)
            await self.docker.start_container(container_id)

            if self.tailscale is not None and self.tailscale.enabled:
                await begin(9, "Connecting to tailnet...")
                await self._create_sidecar(self.tailscale, sandbox, container_id, record)

            variables = templates.build_variables(sandbox)

            if template.files:
                await begin(10, "Uploading template files...")
                archive = tar_builder.build_from_template_files(template.files, variables)
                await self.docker.put_archive(container_id, workdir, archive)

            bootstrap = templates.render_script(template.bootstrap_script, variables)
            if bootstrap:
                await begin(11, "Running bootstrap script...")
                exit_code = await self.docker.exec_stream(
                    container_id,
                    ["/bin/sh", "-c", bootstrap],
                    self._output_forwarder(sandbox_id),
                    env=container_setup.database_env(variables),
                    working_dir=workdir,
                    user="root",
                )
                if exit_code != 0:
                    raise ProvisioningError(step, f"Bootstrap script failed (exit {exit_code})")

            await begin(12, "Creating sandbox user...")
            await container_setup.ensure_user(self.docker, container_id, self.settings)

            await begin(13, "Installing code-server...")
            await container_setup.ensure_code_server(self.docker, container_id)
            if template.code_server_extensions:
                await container_setup.install_extensions(
                    self.docker, container_id, template.code_server_extensions, self.settings
                )

            startup = templates.render_script(template.startup_script, variables)
            if startup:
                await begin(14, "Running startup script...")
                exit_code = await self._run_startup_script(sandbox, container_id, startup, variables)
                if exit_code != 0:
                    raise ProvisioningError(step, f"Startup script failed (exit {exit_code})")

            if self.file_source is not None:
                await begin(15, "Syncing project files...")
                await self._sync_files(sandbox)

        except Exception as e:
            await self._fail_provisioning(sandbox_id, step, e, discovered)

        sandbox = await self.store.transition(sandbox_id, LifecycleEvent.MARK_RUNNING, **discovered)
        await self._log(sandbox_id, "Provisioning complete", 16)
        await self._publish_state(sandbox)
        logger.info(
            "sandbox_provisioned",
            sandbox_id=sandbox_id,
            container_id=(sandbox.container_id or "")[:12],
            host_port=sandbox.host_port,
        )
        return sandbox

    async def _fail_provisioning(
        self, sandbox_id: str, step: str, error: Exception, discovered: dict[str, Any]
    ) -> NoReturn:
        message = str(error) or type(error).__name__
        logger.error("provisioning_failed", sandbox_id=sandbox_id, step=step, error=message)
        await self._log(sandbox_id, f"Error: {message}")
        sandbox = await self.store.transition(
            sandbox_id, LifecycleEvent.MARK_ERROR, error_message=message, **discovered
        )
        await self._publish_state(sandbox)
        if isinstance(error, ProvisioningError):
            raise error
        raise ProvisioningError(step, message) from error

    def _db_container_config(
        self, sandbox: Sandbox, image: str, network_id: str
    ) -> dict[str, Any]:
        return {
            "Image": image,
            "Env": [
                f"POSTGRES_DB={sandbox.db_name}",
                f"POSTGRES_USER={templates.DB_USER}",
                f"POSTGRES_PASSWORD={sandbox.db_password}",
            ],
            "HostConfig": {"NetworkMode": network_id},
            "NetworkingConfig": {
                "EndpointsConfig": {
                    network_id: {"Aliases": [templates.db_host(sandbox)]},
                }
            },
        }

    def _app_container_config(self, sandbox: Sandbox, network_id: str) -> dict[str, Any]:
        variables = templates.build_variables(sandbox)
        app_port = f"{self.settings.app_service_port}/tcp"
        editor_port = f"{self.settings.code_server_port}/tcp"
        return {
            "Image": sandbox.template.base_image,
            "Cmd": ["sleep", "infinity"],
            "WorkingDir": self.settings.app_workdir,
            "Env": container_setup.database_env(variables)
            + [f"{key}={value}" for key, value in sandbox.env_vars.items()],
            "ExposedPorts": {app_port: {}, editor_port: {}},
            "HostConfig": {
                "NetworkMode": network_id,
                "PortBindings": {
                    app_port: [{"HostPort": str(sandbox.host_port)}],
                    editor_port: [{"HostPort": str(sandbox.code_server_port)}],
                },
            },
        }

    async def _wait_for_database(self, sandbox: Sandbox, db_container_id: str) -> None:
        """Poll until the database accepts real connections.

        ``pg_isready`` over the local socket succeeds during the image's
        first-run initialization, after which the server restarts once, so
        readiness also requires a query over TCP.
        """
        attempts = self.settings.db_ready_attempts
        for attempt in range(1, attempts + 1):
            alive = await self.docker.exec_run(
                db_container_id, ["pg_isready", "-U", templates.DB_USER]
            )
            if alive.exit_code == 0:
                check = await self.docker.exec_run(
                    db_container_id,
                    [
                        "psql",
                        "-h",
                        "127.0.0.1",
                        "-U",
                        templates.DB_USER,
                        "-d",
                        sandbox.db_name,
                        "-c",
                        "SELECT 1",
                    ],
                    env=[f"PGPASSWORD={sandbox.db_password}"],
                )
                if check.exit_code == 0:
                    logger.info("database_ready", sandbox_id=sandbox.id, attempts=attempt)
                    return
            if attempt < attempts:
                await asyncio.sleep(self.settings.db_ready_delay_seconds)
        raise ProvisioningError(
            "Waiting for database",
            f"Database did not become ready after {attempts} attempts",
        )

    async def _create_test_database(self, sandbox: Sandbox, db_container_id: str) -> None:
        result = await self.docker.exec_run(
            db_container_id,
            [
                "psql",
                "-U",
                templates.DB_USER,
                "-c",
                f'CREATE DATABASE "{sandbox.db_name}_test";',
            ],
        )
        if result.exit_code != 0 and "already exists" not in result.text:
            raise ProvisioningError(
                "Creating test database",
                f"Failed to create test database (exit {result.exit_code}): {result.text.strip()}",
            )

    async def _create_sidecar(
        self,
        tailscale: TailscaleManager,
        sandbox: Sandbox,
        container_id: str,
        record: Callable[..., None],
    ) -> None:
        try:
            created = await tailscale.create_sidecar(sandbox, container_id)
        except Exception as e:
            logger.warning("tailscale_sidecar_skipped", sandbox_id=sandbox.id, error=str(e))
            await self._log(sandbox.id, f"Tailscale unavailable, continuing without it: {e}", 9)
            return
        if created is not None:
            tailscale_container_id, hostname = created
            record(tailscale_container_id=tailscale_container_id, tailscale_hostname=hostname)

    async def _run_startup_script(
        self, sandbox: Sandbox, container_id: str, script: str, variables: dict[str, Any]
    ) -> int:
        return await self.docker.exec_stream(
            container_id,
            ["/bin/sh", "-c", script],
            self._output_forwarder(sandbox.id),
            env=container_setup.runtime_env(sandbox, variables, self.settings),
            working_dir=self.settings.app_workdir,
            user=self.settings.sandbox_user,
        )

    # ------------------------------------------------------------------
    # Uploaded files
    # ------------------------------------------------------------------

    def _file_source(self) -> file_sync.FileSource:
        if self.file_source is None:
            raise SandboxOperationError("File uploads are not configured")
        return self.file_source

    async def _load_for_files(self, sandbox_id: str, action: str) -> Sandbox:
        sandbox = await self.store.load(sandbox_id)
        if sandbox.state in (SandboxState.DESTROYING, SandboxState.DESTROYED):
            raise InvalidTransitionError(sandbox.state.value, action)
        return sandbox

    async def _upload_file(self, sandbox_id: str, filename: str, content: bytes) -> str:
        source = self._file_source()
        sandbox = await self._load_for_files(sandbox_id, "upload a file to")
        name = await source.write_file(sandbox_id, filename, content)
        if sandbox.state == SandboxState.RUNNING:
            try:
                await file_sync.sync_file_to_container(
                    self.docker, sandbox, source, name, self.settings
                )
            except (DockerError, OSError) as e:
                logger.warning(
                    "file_upload_sync_failed", sandbox_id=sandbox_id, filename=name, error=str(e)
                )
        logger.info("file_uploaded", sandbox_id=sandbox_id, filename=name, size=len(content))
        return name

    async def _delete_file(self, sandbox_id: str, filename: str) -> bool:
        source = self._file_source()
        sandbox = await self._load_for_files(sandbox_id, "delete a file from")
        existed = await source.delete_file(sandbox_id, filename)
        if sandbox.state == SandboxState.RUNNING:
            await file_sync.delete_file_from_container(self.docker, sandbox, filename)
        logger.info("file_deleted", sandbox_id=sandbox_id, filename=filename, existed=existed)
        return existed

    async def _sync_files(self, sandbox: Sandbox) -> None:
        if self.file_source is None:
            return
        try:
            await file_sync.sync_to_container(self.docker, sandbox, self.file_source, self.settings)
        except Exception as e:
            logger.warning("file_sync_failed", sandbox_id=sandbox.id, error=str(e))

    async def _cleanup_partial(self, sandbox: Sandbox) -> None:
        """Remove what an earlier, failed provisioning run left behind.

        Resources are looked up both by recorded id and by name, since a run
        can fail between creating a resource and recording its id.
        """
        await self._log(sandbox.id, "Cleaning up previous attempt...", 1)
        if self._has_sidecar(sandbox):
            await self._best_effort(sandbox.id, "remove_sidecar", self.tailscale.remove_sidecar(sandbox))
        for container in (
            sandbox.container_id,
            self.app_container_name(sandbox.id),
            sandbox.db_container_id,
            self.db_container_name(sandbox.id),
        ):
            if container:
                await self._best_effort(
                    sandbox.id,
                    "remove_container",
                    self.docker.remove_container(container, force=True),
                )
        for network in (sandbox.network_id, self.network_name(sandbox.id)):
            if network:
                await self._best_effort(sandbox.id, "remove_network", self.docker.remove_network(network))
        await self.store.update(
            sandbox.id,
            container_id=None,
            db_container_id=None,
            network_id=None,
            tailscale_container_id=None,
            tailscale_hostname=None,
        )

    def _has_sidecar(self, sandbox: Sandbox) -> bool:
        return self.tailscale is not None and (
            self.tailscale.enabled or sandbox.tailscale_container_id is not None
        )

    async def _best_effort(self, sandbox_id: str, action: str, operation: Awaitable[Any]) -> None:
        try:
            await operation
        except Exception as e:
            logger.warning(
                "sandbox_cleanup_step_failed",
                sandbox_id=sandbox_id,
                action=action,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Start / stop / destroy
    # ------------------------------------------------------------------

    async def _start(self, sandbox_id: str) -> Sandbox:
        sandbox = await self.store.load(sandbox_id)
        next_state(sandbox.state, LifecycleEvent.START)

        try:
            if sandbox.db_container_id:
                await self.docker.start_container(sandbox.db_container_id)
            if sandbox.container_id:
                await self.docker.start_container(sandbox.container_id)
        except DockerError as e:
            logger.error("sandbox_start_failed", sandbox_id=sandbox_id, error=str(e))
            raise SandboxOperationError(f"Failed to start sandbox: {e}") from e

        if self.tailscale is not None and sandbox.tailscale_container_id:
            await self._best_effort(sandbox_id, "start_sidecar", self.tailscale.start_sidecar(sandbox))

        if sandbox.container_id:
            await self._restore_container(sandbox, sandbox.container_id)

        sandbox = await self.store.transition(sandbox_id, LifecycleEvent.START)
        await self._publish_state(sandbox)
        return sandbox

    async def _restore_container(self, sandbox: Sandbox, container_id: str) -> None:
        """Re-apply the user and startup script to a restarted container."""
        try:
            await container_setup.ensure_user(self.docker, container_id, self.settings)
            variables = templates.build_variables(sandbox)
            startup = templates.render_script(sandbox.template.startup_script, variables)
            if startup:
                exit_code = await self._run_startup_script(sandbox, container_id, startup, variables)
                if exit_code != 0:
                    await self._log(sandbox.id, f"Startup script failed (exit {exit_code})")
        except (ContainerSetupError, DockerError, templates.TemplateRenderError) as e:
            logger.warning("sandbox_restore_failed", sandbox_id=sandbox.id, error=str(e))
            await self._log(sandbox.id, f"Error: {e}")
        await self._sync_files(sandbox)

    async def _stop(self, sandbox_id: str) -> Sandbox:
        sandbox = await self.store.load(sandbox_id)
        next_state(sandbox.state, LifecycleEvent.STOP)

        if self.sessions is not None:
            await self.sessions.stop_all(sandbox_id)
        if self.tailscale is not None and sandbox.tailscale_container_id:
            await self._best_effort(sandbox_id, "stop_sidecar", self.tailscale.stop_sidecar(sandbox))

        try:
            if sandbox.container_id:
                await self.docker.stop_container(sandbox.container_id)
            if sandbox.db_container_id:
                await self.docker.stop_container(sandbox.db_container_id)
        except DockerError as e:
            logger.error("sandbox_stop_failed", sandbox_id=sandbox_id, error=str(e))
            raise SandboxOperationError(f"Failed to stop sandbox: {e}") from e

        sandbox = await self.store.transition(sandbox_id, LifecycleEvent.STOP)
        await self._publish_state(sandbox)
        return sandbox

    async def _destroy(self, sandbox_id: str) -> Sandbox:
        sandbox = await self.store.transition(sandbox_id, LifecycleEvent.BEGIN_DESTROY)
        await self._publish_state(sandbox)

        if self.sessions is not None:
            await self.sessions.stop_all(sandbox_id)
        if self._has_sidecar(sandbox):
            await self._best_effort(sandbox_id, "remove_sidecar", self.tailscale.remove_sidecar(sandbox))
        for container_id in (sandbox.container_id, sandbox.db_container_id):
            if container_id:
                await self._best_effort(
                    sandbox_id,
                    "remove_container",
                    self.docker.remove_container(container_id, force=True),
                )
        if sandbox.network_id:
            await self._best_effort(sandbox_id, "remove_network", self.docker.remove_network(sandbox.network_id))

        sandbox = await self.store.transition(sandbox_id, LifecycleEvent.MARK_DESTROYED)
        await self._publish_state(sandbox)
        await self.event_bus.close_topic(sandbox_id)
        self.event_bus.clear_event_history(sandbox_id)
        logger.info("sandbox_destroyed", sandbox_id=sandbox_id)
        return sandbox
