"""Sync of uploaded project files into a sandbox container at ``/uploads``.

Uploaded files live outside the container (a FileSource); they are copied in
as one tar archive extracted at ``/``, with entries under ``uploads/``.
Syncing is best-effort: a file that cannot be read is skipped.
"""

import asyncio
from pathlib import Path
from typing import Protocol

import structlog

from config import Settings, settings as default_settings
from docker_api import DockerClient
from models.schemas import Sandbox
from sandbox import tar_builder
from sandbox.security import validate_archive_path

logger = structlog.get_logger(__name__)

UPLOADS_DIR = "/uploads"


class FileSource(Protocol):
    """Where a sandbox's uploaded files are stored."""

    async def list_files(self, sandbox_id: str) -> list[str]: ...

    async def read_file(self, sandbox_id: str, filename: str) -> bytes: ...

    async def write_file(self, sandbox_id: str, filename: str, content: bytes) -> str: ...

    async def delete_file(self, sandbox_id: str, filename: str) -> bool: ...


class LocalDirectoryFileSource:
    """Uploaded files kept on local disk under ``<root>/<sandbox id>/``."""

    def __init__(self, root: str | None = None) -> None:
        self.root = Path(root or default_settings.uploads_root)

    def _dir(self, sandbox_id: str) -> Path:
        return self.root / sandbox_id

    def _list(self, sandbox_id: str) -> list[str]:
        base = self._dir(sandbox_id)
        if not base.is_dir():
            return []
        return sorted(
            str(path.relative_to(base)).replace("\\", "/")
            for path in base.rglob("*")
            if path.is_file()
        )

    async def list_files(self, sandbox_id: str) -> list[str]:
        return await asyncio.get_running_loop().run_in_executor(None, self._list, sandbox_id)

    async def read_file(self, sandbox_id: str, filename: str) -> bytes:
        path = self._dir(sandbox_id) / validate_archive_path(filename)
        return await asyncio.get_running_loop().run_in_executor(None, path.read_bytes)

    def _write(self, path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

    def _delete(self, path: Path) -> bool:
        if not path.is_file():
            return False
        path.unlink()
        return True

    async def write_file(self, sandbox_id: str, filename: str, content: bytes) -> str:
        """Store an upload and return its normalized name.

        Raises:
            ValueError: If ``filename`` is absolute or escapes the directory.
        """
        name = validate_archive_path(filename)
        path = self._dir(sandbox_id) / name
        await asyncio.get_running_loop().run_in_executor(None, self._write, path, content)
        return name

    async def delete_file(self, sandbox_id: str, filename: str) -> bool:
        """Remove an upload. Returns False if it did not exist."""
        path = self._dir(sandbox_id) / validate_archive_path(filename)
        return await asyncio.get_running_loop().run_in_executor(None, self._delete, path)


async def _ensure_uploads_dir(
    docker: DockerClient, container_id: str, settings: Settings
) -> None:
    await docker.exec_run(container_id, ["mkdir", "-p", UPLOADS_DIR], user="root")
    await docker.exec_run(
        container_id,
        ["chown", "-R", f"{settings.sandbox_uid}", UPLOADS_DIR],
        user="root",
    )


async def sync_to_container(
    docker: DockerClient,
    sandbox: Sandbox,
    source: FileSource,
    settings: Settings = default_settings,
) -> int:
    """Copy every uploaded file of ``sandbox`` into ``/uploads``.

    Returns:
        The number of files copied.

    Raises:
        DockerError: If the archive upload itself fails.
    """
    if not sandbox.container_id:
        return 0

    entries: list[tar_builder.TarEntry] = []
    for filename in await source.list_files(sandbox.id):
        try:
            content = await source.read_file(sandbox.id, filename)
        except (OSError, ValueError) as e:
            logger.warning(
                "file_sync_read_failed",
                sandbox_id=sandbox.id,
                filename=filename,
                error=str(e),
            )
            continue
        entries.append(tar_builder.TarEntry(path=f"uploads/{filename}", content=content))

    await _ensure_uploads_dir(docker, sandbox.container_id, settings)
    if entries:
        archive = tar_builder.build(entries, uid=settings.sandbox_uid, gid=settings.sandbox_uid)
        await docker.put_archive(sandbox.container_id, "/", archive)

    logger.info("files_synced", sandbox_id=sandbox.id, count=len(entries))
    return len(entries)


async def sync_file_to_container(
    docker: DockerClient,
    sandbox: Sandbox,
    source: FileSource,
    filename: str,
    settings: Settings = default_settings,
) -> None:
    """Copy one uploaded file into ``/uploads``.

    Raises:
        OSError: If the file cannot be read.
        DockerError: If the upload fails.
    """
    if not sandbox.container_id:
        return
    content = await source.read_file(sandbox.id, filename)
    archive = tar_builder.build(
        [(f"uploads/{filename}", content)],
        uid=settings.sandbox_uid,
        gid=settings.sandbox_uid,
    )
    await docker.put_archive(sandbox.container_id, "/", archive)
    logger.info("file_synced", sandbox_id=sandbox.id, filename=filename)


async def delete_file_from_container(
    docker: DockerClient, sandbox: Sandbox, filename: str
) -> None:
    """Remove ``/uploads/<filename>``. Best-effort: failures are logged."""
    if not sandbox.container_id:
        return
    try:
        path = validate_archive_path(filename)
        await docker.exec_run(
            sandbox.container_id, ["rm", "-f", f"{UPLOADS_DIR}/{path}"], user="root"
        )
    except Exception as e:
        logger.warning(
            "file_delete_failed",
            sandbox_id=sandbox.id,
            filename=filename,
            error=str(e),
        )
