"""In-memory tar archives for Docker's archive-upload endpoint.

The whole archive is built in memory. Template file trees are flattened into
path-prefixed entries, with each file's content rendered with the sandbox
variables first; directories are not rendered.
"""

import tarfile
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from io import BytesIO
from typing import Any

import structlog

from models.schemas import TemplateFile
from sandbox import templates
from sandbox.security import validate_archive_path

logger = structlog.get_logger(__name__)

FILE_MODE = 0o644
DIR_MODE = 0o755

Renderer = Callable[[str, dict[str, Any]], str]


@dataclass(frozen=True)
class TarEntry:
    """One archive member; ``content`` is ignored for directories."""

    path: str
    content: bytes | str = b""
    is_directory: bool = False
    mode: int | None = None


def _coerce(entry: TarEntry | tuple[str, bytes | str]) -> TarEntry:
    if isinstance(entry, TarEntry):
        return entry
    path, content = entry
    return TarEntry(path=path, content=content)


def build(
    entries: Iterable[TarEntry | tuple[str, bytes | str]],
    *,
    uid: int = 0,
    gid: int = 0,
) -> bytes:
    """Build a tar archive from ``entries``, in the given order.

    Raises:
        ValueError: If an entry path is absolute or escapes the upload root.
    """
    mtime = int(time.time())
    buffer = BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for raw in entries:
            entry = _coerce(raw)
            info = tarfile.TarInfo(name=validate_archive_path(entry.path))
            info.mtime = mtime
            info.uid = uid
            info.gid = gid
            if entry.is_directory:
                info.type = tarfile.DIRTYPE
                info.mode = entry.mode or DIR_MODE
                tar.addfile(info)
                continue
            data = entry.content.encode("utf-8") if isinstance(entry.content, str) else entry.content
            info.size = len(data)
            info.mode = entry.mode or FILE_MODE
            tar.addfile(info, BytesIO(data))
    return buffer.getvalue()


def _sort_key(node: TemplateFile) -> tuple[bool, int, str]:
    # Directories first, then explicit order, then name.
    return (not node.is_directory, node.sort_order, node.name)


def _render_leaf(node: TemplateFile, variables: dict[str, Any], render: Renderer) -> str:
    source = node.content or ""
    try:
        return render(source, variables)
    except Exception as e:
        logger.warning(
            "template_file_render_failed",
            file_id=node.id,
            name=node.name,
            error=str(e),
        )
        return source


def flatten_tree(
    nodes: Sequence[TemplateFile],
    variables: dict[str, Any],
    *,
    all_files: Sequence[TemplateFile] | None = None,
    base_path: str = "",
    render: Renderer = templates.render,
) -> list[TarEntry]:
    """Flatten a template file tree into path-prefixed entries.

    Args:
        nodes: The nodes at this level of the tree.
        variables: Template variables for file content.
        all_files: Every node of the tree, used to find children by
            ``parent_id``. Defaults to ``nodes``.
        base_path: Path prefix of this level.
        render: Renderer for file content. When it raises, the raw content
            is archived instead.

    Returns:
        Each directory entry is followed by its flattened children.
    """
    pool = nodes if all_files is None else all_files
    entries: list[TarEntry] = []
    for node in sorted(nodes, key=_sort_key):
        path = f"{base_path}/{node.name}" if base_path else node.name
        if node.is_directory:
            entries.append(TarEntry(path=path, is_directory=True))
            children = [f for f in pool if f.parent_id == node.id]
            entries.extend(
                flatten_tree(
                    children,
                    variables,
                    all_files=pool,
                    base_path=path,
                    render=render,
                )
            )
        else:
            entries.append(TarEntry(path=path, content=_render_leaf(node, variables, render)))
    return entries


def build_from_template_files(
    files: Sequence[TemplateFile],
    variables: dict[str, Any],
    *,
    render: Renderer = templates.render,
) -> bytes:
    """Render a template's whole file tree and archive it."""
    roots = [f for f in files if f.parent_id is None]
    entries = flatten_tree(roots, variables, all_files=files, render=render)
    return build(entries)
