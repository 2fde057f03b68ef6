"""Validation of paths and names that end up inside sandbox containers.

Archive entry paths are extracted by the Docker daemon relative to an upload
directory, so they must never escape it. Session labels are passed to tmux as
session names and used in registry keys.
"""

import re

# tmux rejects "." and ":" in session names; keep labels to a safe alphabet.
_LABEL_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_archive_path(path: str) -> str:
    """Validate a relative path for a tar entry and return it normalized.

    Empty and ``.`` components are dropped; a trailing slash is removed.

    Raises:
        ValueError: If the path is empty, absolute, contains a NUL byte or
            has a ``..`` component.

    Examples:
        >>> validate_archive_path("lib/./app.ex")
        'lib/app.ex'
        >>> validate_archive_path("../etc/passwd")
        Traceback (most recent call last):
        ...
        ValueError: Path traversal blocked: '../etc/passwd'
    """
    if not path or not path.strip():
        raise ValueError("Path cannot be empty")
    if "\x00" in path:
        raise ValueError("Path contains null byte")

    normalized = path.replace("\\", "/")
    if normalized.startswith("/"):
        raise ValueError(f"Absolute paths not allowed: {path!r}")

    # Reject parent traversal components while allowing names like
    # "file..bak" (which include ".." but not as a path component).
    components = [part for part in normalized.split("/") if part not in ("", ".")]
    if ".." in components:
        raise ValueError(f"Path traversal blocked: {path!r}")
    if not components:
        raise ValueError("Path cannot be empty")

    return "/".join(components)


def validate_session_label(label: str) -> str:
    """Validate a terminal session label.

    Raises:
        ValueError: If the label has characters outside ``[A-Za-z0-9_-]`` or
            is longer than 64 characters.
    """
    if not _LABEL_RE.match(label or ""):
        raise ValueError(f"Invalid session label: {label!r}")
    return label


def sanitize_output(output: str, max_length: int = 2000) -> str:
    """Keep the tail of long command output for error messages.

    Args:
        output: The raw command output string.
        max_length: Maximum number of trailing characters kept.
    """
    if not output:
        return ""

    output = output.strip()
    if len(output) > max_length:
        truncated_chars = len(output) - max_length
        output = f"[{truncated_chars} chars omitted] ...\n" + output[-max_length:]

    return output
