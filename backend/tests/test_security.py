"""Tests for sandbox/security.py -- archive path and session label validation.

Archive paths are extracted by the Docker daemon inside the app container,
so anything that could escape the upload directory must be rejected.
"""

import pytest

from sandbox.security import sanitize_output, validate_archive_path, validate_session_label

# =========================================================================
# validate_archive_path
# =========================================================================


class TestValidateArchivePathAllowed:
    """Paths that SHOULD be accepted."""

    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("README.md", "README.md"),
            ("lib/app.ex", "lib/app.ex"),
            ("lib/./app.ex", "lib/app.ex"),
            ("./config/dev.exs", "config/dev.exs"),
            ("priv//static/", "priv/static"),
            ("file..bak", "file..bak"),
            ("a/..b/c", "a/..b/c"),
            (".ssh/id_ed25519", ".ssh/id_ed25519"),
        ],
    )
    def test_normalized(self, path: str, expected: str) -> None:
        assert validate_archive_path(path) == expected

    def test_backslashes_become_separators(self) -> None:
        assert validate_archive_path("lib\\app.ex") == "lib/app.ex"


class TestValidateArchivePathBlocked:
    """Paths that MUST be rejected."""

    @pytest.mark.parametrize("path", ["", "   ", ".", "./", "//"])
    def test_empty(self, path: str) -> None:
        with pytest.raises(ValueError):
            validate_archive_path(path)

    @pytest.mark.parametrize("path", ["/etc/passwd", "/home/app/.ssh"])
    def test_absolute(self, path: str) -> None:
        with pytest.raises(ValueError, match="Absolute paths not allowed"):
            validate_archive_path(path)

    @pytest.mark.parametrize("path", ["..", "../etc/passwd", "lib/../../x", "a/b/.."])
    def test_traversal(self, path: str) -> None:
        with pytest.raises(ValueError, match="Path traversal blocked"):
            validate_archive_path(path)

    def test_windows_traversal(self) -> None:
        with pytest.raises(ValueError):
            validate_archive_path("..\\..\\etc")

    def test_null_byte(self) -> None:
        with pytest.raises(ValueError, match="null byte"):
            validate_archive_path("lib/app\x00.ex")


# =========================================================================
# validate_session_label
# =========================================================================


class TestValidateSessionLabel:
    @pytest.mark.parametrize("label", ["main", "tab-2", "build_logs", "A" * 64])
    def test_allowed(self, label: str) -> None:
        assert validate_session_label(label) == label

    @pytest.mark.parametrize("label", ["", "a.b", "a:b", "has space", "A" * 65, "x;rm -rf /"])
    def test_rejected(self, label: str) -> None:
        with pytest.raises(ValueError, match="Invalid session label"):
            validate_session_label(label)


# =========================================================================
# sanitize_output
# =========================================================================


class TestSanitizeOutput:
    def test_empty(self) -> None:
        assert sanitize_output("") == ""

    def test_short_output_is_stripped(self) -> None:
        assert sanitize_output("  mix deps.get\n") == "mix deps.get"

    def test_long_output_keeps_tail(self) -> None:
        output = "a" * 100 + "ERROR: compile failed"
        result = sanitize_output(output, max_length=21)
        assert result == "[100 chars omitted] ...\nERROR: compile failed"

    def test_exact_length_not_truncated(self) -> None:
        assert sanitize_output("x" * 10, max_length=10) == "x" * 10
