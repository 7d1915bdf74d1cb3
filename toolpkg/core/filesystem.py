"""
File system utilities for Toolpkg.

This module provides the primitives the engine relies on to never leave
half-written state behind:
- Atomic file writes (temp file + rename)
- Atomic directory promotion (staging directory + rename) and cleanup of
  trees a crash left behind
- Safe deletion with prefix guards
- Archive member path validation
"""

import glob
import os
import shutil
import stat
import sys
import tempfile
import uuid
from pathlib import Path, PurePosixPath
from typing import List, Optional, Union

from toolpkg.core.exceptions import InsecureArchiveError, ToolpkgError


class FilesystemError(ToolpkgError):
    """Base exception for filesystem operations."""

    pass


# ============================================================================
# Path Utilities
# ============================================================================


def is_relative_to(path: Path, parent: Path) -> bool:
    """
    Check if path is relative to (under) parent directory.

    Example:
        >>> is_relative_to(Path("/home/user/project/file.txt"), Path("/home/user"))
        True
    """
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False


def normalize_member_path(name: str) -> Optional[str]:
    """
    Normalize an archive member name to a safe relative POSIX path.

    Backslashes are treated as separators. Directory entries and empty names
    return None.

    Args:
        name: Member name as stored in the archive

    Returns:
        Relative POSIX path, or None for entries that produce no file

    Raises:
        InsecureArchiveError: If the name is absolute or escapes the root

    Example:
        >>> normalize_member_path("bin\\\\tool.exe")
        'bin/tool.exe'
    """
    normalized = name.replace("\\", "/")
    if not normalized or normalized.endswith("/"):
        return None

    if normalized.startswith("/") or (len(normalized) > 1 and normalized[1] == ":"):
        raise InsecureArchiveError(
            f"Archive member '{name}' is an absolute path. "
            "This is a security risk and extraction has been blocked."
        )

    parts = [part for part in normalized.split("/") if part not in ("", ".")]
    if any(part == ".." for part in parts):
        raise InsecureArchiveError(
            f"Archive member '{name}' attempts directory traversal. "
            "This is a security risk and extraction has been blocked."
        )
    if not parts:
        return None

    return str(PurePosixPath(*parts))


# ============================================================================
# Safe File Operations
# ============================================================================


def atomic_write(
    file_path: Union[str, Path], content: Union[str, bytes], encoding: str = "utf-8"
) -> None:
    """
    Write file atomically using temp file + rename.

    This ensures the file is never in a partially-written state.
    If the write fails, the original file (if any) remains unchanged.

    Example:
        >>> atomic_write('record.json', '{"files": []}')
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory keeps the rename on one filesystem
    temp_fd, temp_path_str = tempfile.mkstemp(
        dir=file_path.parent, prefix=f".{file_path.name}.", suffix=".tmp"
    )
    temp_path = Path(temp_path_str)

    try:
        if isinstance(content, str):
            with open(temp_fd, "w", encoding=encoding, newline="\n") as f:
                f.write(content)
        else:
            with open(temp_fd, "wb") as f:
                f.write(content)

        temp_path.replace(file_path)

    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def safe_rmtree(
    path: Union[str, Path], require_prefix: Optional[Union[str, Path]] = None
) -> None:
    """
    Safely remove a directory tree with safeguards.

    Args:
        path: Directory to remove
        require_prefix: If specified, path must be under this directory

    Raises:
        ValueError: If path is not under require_prefix
        FilesystemError: If deletion fails

    Example:
        >>> safe_rmtree('/data/packages/.staging/cmake-3.29', require_prefix='/data/packages')
    """
    path = Path(path).resolve()

    if require_prefix is not None:
        require_prefix = Path(require_prefix).resolve()
        if not is_relative_to(path, require_prefix) or path == require_prefix:
            raise ValueError(
                f"Refusing to delete '{path}': not under required prefix '{require_prefix}'"
            )

    if not path.exists():
        return

    if not path.is_dir():
        raise FilesystemError(f"Path is not a directory: {path}")

    def handle_remove_readonly(func, failed_path, exc):
        """Clear the read-only bit (Windows) and retry once."""
        if not os.access(failed_path, os.W_OK):
            os.chmod(failed_path, stat.S_IWRITE | stat.S_IREAD)
            func(failed_path)
        else:
            raise exc if isinstance(exc, BaseException) else exc[1]

    try:
        if sys.version_info >= (3, 12):
            shutil.rmtree(path, onexc=handle_remove_readonly)
        else:
            shutil.rmtree(path, onerror=handle_remove_readonly)
    except Exception as e:
        raise FilesystemError(f"Failed to remove directory '{path}': {e}") from e


def promote_directory(staged: Path, final: Path) -> None:
    """
    Move a fully prepared staging directory into its final location.

    If ``final`` already exists it is first renamed aside, so at every
    instant ``final`` is either the old complete tree or the new complete
    tree. Both paths must be on the same filesystem.

    Args:
        staged: Complete directory to publish
        final: Destination path

    Raises:
        FilesystemError: If the rename fails (staged is left untouched)
    """
    final.parent.mkdir(parents=True, exist_ok=True)
    retired = None

    if final.exists():
        retired = final.with_name(f".{final.name}.old-{uuid.uuid4().hex[:8]}")
        os.replace(final, retired)

    try:
        os.replace(staged, final)
    except OSError as e:
        if retired is not None:
            os.replace(retired, final)
        raise FilesystemError(f"Failed to promote '{staged}' to '{final}': {e}") from e

    if retired is not None:
        safe_rmtree(retired, require_prefix=final.parent)


def purge_retired(final: Path) -> List[Path]:
    """
    Remove old trees a crashed ``promote_directory`` left beside ``final``.

    Returns:
        The directories removed
    """
    removed = []
    for path in sorted(final.parent.glob(f".{glob.escape(final.name)}.old-*")):
        if path.is_dir():
            safe_rmtree(path, require_prefix=final.parent)
            removed.append(path)
    return removed


__all__ = [
    "FilesystemError",
    "is_relative_to",
    "normalize_member_path",
    "atomic_write",
    "safe_rmtree",
    "promote_directory",
    "purge_retired",
]
