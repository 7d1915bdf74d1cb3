"""
Directory structure management for Toolpkg.

Resolves the per-user data directory and derives the on-disk layout used by
the engine. The layout is an explicit value passed to the components that
need it; nothing here keeps process-wide state.

Directory Structure:
    Data directory (~/.toolpkg/ or %LOCALAPPDATA%\\toolpkg\\):
        - packages/            : One install root per package version
          - .staging/          : In-progress extractions (same filesystem)
        - cache/               : Content-addressed download cache
        - manifest/<channel>/  : Cached manifest snapshots
        - lock/                : Advisory lock files
"""

import hashlib
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from toolpkg.core.exceptions import ConfigError


def get_default_data_dir() -> Path:
    """
    Get the platform-specific default data directory.

    ``TOOLPKG_HOME`` overrides the default.

    Returns:
        Path: The data directory path.
            - Windows: %LOCALAPPDATA%\\toolpkg
            - Linux/macOS: ~/.toolpkg

    Example:
        >>> get_default_data_dir()
        PosixPath('/home/user/.toolpkg')
    """
    override = os.environ.get("TOOLPKG_HOME")
    if override:
        return Path(override)

    if os.name == "nt":
        local_app_data = os.environ.get("LOCALAPPDATA")
        if not local_app_data:
            raise ConfigError(
                "LOCALAPPDATA environment variable is not set. "
                "Cannot determine data directory."
            )
        return Path(local_app_data) / "toolpkg"

    return Path.home() / ".toolpkg"


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._+-]")


def safe_name(value: str) -> str:
    """
    Make an identifier usable as a single path component.

    Values that need any replacement get '~' and a short digest of the
    original appended, so two distinct values never share a name.

    Example:
        >>> safe_name("cmake")
        'cmake'
        >>> safe_name("a b")
        'a_b~c8687a08'
    """
    cleaned = _UNSAFE_CHARS.sub("_", value)
    if cleaned == value and value not in ("", ".", ".."):
        return value
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]
    return f"{cleaned}~{digest}"


@dataclass(frozen=True)
class Layout:
    """
    On-disk layout of one Toolpkg data directory.

    Attributes:
        install_root: Parent directory of every package install root
        cache_dir: Content-addressed download cache
        manifest_dir: Cached manifest snapshots, one subdirectory per channel
        lock_dir: Advisory lock files
    """

    install_root: Path
    cache_dir: Path
    manifest_dir: Path
    lock_dir: Path

    @classmethod
    def from_data_dir(
        cls,
        data_dir: Path,
        install_root: Optional[Path] = None,
        cache_dir: Optional[Path] = None,
    ) -> "Layout":
        data_dir = Path(data_dir)
        return cls(
            install_root=Path(install_root) if install_root else data_dir / "packages",
            cache_dir=Path(cache_dir) if cache_dir else data_dir / "cache",
            manifest_dir=data_dir / "manifest",
            lock_dir=data_dir / "lock",
        )

    @property
    def staging_dir(self) -> Path:
        """Staging area for in-progress extractions."""
        return self.install_root / ".staging"

    def package_root(self, package_id: str, version: str) -> Path:
        """Install root of one package version."""
        return self.install_root / f"{safe_name(package_id)}-{safe_name(version)}"

    def channel_dir(self, channel: str) -> Path:
        return self.manifest_dir / safe_name(channel)

    def ensure(self) -> None:
        """Create all layout directories (idempotent)."""
        for path in (
            self.install_root,
            self.staging_dir,
            self.cache_dir,
            self.manifest_dir,
            self.lock_dir,
        ):
            path.mkdir(parents=True, exist_ok=True)
