"""
Concurrent access control for Toolpkg.

File-based advisory locks guard the only resources shared between concurrent
workers and concurrent processes:
- Manifest snapshots (one lock per channel)
- Download cache entries (one lock per content hash)
- Package install roots (one lock per package version)
- Destination roots (one lock per merged destination, for conflict checks)

Locks come from the `filelock` library, which is cross-process and releases
automatically when the owning process dies.

Usage:
    from toolpkg.core.locking import LockManager

    lock_manager = LockManager(Path("/data/lock"))
    with lock_manager.package_lock("cmake", "3.29.2"):
        # Extract and register the package
        pass
"""

import logging
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock, Timeout

from toolpkg.core.directory import safe_name
from toolpkg.core.exceptions import LockTimeout

logger = logging.getLogger(__name__)


class LockManager:
    """
    Manages advisory locks for Toolpkg resources.

    Attributes:
        lock_dir: Directory where lock files are stored
    """

    def __init__(self, lock_dir: Path):
        """
        Initialize lock manager.

        Args:
            lock_dir: Directory for lock files
        """
        self.lock_dir = Path(lock_dir)
        self.lock_dir.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _acquire(self, lock_name: str, timeout: float, what: str):
        lock_path = self.lock_dir / f"{lock_name}.lock"
        lock = FileLock(lock_path, timeout=timeout)

        try:
            with lock:
                logger.debug(f"Acquired {what} lock: {lock_path}")
                yield
                logger.debug(f"Released {what} lock: {lock_path}")
        except Timeout as e:
            logger.error(
                f"Could not acquire {what} lock after {timeout}s. "
                "Another Toolpkg process may be running."
            )
            raise LockTimeout(
                f"Could not acquire {what} lock after {timeout}s. "
                "Another Toolpkg process may be running."
            ) from e

    @contextmanager
    def manifest_lock(self, channel: str, timeout: float = 60):
        """
        Acquire lock for a channel's cached manifest snapshot.

        Raises:
            LockTimeout: If lock can't be acquired within timeout
        """
        with self._acquire(f"manifest-{safe_name(channel)}", timeout, "manifest"):
            yield

    @contextmanager
    def cache_entry_lock(self, sha256: str, timeout: float = 600):
        """
        Acquire lock for one content-addressed cache entry.

        Serializes concurrent downloads of identical content across
        processes; the timeout is long because the holder may be downloading.

        Raises:
            LockTimeout: If lock can't be acquired within timeout
        """
        with self._acquire(f"cache-{sha256}", timeout, "cache entry"):
            yield

    @contextmanager
    def package_lock(self, package_id: str, version: str, timeout: float = 600):
        """
        Acquire lock for one package version's install root.

        Raises:
            LockTimeout: If lock can't be acquired within timeout
        """
        name = f"package-{safe_name(package_id)}-{safe_name(version)}"
        with self._acquire(name, timeout, "package"):
            yield

    @contextmanager
    def destination_lock(self, destination: str, timeout: float = 60):
        """
        Acquire lock for a merged destination root.

        Held while a package's record is checked for conflicts and published,
        so two packages sharing a destination cannot race each other.

        Raises:
            LockTimeout: If lock can't be acquired within timeout
        """
        with self._acquire(f"destination-{safe_name(destination)}", timeout, "destination"):
            yield


__all__ = ["LockManager"]
