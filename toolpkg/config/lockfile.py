"""
Lock file generation and loading for Toolpkg.

A lock file records the fully resolved package set (every package id,
version and artifact with its URL and SHA256) so later installs can skip
manifest retrieval and resolution entirely and reproduce the same install on
any machine.

The serialized bytes depend only on the resolved plan: entries are sorted by
package id, artifacts keep manifest order, and no timestamps, host names or
architecture filters are written.

Example:
    >>> from toolpkg.config.lockfile import LockFileManager
    >>>
    >>> manager = LockFileManager(Path('toolpkg.lock'))
    >>> manager.save(plan)
    >>>
    >>> # Later, without touching the network
    >>> plan = manager.load(requests)
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import yaml

from toolpkg.core.exceptions import LockFileError, LockMismatch
from toolpkg.core.filesystem import atomic_write
from toolpkg.core.verification import is_valid_sha256
from toolpkg.toolchain.models import (
    ArtifactDescriptor,
    PackageRequest,
    ResolvedPackage,
    ResolvedPlan,
    is_valid_version,
)

logger = logging.getLogger(__name__)

LOCK_FORMAT_VERSION = 1

RequestLike = Union[PackageRequest, str]


def _entry_to_dict(package: ResolvedPackage) -> dict:
    data = {
        "id": package.package_id,
        "version": package.version,
    }
    if package.family and package.family != package.package_id:
        data["family"] = package.family
    if package.dependencies:
        data["dependencies"] = list(package.dependencies)
    data["artifacts"] = [a.to_dict() for a in package.artifacts]
    return data


def _entry_from_dict(data: dict) -> ResolvedPackage:
    package_id = str(data["id"])
    version = str(data["version"])
    if not is_valid_version(version):
        raise ValueError(f"'{package_id}' has invalid version {version!r}")
    for key in ("dependencies", "artifacts"):
        if not isinstance(data.get(key, []), list):
            raise TypeError(f"'{package_id}' has a non-list '{key}'")

    artifacts = []
    for entry in data.get("artifacts", []):
        if not is_valid_sha256(str(entry["sha256"])):
            raise ValueError(f"'{package_id}' has invalid sha256 {entry['sha256']!r}")
        artifact = ArtifactDescriptor.from_dict(entry)
        if artifact.size < 0:
            raise ValueError(f"'{package_id}' artifact {artifact.url} has negative size")
        artifacts.append(artifact)

    return ResolvedPackage(
        package_id=package_id,
        version=version,
        family=str(data.get("family", package_id)),
        dependencies=tuple(str(d) for d in data.get("dependencies", [])),
        artifacts=tuple(artifacts),
    )


def write_lock(plan: ResolvedPlan) -> bytes:
    """
    Serialize a resolved plan.

    Args:
        plan: Resolved plan

    Returns:
        YAML document bytes, identical for identical plans
    """
    data = {
        "version": LOCK_FORMAT_VERSION,
        "snapshot": plan.snapshot,
        "packages": [_entry_to_dict(p) for p in plan],
    }
    text = yaml.safe_dump(
        data, default_flow_style=False, sort_keys=False, allow_unicode=True, width=4096
    )
    return text.encode("utf-8")


def read_lock(content: bytes, requested: Optional[Iterable[RequestLike]] = None) -> ResolvedPlan:
    """
    Parse a lock file and check it covers ``requested``.

    Args:
        content: Lock file bytes
        requested: Package requests the lock must satisfy (None skips the check)

    Returns:
        The locked ResolvedPlan

    Raises:
        LockFileError: If the document is corrupt
        LockMismatch: If a requested id is absent or locked at another version
    """
    try:
        data = yaml.safe_load(content)
        if not isinstance(data, dict):
            raise TypeError("lock file is not a mapping")
        if data.get("version") != LOCK_FORMAT_VERSION:
            raise ValueError(f"unsupported lock format version {data.get('version')!r}")
        plan = ResolvedPlan(
            packages=tuple(_entry_from_dict(p) for p in data.get("packages") or []),
            snapshot=str(data.get("snapshot") or ""),
        )
    except (yaml.YAMLError, TypeError, KeyError, ValueError, AttributeError) as e:
        raise LockFileError(
            f"Failed to parse lock file: {e}. "
            f"The lock file may be corrupted or in an invalid format."
        ) from e

    if requested is not None:
        check_covers(plan, requested)
    return plan


def check_covers(plan: ResolvedPlan, requested: Iterable[RequestLike]) -> None:
    """
    Ensure every request is satisfied by a locked entry.

    Raises:
        LockMismatch: If an id is missing or pinned to a different version
    """
    requests = [r if isinstance(r, PackageRequest) else PackageRequest.parse(r) for r in requested]

    missing = sorted({r.package_id for r in requests if plan.get(r.package_id) is None})
    if missing:
        raise LockMismatch(missing)

    for request in requests:
        locked = plan.get(request.package_id)
        if request.version and locked.version != request.version:
            raise LockMismatch(
                [request.package_id],
                f"{request.package_id} is locked at {locked.version} "
                f"but {request.version} was requested",
            )


def diff_plans(old: ResolvedPlan, new: ResolvedPlan) -> Dict[str, List]:
    """
    Compare two plans.

    Returns:
        Dict with 'added' and 'removed' package ids and 'changed' entries of
        (package_id, old_version, new_version)
    """
    old_ids = set(old.package_ids())
    new_ids = set(new.package_ids())
    changed = []
    for package_id in sorted(old_ids & new_ids):
        before, after = old.get(package_id), new.get(package_id)
        if before != after:
            changed.append((package_id, before.version, after.version))
    return {
        "added": sorted(new_ids - old_ids),
        "removed": sorted(old_ids - new_ids),
        "changed": changed,
    }


class LockFileManager:
    """
    Reads and writes a lock file on disk.

    Attributes:
        lock_file_path: Path of the lock file
    """

    def __init__(self, lock_file_path: Path):
        self.lock_file_path = Path(lock_file_path)

    def exists(self) -> bool:
        return self.lock_file_path.is_file()

    def save(self, plan: ResolvedPlan) -> bool:
        """
        Write the plan, leaving the file untouched if its bytes would not change.

        Returns:
            True if the file was written
        """
        content = write_lock(plan)
        if self.exists() and self.lock_file_path.read_bytes() == content:
            logger.debug(f"Lock file up to date: {self.lock_file_path}")
            return False

        atomic_write(self.lock_file_path, content)
        logger.info(f"Lock file saved: {self.lock_file_path} ({len(plan)} packages)")
        return True

    def load(self, requested: Optional[Iterable[RequestLike]] = None) -> Optional[ResolvedPlan]:
        """
        Load the lock file.

        Returns:
            Locked plan, or None if the file doesn't exist

        Raises:
            LockFileError: If the lock file is corrupted
            LockMismatch: If it does not cover ``requested``
        """
        if not self.exists():
            logger.debug(f"Lock file not found: {self.lock_file_path}")
            return None

        try:
            plan = read_lock(self.lock_file_path.read_bytes(), requested)
        except LockMismatch:
            raise
        except LockFileError as e:
            raise LockFileError(f"{self.lock_file_path}: {e}") from e

        logger.debug(f"Loaded lock file: {self.lock_file_path}")
        return plan


__all__ = [
    "LOCK_FORMAT_VERSION",
    "LockFileManager",
    "write_lock",
    "read_lock",
    "check_covers",
    "diff_plans",
]
