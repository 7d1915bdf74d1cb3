"""
Install registry: which files each installed package version produced.

Every install root carries its own record file listing the relative path,
SHA256 and size of each file the install wrote. There is no central index;
queries scan the install roots, so a root and its record are always created
and removed together.

Install root layout:
    <install_root>/<package>-<version>/
        .toolpkg-record.json
        bin/...
"""

import json
import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from toolpkg.core.directory import Layout
from toolpkg.core.exceptions import ConflictDetected, InstallRegistryError, RecordNotFound
from toolpkg.core.filesystem import atomic_write, normalize_member_path, promote_directory
from toolpkg.core.locking import LockManager
from toolpkg.toolchain.models import InstalledFile

logger = logging.getLogger(__name__)

RECORD_FILENAME = ".toolpkg-record.json"
RECORD_FORMAT_VERSION = 1


@dataclass(frozen=True)
class InstallRecord:
    """
    Files produced by installing one package version.

    Attributes:
        package_id: Package id
        version: Installed version
        destination: Logical merged destination the files belong to
        artifacts: SHA256 of every artifact the install was built from, sorted
        files: Installed files sorted by path
        root: Install root the record was read from (not persisted)
    """

    package_id: str
    version: str
    destination: str
    artifacts: Tuple[str, ...]
    files: Tuple[InstalledFile, ...]
    root: Optional[Path] = field(default=None, compare=False)

    @staticmethod
    def create(
        package_id: str,
        version: str,
        files: Iterable[InstalledFile],
        artifacts: Iterable[str] = (),
        destination: str = "default",
    ) -> "InstallRecord":
        return InstallRecord(
            package_id=package_id,
            version=version,
            destination=destination,
            artifacts=tuple(sorted(set(artifacts))),
            files=tuple(sorted(files, key=lambda f: f.path)),
        )

    def file_map(self) -> Dict[str, InstalledFile]:
        return {f.path: f for f in self.files}

    def to_dict(self) -> dict:
        return {
            "version": RECORD_FORMAT_VERSION,
            "package_id": self.package_id,
            "package_version": self.version,
            "destination": self.destination,
            "artifacts": list(self.artifacts),
            "files": [f.to_dict() for f in self.files],
        }

    @staticmethod
    def from_dict(data: dict, root: Optional[Path] = None) -> "InstallRecord":
        return InstallRecord(
            package_id=data["package_id"],
            version=data["package_version"],
            destination=data.get("destination", "default"),
            artifacts=tuple(data.get("artifacts", [])),
            files=tuple(InstalledFile.from_dict(f) for f in data["files"]),
            root=root,
        )

    def __str__(self) -> str:
        return f"{self.package_id}@{self.version}"


@dataclass
class ConflictReport:
    """
    Paths claimed with different content by packages sharing a destination.

    Attributes:
        destination: Destination the compared records share
        conflicts: relative path -> {(package_id, sha256), ...}
    """

    destination: str
    conflicts: Dict[str, Set[Tuple[str, str]]] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.conflicts)

    def packages(self) -> List[str]:
        """Package ids involved in any conflict, sorted."""
        return sorted({pkg for owners in self.conflicts.values() for pkg, _ in owners})

    def describe(self) -> str:
        lines = []
        for path in sorted(self.conflicts):
            owners = ", ".join(f"{pkg} ({sha[:12]})" for pkg, sha in sorted(self.conflicts[path]))
            lines.append(f"  {path}: {owners}")
        return "\n".join(lines)


def find_conflicts(record: InstallRecord, others: Iterable[InstallRecord]) -> ConflictReport:
    """
    Compare a record against others sharing its destination.

    Args:
        record: Newly built record
        others: Existing records with the same destination

    Returns:
        ConflictReport; empty when every shared path has identical content
    """
    report = ConflictReport(destination=record.destination)
    mine = record.file_map()

    for other in others:
        if other.destination != record.destination:
            continue
        if (other.package_id, other.version) == (record.package_id, record.version):
            continue
        for installed in other.files:
            ours = mine.get(installed.path)
            if ours is None or ours.sha256 == installed.sha256:
                continue
            owners = report.conflicts.setdefault(installed.path, set())
            owners.add((record.package_id, ours.sha256))
            owners.add((other.package_id, installed.sha256))

    return report


class InstallRegistry:
    """
    Persists and queries InstallRecords under an install root.

    Example:
        >>> registry = InstallRegistry(layout, lock_manager)
        >>> report = registry.register(record, staged_root=staging / "cmake-3.29.2")
        >>> registry.owners("bin/cmake.exe")
        ['cmake']
    """

    def __init__(self, layout: Layout, lock_manager: Optional[LockManager] = None):
        self.layout = layout
        self.lock_manager = lock_manager

    def root_for(self, package_id: str, version: str) -> Path:
        return self.layout.package_root(package_id, version)

    def record_path(self, package_id: str, version: str) -> Path:
        return self.root_for(package_id, version) / RECORD_FILENAME

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _read(self, path: Path) -> InstallRecord:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return InstallRecord.from_dict(data, root=path.parent)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise InstallRegistryError(f"Corrupt install record {path}: {e}") from e

    def find_record(self, package_id: str, version: str) -> Optional[InstallRecord]:
        """Record for a package version, or None if not installed."""
        path = self.record_path(package_id, version)
        if not path.is_file():
            return None
        record = self._read(path)
        if (record.package_id, record.version) != (package_id, version):
            raise InstallRegistryError(
                f"Install record {path} belongs to {record}, not {package_id}@{version}"
            )
        return record

    def files_for(self, package_id: str, version: str) -> InstallRecord:
        """
        Get the record of an installed package version.

        Raises:
            RecordNotFound: If the package version is not installed
            InstallRegistryError: If the record is corrupt or names another package
        """
        record = self.find_record(package_id, version)
        if record is None:
            raise RecordNotFound(package_id, version)
        return record

    def installed(self) -> List[InstallRecord]:
        """
        Every installed package version, sorted by (package id, version).

        Each record's ``root`` is its install root. Roots with an unreadable
        record are left out.
        """
        records = []
        if not self.layout.install_root.is_dir():
            return records
        for root in self.layout.install_root.iterdir():
            if root.name.startswith(".") or not root.is_dir():
                continue
            path = root / RECORD_FILENAME
            if not path.is_file():
                continue
            try:
                records.append(self._read(path))
            except InstallRegistryError as e:
                logger.warning(f"Skipping {root.name}: {e}")
        return sorted(records, key=lambda r: (r.package_id, r.version))

    def records_for_destination(self, destination: str) -> List[InstallRecord]:
        return [r for r in self.installed() if r.destination == destination]

    def owners(self, path: str, destination: Optional[str] = None) -> List[str]:
        """
        Which packages installed a file.

        Args:
            path: Path relative to an install root ('bin/cl.exe')
            destination: Only consider this destination

        Returns:
            Sorted package ids
        """
        wanted = normalize_member_path(path)
        owners = set()
        for record in self.installed():
            if destination is not None and record.destination != destination:
                continue
            if any(f.path == wanted for f in record.files):
                owners.add(record.package_id)
        return sorted(owners)

    def is_intact(self, record: InstallRecord, artifacts: Iterable[str]) -> bool:
        """
        Whether an installed record still matches what would be installed.

        Artifact hashes must match and every recorded file must exist with its
        recorded size. Contents are not re-hashed.
        """
        if record.artifacts != tuple(sorted(set(artifacts))):
            return False
        root = record.root or self.root_for(record.package_id, record.version)
        for installed in record.files:
            try:
                if (root / installed.path).stat().st_size != installed.size:
                    return False
            except OSError:
                return False
        return True

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def conflicts(
        self, record: InstallRecord, existing: Optional[Iterable[InstallRecord]] = None
    ) -> ConflictReport:
        """
        Conflicts between ``record`` and installed records sharing its destination.

        Args:
            record: Record to check
            existing: Records to compare against (default: installed ones)
        """
        if existing is None:
            existing = self.records_for_destination(record.destination)
        return find_conflicts(record, existing)

    def register(
        self,
        record: InstallRecord,
        staged_root: Optional[Path] = None,
        strict: bool = False,
    ) -> ConflictReport:
        """
        Persist a record and publish its install root.

        The record file is written into ``staged_root``, which then replaces
        the install root in one rename. Without ``staged_root`` the files are
        assumed to already be in the install root and only the record is
        written. Conflict checking and publishing happen under the
        destination lock.

        Args:
            record: Record of the files extracted for the package
            staged_root: Fully extracted staging directory
            strict: Raise instead of warning on conflicts

        Returns:
            ConflictReport (empty if no conflicts)

        Raises:
            ConflictDetected: On conflicts in strict mode; nothing is published
        """
        with self._destination_lock(record.destination):
            report = self.conflicts(record)
            if report:
                if strict:
                    raise ConflictDetected(report)
                logger.warning(
                    f"File conflicts in destination '{record.destination}' "
                    f"while registering {record}:\n{report.describe()}"
                )

            final_root = self.root_for(record.package_id, record.version)
            content = json.dumps(record.to_dict(), indent=2) + "\n"
            if staged_root is not None:
                atomic_write(Path(staged_root) / RECORD_FILENAME, content)
                promote_directory(Path(staged_root), final_root)
            else:
                atomic_write(final_root / RECORD_FILENAME, content)

        logger.info(f"Registered {record} ({len(record.files)} files) at {final_root}")
        return report

    def _destination_lock(self, destination: str):
        if self.lock_manager is None:
            return nullcontext()
        return self.lock_manager.destination_lock(destination)


__all__ = [
    "RECORD_FILENAME",
    "InstallRecord",
    "ConflictReport",
    "InstallRegistry",
    "find_conflicts",
]
