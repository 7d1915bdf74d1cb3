"""
Data model for manifests, requests and resolved plans.

All types here are immutable once constructed. Ordering helpers implement
dotted-numeric version comparison: numeric components compare as integers,
numeric components sort before textual ones, and a version that is a prefix
of another sorts first ("14" < "14.0" < "14.1" < "14.10").
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import unquote

from toolpkg.core.platform import NEUTRAL, arch_matches

_VERSION_RE = re.compile(r"^\d+(\.\d+)*$")


def is_valid_version(version: str) -> bool:
    """Whether ``version`` is a dotted numeric version like '14.40.33807'."""
    return bool(_VERSION_RE.match(version))


def version_key(version: str) -> Tuple[Tuple[int, object], ...]:
    """
    Sort key for dotted versions.

    Example:
        >>> sorted(["9", "10", "9.1"], key=version_key)
        ['9', '9.1', '10']
    """
    key = []
    for part in version.split("."):
        if part.isdigit():
            key.append((0, int(part)))
        else:
            key.append((1, part))
    return tuple(key)


def basename_from_url(url: str) -> str:
    """Last path component of a URL."""
    return url.rstrip("/").rsplit("/", 1)[-1]


@dataclass(frozen=True)
class ArtifactDescriptor:
    """
    One downloadable unit.

    Attributes:
        url: Download URL (percent-decoded)
        sha256: Lowercase hex digest of the content
        size: Size in bytes
        arch: Target architecture, or 'neutral'
        strip_root: Drop the archive's single top-level directory on extraction
    """

    url: str
    sha256: str
    size: int
    arch: str = NEUTRAL
    strip_root: bool = False

    @property
    def name(self) -> str:
        return basename_from_url(self.url)

    def to_dict(self) -> dict:
        data = {
            "url": self.url,
            "sha256": self.sha256,
            "size": self.size,
            "arch": self.arch,
        }
        if self.strip_root:
            data["strip_root"] = True
        return data

    @staticmethod
    def from_dict(data: dict) -> "ArtifactDescriptor":
        return ArtifactDescriptor(
            url=unquote(data["url"]),
            sha256=data["sha256"].lower(),
            size=int(data["size"]),
            arch=data.get("arch", NEUTRAL),
            strip_root=bool(data.get("strip_root", False)),
        )


@dataclass(frozen=True)
class InstalledFile:
    """One file written by an install, relative to the package's install root."""

    path: str
    sha256: str
    size: int

    def to_dict(self) -> dict:
        return {"path": self.path, "sha256": self.sha256, "size": self.size}

    @staticmethod
    def from_dict(data: dict) -> "InstalledFile":
        return InstalledFile(path=data["path"], sha256=data["sha256"], size=int(data["size"]))


@dataclass(frozen=True)
class Dependency:
    """A declared dependency: package id plus optional exact version."""

    package_id: str
    version: Optional[str] = None

    @staticmethod
    def parse(spec: str) -> "Dependency":
        package_id, version = _split_spec(spec)
        return Dependency(package_id, version)

    def __str__(self) -> str:
        return f"{self.package_id}@{self.version}" if self.version else self.package_id


@dataclass(frozen=True)
class PackageRequest:
    """
    A user request for one package.

    Attributes:
        package_id: Package id to install
        version: Exact version pin, or None for the latest in the snapshot
        destination: Logical merged destination this package's files join
    """

    package_id: str
    version: Optional[str] = None
    destination: Optional[str] = None

    @staticmethod
    def parse(spec: str, destination: Optional[str] = None) -> "PackageRequest":
        """
        Parse a request string.

        Example:
            >>> PackageRequest.parse("cmake@3.29.2")
            PackageRequest(package_id='cmake', version='3.29.2', destination=None)
        """
        package_id, version = _split_spec(spec)
        return PackageRequest(package_id, version, destination)

    def __str__(self) -> str:
        return f"{self.package_id}@{self.version}" if self.version else self.package_id


def _split_spec(spec: str) -> Tuple[str, Optional[str]]:
    spec = spec.strip()
    if "@" in spec:
        package_id, version = spec.split("@", 1)
    else:
        package_id, version = spec, None

    if not package_id:
        raise ValueError(f"Invalid package spec '{spec}': missing package id")
    if version is not None and not is_valid_version(version):
        raise ValueError(f"Invalid package spec '{spec}': invalid version '{version}'")
    return package_id, version


@dataclass(frozen=True)
class Package:
    """A package version as published in a manifest."""

    family: str
    id: str
    version: str
    dependencies: Tuple[Dependency, ...] = ()
    artifacts: Tuple[ArtifactDescriptor, ...] = ()

    def artifacts_for(self, arch: str) -> List[ArtifactDescriptor]:
        return [a for a in self.artifacts if arch_matches(a.arch, arch)]


@dataclass
class Manifest:
    """
    Catalog of one channel snapshot.

    Attributes:
        snapshot: Snapshot identifier (stable for identical content)
        packages: Packages in manifest order
        channel: Channel the snapshot was fetched for
    """

    snapshot: str
    packages: Tuple[Package, ...]
    channel: str = ""
    _index: Dict[str, List[Package]] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self):
        for package in self.packages:
            self._index.setdefault(package.id, []).append(package)
        for versions in self._index.values():
            versions.sort(key=lambda p: version_key(p.version), reverse=True)

    def versions_of(self, package_id: str) -> List[str]:
        """Available versions of a package, highest first."""
        return [p.version for p in self._index.get(package_id, [])]

    def find(self, package_id: str, version: Optional[str] = None) -> Optional[Package]:
        """
        Find a package version.

        Args:
            package_id: Package id
            version: Exact version, or None for the highest available

        Returns:
            The package, or None if absent
        """
        candidates = self._index.get(package_id, [])
        if version is None:
            return candidates[0] if candidates else None
        for package in candidates:
            if package.version == version:
                return package
        return None

    def list_packages(self) -> List[Tuple[str, str]]:
        """All (id, version) pairs sorted by id then version."""
        return sorted(
            ((p.id, p.version) for p in self.packages),
            key=lambda item: (item[0], version_key(item[1])),
        )


@dataclass(frozen=True)
class ResolvedPackage:
    """A concrete package version selected by resolution (or a lock file)."""

    package_id: str
    version: str
    family: str = ""
    dependencies: Tuple[str, ...] = ()
    artifacts: Tuple[ArtifactDescriptor, ...] = ()

    def artifacts_for(self, arch: str) -> List[ArtifactDescriptor]:
        return [a for a in self.artifacts if arch_matches(a.arch, arch)]

    def __str__(self) -> str:
        return f"{self.package_id}@{self.version}"


@dataclass(frozen=True)
class ResolvedPlan:
    """
    Closed, deduplicated set of package versions.

    ``packages`` is always sorted by package id.
    """

    packages: Tuple[ResolvedPackage, ...]
    snapshot: str = ""

    def __post_init__(self):
        ordered = tuple(sorted(self.packages, key=lambda p: p.package_id))
        object.__setattr__(self, "packages", ordered)

    def __iter__(self) -> Iterator[ResolvedPackage]:
        return iter(self.packages)

    def __len__(self) -> int:
        return len(self.packages)

    def get(self, package_id: str) -> Optional[ResolvedPackage]:
        for package in self.packages:
            if package.package_id == package_id:
                return package
        return None

    def package_ids(self) -> List[str]:
        return [p.package_id for p in self.packages]

    def restrict(self, package_ids: Iterable[str]) -> "ResolvedPlan":
        """
        Sub-plan holding ``package_ids`` and their transitive dependencies.

        Ids absent from the plan are ignored.
        """
        kept: Dict[str, ResolvedPackage] = {}
        stack = list(package_ids)
        while stack:
            package = self.get(stack.pop())
            if package is None or package.package_id in kept:
                continue
            kept[package.package_id] = package
            stack.extend(package.dependencies)
        return ResolvedPlan(packages=tuple(kept.values()), snapshot=self.snapshot)
