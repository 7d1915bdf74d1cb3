"""
Manifest retrieval and parsing.

A manifest is a JSON document describing every package of one channel
snapshot:

    {
        "snapshot": "2024-05-01",
        "packages": [
            {
                "family": "msvc",
                "id": "msvc",
                "version": "14.40.33807",
                "dependencies": ["ninja", "sdk@10.0.22621.7"],
                "artifacts": [
                    {"url": "https://...", "sha256": "...", "size": 123, "arch": "x64"}
                ]
            }
        ]
    }

The client keeps the last fetched document per channel on disk and decides,
based on a ManifestUpdate policy supplied by the caller, whether that copy is
reused or refreshed.
"""

import hashlib
import json
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import requests

from toolpkg.core.directory import safe_name
from toolpkg.core.exceptions import ManifestMalformed, ManifestUnavailable
from toolpkg.core.filesystem import atomic_write
from toolpkg.core.locking import LockManager
from toolpkg.core.platform import normalize_arch
from toolpkg.core.verification import is_valid_sha256
from toolpkg.toolchain.models import (
    ArtifactDescriptor,
    Dependency,
    Manifest,
    Package,
    is_valid_version,
)

logger = logging.getLogger(__name__)

DAILY_MAX_AGE = 24 * 60 * 60


class ManifestUpdate(Enum):
    """When to refresh the locally cached manifest."""

    OFF = "off"
    DAILY = "daily"
    ALWAYS = "always"

    @classmethod
    def parse(cls, value: str) -> "ManifestUpdate":
        try:
            return cls(value.strip().lower())
        except ValueError:
            choices = ", ".join(m.value for m in cls)
            raise ValueError(f"Invalid manifest update policy '{value}' (expected {choices})")


# ============================================================================
# Parsing
# ============================================================================


def parse_manifest(content: bytes, channel: str = "") -> Manifest:
    """
    Parse a manifest document.

    The snapshot identifier is taken from the document's ``snapshot`` field;
    documents without one are identified by the SHA256 of their bytes, which
    is stable for identical content.

    Args:
        content: Raw JSON document
        channel: Channel name, for error messages and the result

    Returns:
        Parsed Manifest

    Raises:
        ManifestMalformed: If the document is not valid JSON or violates the schema
    """
    try:
        data = json.loads(content)
    except (ValueError, UnicodeDecodeError) as e:
        raise ManifestMalformed(f"Manifest for channel '{channel}' is not valid JSON: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("packages"), list):
        raise ManifestMalformed(
            f"Manifest for channel '{channel}' has no 'packages' list"
        )

    snapshot = data.get("snapshot") or hashlib.sha256(content).hexdigest()

    packages: List[Package] = []
    seen = set()
    for index, entry in enumerate(data["packages"]):
        package = _parse_package(entry, index)
        key = (package.id, package.version)
        if key in seen:
            raise ManifestMalformed(
                f"Manifest lists {package.id} {package.version} more than once"
            )
        seen.add(key)
        packages.append(package)

    logger.debug(f"Parsed manifest '{channel}' snapshot {snapshot}: {len(packages)} packages")
    return Manifest(snapshot=str(snapshot), packages=tuple(packages), channel=channel)


def _parse_package(entry, index: int) -> Package:
    if not isinstance(entry, dict):
        raise ManifestMalformed(f"Package #{index} is not an object")

    package_id = entry.get("id")
    version = entry.get("version")
    if not isinstance(package_id, str) or not package_id:
        raise ManifestMalformed(f"Package #{index} has no 'id'")
    if not isinstance(version, str) or not is_valid_version(version):
        raise ManifestMalformed(f"Package '{package_id}' has invalid version: {version!r}")

    for key in ("dependencies", "artifacts"):
        if not isinstance(entry.get(key, []), list):
            raise ManifestMalformed(f"Package '{package_id}' has a non-list '{key}'")

    try:
        dependencies = tuple(Dependency.parse(d) for d in entry.get("dependencies", []))
    except (ValueError, AttributeError) as e:
        raise ManifestMalformed(f"Package '{package_id}' has an invalid dependency: {e}") from e

    artifacts = tuple(
        _parse_artifact(a, package_id) for a in entry.get("artifacts", [])
    )

    return Package(
        family=str(entry.get("family", package_id)),
        id=package_id,
        version=version,
        dependencies=dependencies,
        artifacts=artifacts,
    )


def _parse_artifact(entry, package_id: str) -> ArtifactDescriptor:
    if not isinstance(entry, dict):
        raise ManifestMalformed(f"Package '{package_id}' has a non-object artifact")

    missing = [key for key in ("url", "sha256", "size") if key not in entry]
    if missing:
        raise ManifestMalformed(
            f"Artifact of '{package_id}' is missing fields: {', '.join(missing)}"
        )

    if not is_valid_sha256(str(entry["sha256"])):
        raise ManifestMalformed(
            f"Artifact {entry['url']} of '{package_id}' has invalid sha256: {entry['sha256']!r}"
        )

    arch = normalize_arch(str(entry.get("arch", "")))
    if arch is None:
        raise ManifestMalformed(
            f"Artifact {entry['url']} of '{package_id}' has unknown arch: {entry['arch']!r}"
        )

    try:
        artifact = ArtifactDescriptor.from_dict({**entry, "arch": arch})
    except (TypeError, ValueError) as e:
        raise ManifestMalformed(f"Invalid artifact in '{package_id}': {e}") from e
    if artifact.size < 0:
        raise ManifestMalformed(f"Artifact {artifact.url} has negative size")
    return artifact


# ============================================================================
# Client
# ============================================================================


class ManifestClient:
    """
    Fetches channel manifests, reusing the cached snapshot per policy.

    Example:
        >>> client = ManifestClient(
        ...     Path("/data/manifest"),
        ...     channels={"release": "https://example.com/release.json"},
        ...     update=ManifestUpdate.DAILY,
        ... )
        >>> manifest = client.fetch("release")
        >>> manifest.versions_of("cmake")
        ['3.29.2', '3.28.1']
    """

    def __init__(
        self,
        manifest_dir: Path,
        lock_manager: Optional[LockManager] = None,
        update: ManifestUpdate = ManifestUpdate.DAILY,
        channels: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
    ):
        """
        Initialize manifest client.

        Args:
            manifest_dir: Directory holding cached manifests, one per channel
            lock_manager: Serializes cache updates across processes
            update: Refresh policy
            channels: Channel name -> manifest URL (or local path)
            session: HTTP session
            timeout: Request timeout in seconds
        """
        self.manifest_dir = Path(manifest_dir)
        self.lock_manager = lock_manager
        self.update = update
        self.channels = dict(channels or {})
        self.session = session or requests.Session()
        self.timeout = timeout

    def cache_path(self, channel: str) -> Path:
        """Location of the cached manifest for a channel."""
        return self.manifest_dir / safe_name(channel) / "latest.json"

    def source_for(self, channel: str) -> str:
        """
        Resolve a channel to its manifest location.

        Raises:
            ManifestUnavailable: If the channel is neither configured nor a URL
        """
        if channel in self.channels:
            return self.channels[channel]
        if channel.startswith(("http://", "https://")) or Path(channel).is_file():
            return channel
        raise ManifestUnavailable(channel, "unknown channel (not configured and not a URL)")

    def fetch(self, channel: str) -> Manifest:
        """
        Get the manifest for a channel.

        Args:
            channel: Configured channel name, or a manifest URL

        Returns:
            Parsed Manifest

        Raises:
            ManifestUnavailable: On network failure with no usable cached copy
            ManifestMalformed: If the document cannot be parsed
        """
        if self.lock_manager is None:
            return self._fetch_unlocked(channel)
        with self.lock_manager.manifest_lock(channel):
            return self._fetch_unlocked(channel)

    def _fetch_unlocked(self, channel: str) -> Manifest:
        cached = self.cache_path(channel)

        if cached.is_file() and self._cache_is_usable(cached):
            logger.info(f"Using cached manifest for '{channel}' ({cached})")
            return parse_manifest(cached.read_bytes(), channel)

        content = self._download(channel)
        manifest = parse_manifest(content, channel)

        # Only well-formed documents replace the cached copy
        atomic_write(cached, content)
        logger.info(f"Fetched manifest for '{channel}' snapshot {manifest.snapshot}")
        return manifest

    def _cache_is_usable(self, cached: Path) -> bool:
        if self.update is ManifestUpdate.OFF:
            return True
        if self.update is ManifestUpdate.DAILY:
            age = time.time() - cached.stat().st_mtime
            return age < DAILY_MAX_AGE
        return False

    def _download(self, channel: str) -> bytes:
        source = self.source_for(channel)

        if not source.startswith(("http://", "https://")):
            try:
                return Path(source).read_bytes()
            except OSError as e:
                raise ManifestUnavailable(channel, str(e)) from e

        logger.info(f"Fetching manifest {source}")
        try:
            response = self.session.get(source, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise ManifestUnavailable(channel, f"HTTP {e.response.status_code} from {source}") from e
        except requests.exceptions.RequestException as e:
            raise ManifestUnavailable(channel, str(e)) from e
        return response.content


__all__ = [
    "ManifestUpdate",
    "ManifestClient",
    "parse_manifest",
]
