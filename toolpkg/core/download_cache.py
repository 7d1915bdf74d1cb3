"""
Content-addressed download cache.

Artifacts are stored by the SHA256 digest of their bytes, independent of the
URL they were fetched from, so identical content referenced by several
packages or versions occupies exactly one entry.

Cache layout:
    <cache_dir>/
        objects/ab/abcdef...   : verified content, named by its digest
        tmp/                   : in-progress downloads (same filesystem)

An entry only ever appears under ``objects/`` through an atomic rename of a
temporary file whose digest was already checked, so the object store never
contains partial or unverified content.
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from toolpkg.core.exceptions import IntegrityError
from toolpkg.core.verification import hash_and_size, normalize_sha256

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """A verified cache entry."""

    sha256: str
    path: Path
    size: int
    verified: bool = True


class DownloadCache:
    """
    Content-addressed store of verified artifacts.

    Example:
        >>> cache = DownloadCache(Path("/data/cache"))
        >>> entry = cache.lookup("ab12...")
        >>> if entry is None:
        ...     tmp = cache.new_temp_path("ab12...")
        ...     # download into tmp, then
        ...     cache.promote(tmp, "ab12...")
    """

    def __init__(self, cache_dir: Path, verify_hits: bool = True):
        """
        Initialize download cache.

        Args:
            cache_dir: Root directory of the cache
            verify_hits: Re-hash entries on lookup and discard corrupt ones
        """
        self.cache_dir = Path(cache_dir)
        self.objects_dir = self.cache_dir / "objects"
        self.tmp_dir = self.cache_dir / "tmp"
        self.verify_hits = verify_hits

        self.objects_dir.mkdir(parents=True, exist_ok=True)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, sha256: str) -> Path:
        """Location of the entry for ``sha256`` (whether or not it exists)."""
        digest = normalize_sha256(sha256)
        return self.objects_dir / digest[:2] / digest

    def contains(self, sha256: str) -> bool:
        return self.path_for(sha256).is_file()

    def lookup(self, sha256: str, verify: Optional[bool] = None) -> Optional[CacheEntry]:
        """
        Look up a cache entry by content hash.

        A present entry is re-hashed (unless verification is disabled); if
        its bytes no longer match the key, the entry is deleted and treated
        as missing.

        Args:
            sha256: Expected content digest
            verify: Override ``verify_hits`` for this lookup

        Returns:
            CacheEntry if a verified entry exists, None otherwise
        """
        digest = normalize_sha256(sha256)
        path = self.path_for(digest)
        if not path.is_file():
            return None

        if verify if verify is not None else self.verify_hits:
            actual, size = hash_and_size(path)
            if actual != digest:
                logger.warning(
                    f"Cache entry {digest} is corrupt (content hashes to {actual}), discarding"
                )
                self.discard(digest)
                return None
        else:
            size = path.stat().st_size

        logger.debug(f"Cache hit: {digest}")
        return CacheEntry(sha256=digest, path=path, size=size)

    def new_temp_path(self, label: str = "download") -> Path:
        """
        Reserve a unique temporary file inside the cache.

        The file is created empty; callers own it and must either promote or
        delete it.
        """
        fd, temp_path = tempfile.mkstemp(dir=self.tmp_dir, prefix=f"{label[:16]}.", suffix=".part")
        os.close(fd)
        return Path(temp_path)

    def promote(self, temp_path: Path, sha256: str) -> CacheEntry:
        """
        Atomically move verified content into the object store.

        The digest of ``temp_path`` is recomputed; on mismatch the temporary
        file is deleted and IntegrityError is raised. Concurrent promotion of
        the same digest is harmless since the content is identical.

        Args:
            temp_path: Temporary file created by ``new_temp_path``
            sha256: Digest the content must have

        Returns:
            The new cache entry

        Raises:
            IntegrityError: If the file does not hash to ``sha256``
        """
        digest = normalize_sha256(sha256)
        actual, size = hash_and_size(temp_path)
        if actual != digest:
            temp_path.unlink(missing_ok=True)
            raise IntegrityError(str(temp_path), digest, actual)

        return self._rename_into_place(temp_path, digest, size)

    def _rename_into_place(self, temp_path: Path, digest: str, size: int) -> CacheEntry:
        final_path = self.path_for(digest)
        final_path.parent.mkdir(parents=True, exist_ok=True)
        os.replace(temp_path, final_path)
        logger.debug(f"Promoted {digest} into cache ({size} bytes)")
        return CacheEntry(sha256=digest, path=final_path, size=size)

    def adopt(self, temp_path: Path, digest: str, size: int) -> CacheEntry:
        """
        Promote a temporary file whose digest the caller computed while
        streaming it. Avoids a second read of large downloads.
        """
        return self._rename_into_place(temp_path, normalize_sha256(digest), size)

    def discard(self, sha256: str) -> None:
        """Remove an entry if present."""
        self.path_for(sha256).unlink(missing_ok=True)

    def entries(self) -> Iterator[CacheEntry]:
        """Iterate over all entries without re-verifying them."""
        for path in sorted(self.objects_dir.glob("*/*")):
            if path.is_file():
                yield CacheEntry(
                    sha256=path.name, path=path, size=path.stat().st_size, verified=False
                )

    def clean_temp(self) -> int:
        """
        Delete leftover temporary files from interrupted downloads.

        Only safe when no other process is downloading into this cache.

        Returns:
            Number of files removed
        """
        removed = 0
        for path in self.tmp_dir.glob("*.part"):
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.debug(f"Could not remove temp file {path}: {e}")
        return removed
