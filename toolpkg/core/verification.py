"""
Hash computation and verification for content-addressed storage.

Every artifact and every installed file is identified by its SHA256 digest.
This module provides streaming and file hashing plus digest validation with
timing-attack resistant comparison.
"""

import hashlib
import logging
import re
import secrets
from pathlib import Path
from typing import Tuple

logger = logging.getLogger(__name__)

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")

CHUNK_SIZE = 64 * 1024


class StreamingHasher:
    """Compute a SHA256 digest incrementally while bytes are streamed."""

    def __init__(self):
        self.hasher = hashlib.sha256()
        self.size = 0

    def update(self, data: bytes):
        """Add data to hash computation."""
        self.hasher.update(data)
        self.size += len(data)

    def finalize(self) -> str:
        """Get final hash value as lowercase hex string."""
        return self.hasher.hexdigest()

    def verify(self, expected_hash: str) -> bool:
        """
        Check if computed hash matches expected value.

        Args:
            expected_hash: Expected hash value (hex string, any case)

        Returns:
            True if hashes match, False otherwise
        """
        return constant_time_compare(self.finalize(), normalize_sha256(expected_hash))


def is_valid_sha256(value: str) -> bool:
    """Whether ``value`` is a 64-character hex SHA256 digest (any case)."""
    return bool(_SHA256_RE.match(value.strip().lower()))


def normalize_sha256(value: str) -> str:
    """
    Normalize a SHA256 digest to lowercase hex.

    Accepts an optional ``sha256:`` prefix.

    Raises:
        ValueError: If value is not a SHA256 digest
    """
    digest = value.strip().lower()
    if digest.startswith("sha256:"):
        digest = digest[len("sha256:") :]
    if not _SHA256_RE.match(digest):
        raise ValueError(f"Invalid sha256 digest: {value!r}")
    return digest


def hash_and_size(file_path: Path) -> Tuple[str, int]:
    """Compute SHA256 digest and byte size of a file in one pass."""
    hasher = StreamingHasher()
    with open(file_path, "rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            hasher.update(chunk)
    return hasher.finalize(), hasher.size


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two digests without leaking timing information."""
    return secrets.compare_digest(a.encode("ascii"), b.encode("ascii"))
