"""
Core functionality for Toolpkg.

This package contains the foundational modules that other components depend on.
"""

from .directory import (
    Layout,
    get_default_data_dir,
    safe_name,
)

from .locking import LockManager

from .platform import (
    NEUTRAL,
    ARCHITECTURES,
    arch_matches,
    host_arch,
    normalize_arch,
)

from .download_cache import (
    CacheEntry,
    DownloadCache,
)

from .exceptions import (
    ToolpkgError,
    ConfigError,
    OperationCancelled,
    LockTimeout,
    ManifestError,
    ManifestUnavailable,
    ManifestMalformed,
    ResolutionError,
    PackageNotFound,
    ResolutionConflict,
    LockFileError,
    LockMismatch,
    FetchError,
    ArtifactUnavailable,
    IntegrityError,
    ExtractionError,
    UnsupportedArtifactFormat,
    InsecureArchiveError,
    InstallRegistryError,
    RecordNotFound,
    ConflictDetected,
)

__all__ = [
    # Directory
    "Layout",
    "get_default_data_dir",
    "safe_name",
    # Locking
    "LockManager",
    # Platform
    "NEUTRAL",
    "ARCHITECTURES",
    "arch_matches",
    "host_arch",
    "normalize_arch",
    # Cache
    "CacheEntry",
    "DownloadCache",
    # Exceptions
    "ToolpkgError",
    "ConfigError",
    "OperationCancelled",
    "LockTimeout",
    "ManifestError",
    "ManifestUnavailable",
    "ManifestMalformed",
    "ResolutionError",
    "PackageNotFound",
    "ResolutionConflict",
    "LockFileError",
    "LockMismatch",
    "FetchError",
    "ArtifactUnavailable",
    "IntegrityError",
    "ExtractionError",
    "UnsupportedArtifactFormat",
    "InsecureArchiveError",
    "InstallRegistryError",
    "RecordNotFound",
    "ConflictDetected",
]
