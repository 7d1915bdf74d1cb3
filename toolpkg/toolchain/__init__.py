"""
Package resolution and installation engine.

The installer itself lives in ``toolpkg.toolchain.installer``; it depends on
the configuration package and is imported from there directly.
"""

from toolpkg.toolchain.models import (
    ArtifactDescriptor,
    Dependency,
    InstalledFile,
    Manifest,
    Package,
    PackageRequest,
    ResolvedPackage,
    ResolvedPlan,
    is_valid_version,
    version_key,
)
from toolpkg.toolchain.manifest import (
    ManifestClient,
    ManifestUpdate,
    parse_manifest,
)
from toolpkg.toolchain.resolver import Resolver, resolve
from toolpkg.toolchain.extraction import (
    Extractor,
    extract,
    register_extractor,
    select_extractor,
)
from toolpkg.toolchain.install_registry import (
    ConflictReport,
    InstallRecord,
    InstallRegistry,
)

__all__ = [
    # Models
    "ArtifactDescriptor",
    "Dependency",
    "InstalledFile",
    "Manifest",
    "Package",
    "PackageRequest",
    "ResolvedPackage",
    "ResolvedPlan",
    "is_valid_version",
    "version_key",
    # Manifest
    "ManifestClient",
    "ManifestUpdate",
    "parse_manifest",
    # Resolution
    "Resolver",
    "resolve",
    # Extraction
    "Extractor",
    "extract",
    "register_extractor",
    "select_extractor",
    # Registry
    "ConflictReport",
    "InstallRecord",
    "InstallRegistry",
]
