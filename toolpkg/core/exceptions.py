"""
Centralized exception hierarchy for Toolpkg.

Every failure the resolution/acquisition/installation engine can surface is
declared here so callers can scope handling to a stage (manifest, resolution,
lock file, fetch, extraction, registration).
"""


# ============================================================================
# Base Exceptions
# ============================================================================


class ToolpkgError(Exception):
    """Base exception for all Toolpkg errors."""

    pass


class ConfigError(ToolpkgError):
    """Configuration parsing or validation error."""

    pass


class OperationCancelled(ToolpkgError):
    """Raised inside workers when an external interrupt was requested."""

    pass


class LockTimeout(ToolpkgError):
    """Raised when an advisory file lock cannot be acquired within timeout."""

    pass


# ============================================================================
# Manifest Exceptions
# ============================================================================


class ManifestError(ToolpkgError):
    """Base exception for manifest-stage errors."""

    pass


class ManifestUnavailable(ManifestError):
    """The manifest could not be retrieved (network failure, no cached copy)."""

    def __init__(self, channel: str, reason: str):
        self.channel = channel
        self.reason = reason
        super().__init__(f"Manifest for channel '{channel}' is unavailable: {reason}")


class ManifestMalformed(ManifestError):
    """The manifest document failed to parse or violates the schema."""

    pass


# ============================================================================
# Resolution Exceptions
# ============================================================================


class ResolutionError(ToolpkgError):
    """Base exception for resolver errors."""

    pass


class PackageNotFound(ResolutionError):
    """Requested package id (or pinned version) is not in the manifest."""

    def __init__(self, package_id: str, version: str = ""):
        self.package_id = package_id
        self.version = version
        msg = f"Package not found in manifest: {package_id}"
        if version:
            msg += f" version {version}"
        super().__init__(msg)


class ResolutionConflict(ResolutionError):
    """The dependency closure requires more than one version of a package."""

    def __init__(self, package_id: str, versions):
        self.package_id = package_id
        self.versions = sorted(set(versions))
        super().__init__(
            f"Conflicting versions required for '{package_id}': "
            f"{', '.join(self.versions)}. Pin the version explicitly to disambiguate."
        )


# ============================================================================
# Lock File Exceptions
# ============================================================================


class LockFileError(ToolpkgError):
    """Base exception for lock file errors (corrupt or unreadable)."""

    pass


class LockMismatch(LockFileError):
    """The lock file does not cover the requested packages."""

    def __init__(self, missing, reason: str = ""):
        self.missing = sorted(missing)
        detail = reason or f"lock file is missing: {', '.join(self.missing)}"
        super().__init__(f"Lock file does not match request: {detail}")


# ============================================================================
# Fetch Exceptions
# ============================================================================


class FetchError(ToolpkgError):
    """Base exception for artifact acquisition errors."""

    pass


class ArtifactUnavailable(FetchError):
    """Artifact could not be downloaded (404, or retries exhausted)."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Artifact unavailable: {url}: {reason}")


class IntegrityError(FetchError):
    """Downloaded bytes do not match the expected hash or size."""

    def __init__(self, url: str, expected: str, actual: str, kind: str = "sha256"):
        self.url = url
        self.expected = expected
        self.actual = actual
        self.kind = kind
        super().__init__(
            f"Integrity check failed for {url} ({kind})\n"
            f"  Expected: {expected}\n"
            f"  Got: {actual}"
        )


# ============================================================================
# Extraction Exceptions
# ============================================================================


class ExtractionError(ToolpkgError):
    """Extraction failed; the destination root has already been purged."""

    pass


class UnsupportedArtifactFormat(ExtractionError):
    """No extractor recognises the artifact's content."""

    pass


class InsecureArchiveError(ExtractionError):
    """Archive contains insecure paths (directory traversal attempt)."""

    pass


# ============================================================================
# Install Registry Exceptions
# ============================================================================


class InstallRegistryError(ToolpkgError):
    """Base exception for install registry errors."""

    pass


class RecordNotFound(InstallRegistryError):
    """No install record exists for the package version."""

    def __init__(self, package_id: str, version: str):
        self.package_id = package_id
        self.version = version
        super().__init__(f"No install record for {package_id} {version}")


class ConflictDetected(InstallRegistryError):
    """Two packages sharing a destination disagree on a file's content."""

    def __init__(self, report):
        self.report = report
        paths = ", ".join(sorted(report.conflicts)[:5])
        super().__init__(
            f"File conflicts detected in destination '{report.destination}': {paths}"
        )
