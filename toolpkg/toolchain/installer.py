"""
Package installation orchestration.

This module drives every requested package through the install pipeline:

    REQUESTED -> RESOLVED -> FETCHING -> EXTRACTING -> REGISTERED

with FAILED reachable from any stage. Resolution happens once for the whole
request (from the lock file when it covers the request, otherwise from the
manifest). Packages then progress independently on a package pool while
their artifacts download on the fetcher's separate download pool. A failure
is recorded on the failing package's outcome and never rolls back or blocks
the others.

A package whose install root already carries a record built from the same
artifacts, with every recorded file present at its recorded size, is
reported as REGISTERED without touching the network or the archive.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

import requests

from toolpkg.config.lockfile import LockFileManager
from toolpkg.config.parser import ToolpkgConfig
from toolpkg.core.download import Fetcher
from toolpkg.core.download_cache import CacheEntry, DownloadCache
from toolpkg.core.exceptions import InstallRegistryError, LockMismatch, OperationCancelled
from toolpkg.core.filesystem import purge_retired, safe_rmtree
from toolpkg.core.locking import LockManager
from toolpkg.toolchain.extraction import extract, merge_files
from toolpkg.toolchain.install_registry import ConflictReport, InstallRecord, InstallRegistry
from toolpkg.toolchain.manifest import ManifestClient
from toolpkg.toolchain.models import Manifest, PackageRequest, ResolvedPackage, ResolvedPlan
from toolpkg.toolchain.resolver import Resolver

logger = logging.getLogger(__name__)


class PackageState(Enum):
    REQUESTED = "requested"
    RESOLVED = "resolved"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    REGISTERED = "registered"
    FAILED = "failed"


@dataclass
class PackageOutcome:
    """
    Where one package ended up.

    Attributes:
        package_id: Package id
        version: Resolved version (None until resolved)
        state: Current state
        failed_stage: State the package was in when it failed
        error: Failure, when state is FAILED
        conflicts: Non-fatal conflict report from registration
        skipped: Already installed, nothing was done
        root: Install root once registered
    """

    package_id: str
    version: Optional[str] = None
    state: PackageState = PackageState.REQUESTED
    failed_stage: Optional[PackageState] = None
    error: Optional[BaseException] = None
    conflicts: Optional[ConflictReport] = None
    skipped: bool = False
    root: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.state is PackageState.REGISTERED

    def advance(self, state: PackageState) -> None:
        logger.debug(f"{self.package_id}@{self.version}: {self.state.value} -> {state.value}")
        self.state = state

    def fail(self, error: BaseException) -> None:
        self.failed_stage = self.state
        self.error = error
        self.state = PackageState.FAILED


@dataclass
class InstallReport:
    """Aggregated result of one install run."""

    plan: ResolvedPlan
    outcomes: Dict[str, PackageOutcome] = field(default_factory=dict)
    elapsed: float = 0.0

    @property
    def success(self) -> bool:
        return all(o.ok for o in self.outcomes.values())

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def failed(self) -> List[PackageOutcome]:
        return [o for _, o in sorted(self.outcomes.items()) if o.state is PackageState.FAILED]

    def installed(self) -> List[PackageOutcome]:
        """Packages installed by this run (excluding already installed ones)."""
        return [o for _, o in sorted(self.outcomes.items()) if o.ok and not o.skipped]

    def conflicts(self) -> List[ConflictReport]:
        return [o.conflicts for _, o in sorted(self.outcomes.items()) if o.conflicts]


RequestLike = Union[PackageRequest, str]


class Installer:
    """
    Installs packages according to a ToolpkgConfig.

    Example:
        >>> config = parse_config(Path("toolpkg.yaml"))
        >>> installer = Installer(config)
        >>> report = installer.install()
        >>> for outcome in report.failed():
        ...     print(f"{outcome.package_id}: {outcome.error}")
    """

    def __init__(
        self,
        config: ToolpkgConfig,
        session: Optional[requests.Session] = None,
        manifest_client: Optional[ManifestClient] = None,
    ):
        """
        Initialize installer.

        Args:
            config: Configuration (directories, channel, policies)
            session: HTTP session shared by manifest and artifact downloads
            manifest_client: Override the manifest client
        """
        self.config = config
        self.layout = config.layout()
        self.layout.ensure()

        self.cancel_event = threading.Event()
        self.session = session or requests.Session()
        self.lock_manager = LockManager(self.layout.lock_dir)
        self.cache = DownloadCache(self.layout.cache_dir, verify_hits=config.verify_cache_hits)
        self.registry = InstallRegistry(self.layout, self.lock_manager)
        self.fetcher = Fetcher(
            self.cache,
            lock_manager=self.lock_manager,
            session=self.session,
            retry_policy=config.retry_policy(),
            concurrency=config.concurrency,
            timeout=config.timeout,
            cancel_event=self.cancel_event,
        )
        self.manifest_client = manifest_client or ManifestClient(
            self.layout.manifest_dir,
            lock_manager=self.lock_manager,
            update=config.manifest_update,
            channels=config.channels,
            session=self.session,
            timeout=config.timeout,
        )
        self.lock_file = LockFileManager(config.lock_file) if config.lock_file else None

    def cancel(self) -> None:
        """Abort in-flight downloads and extractions."""
        logger.warning("Cancellation requested")
        self.cancel_event.set()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def manifest(self) -> Manifest:
        """Manifest of the configured channel, per the update policy."""
        return self.manifest_client.fetch(self.config.channel)

    def available(self) -> List[Tuple[str, str]]:
        """(package id, version) pairs the configured channel offers."""
        return self.manifest().list_packages()

    def resolve(self, requested: Optional[Iterable[RequestLike]] = None) -> ResolvedPlan:
        """
        Resolve a request, preferring the lock file.

        A lock file that covers the request supplies the plan, narrowed to the
        requested packages and their locked dependencies. One that doesn't
        is replaced by a fresh resolution when re-resolution is allowed.

        Raises:
            LockMismatch: If the lock does not cover the request and
                re-resolution is disabled
            ManifestError, ResolutionError: From manifest retrieval or resolution
        """
        wanted = self._requests(requested)

        if self.lock_file is not None:
            try:
                plan = self.lock_file.load(wanted)
            except LockMismatch as e:
                if not self.config.allow_reresolve:
                    raise
                logger.warning(f"{e}. Re-resolving and rewriting the lock file.")
            else:
                if plan is not None:
                    logger.info(f"Using lock file {self.lock_file.lock_file_path}")
                    return plan.restrict(r.package_id for r in wanted)

        plan = Resolver(self.manifest()).resolve(wanted)
        if self.lock_file is not None:
            self.lock_file.save(plan)
        return plan

    def _requests(self, requested: Optional[Iterable[RequestLike]]) -> List[PackageRequest]:
        items = self.config.packages if requested is None else requested
        return [r if isinstance(r, PackageRequest) else PackageRequest.parse(r) for r in items]

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------

    def install(self, requested: Optional[Iterable[RequestLike]] = None) -> InstallReport:
        """
        Install the requested packages and their dependencies.

        Per-package failures are reported in the returned InstallReport;
        resolution failures are raised since nothing can proceed without a
        plan.

        Args:
            requested: Requests (default: the configured packages)

        Returns:
            InstallReport with one outcome per package in the plan

        Raises:
            ManifestError, ResolutionError, LockFileError: Resolution failed
        """
        start = time.monotonic()
        wanted = self._requests(requested)
        plan = self.resolve(wanted)

        destinations = {r.package_id: r.destination or self.config.destination for r in wanted}
        report = InstallReport(plan=plan)
        for package in plan:
            outcome = PackageOutcome(package.package_id, package.version, PackageState.RESOLVED)
            report.outcomes[package.package_id] = outcome

        workers = max(1, min(self.config.concurrency, len(plan)))
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="package")
        try:
            futures = [
                pool.submit(
                    self._install_package,
                    package,
                    report.outcomes[package.package_id],
                    destinations.get(package.package_id, self.config.destination),
                )
                for package in plan
            ]
            for future in as_completed(futures):
                future.result()
        except KeyboardInterrupt:
            self.cancel()
            pool.shutdown(wait=True, cancel_futures=True)
            self.fetcher.close(cancel=True)
            raise
        finally:
            pool.shutdown(wait=True)
            self.fetcher.close()

        report.elapsed = time.monotonic() - start
        self._log_summary(report)
        return report

    def _install_package(
        self, package: ResolvedPackage, outcome: PackageOutcome, destination: str
    ) -> None:
        try:
            with self.lock_manager.package_lock(package.package_id, package.version):
                self._install_locked(package, outcome, destination)
        except Exception as e:
            outcome.fail(e)
            if isinstance(e, OperationCancelled):
                logger.warning(f"{package} cancelled during {outcome.failed_stage.value}")
            else:
                logger.error(f"{package} failed during {outcome.failed_stage.value}: {e}")

    def _install_locked(
        self, package: ResolvedPackage, outcome: PackageOutcome, destination: str
    ) -> None:
        artifacts = package.artifacts_for(self.config.arch)
        hashes = [a.sha256 for a in artifacts]

        for retired in purge_retired(self.registry.root_for(package.package_id, package.version)):
            logger.warning(f"Removed leftover install root from an interrupted install: {retired}")

        existing = self._intact_record(package, hashes, destination)
        if existing is not None:
            logger.info(f"ALREADY INSTALLED | {package}")
            outcome.skipped = True
            outcome.root = existing.root
            outcome.advance(PackageState.REGISTERED)
            return

        staged = self.layout.staging_dir / self.layout.package_root(
            package.package_id, package.version
        ).name
        if staged.exists():
            logger.warning(f"Removing leftover staging directory from an interrupted install: {staged}")
            safe_rmtree(staged, require_prefix=self.layout.staging_dir)

        outcome.advance(PackageState.FETCHING)
        entries = self._fetch(artifacts)

        outcome.advance(PackageState.EXTRACTING)
        logger.info(f"INSTALLING        | {package}")
        groups = []
        staged.mkdir(parents=True)
        for artifact, entry in zip(artifacts, entries):
            groups.append(
                extract(
                    entry.path,
                    staged,
                    strip_root=artifact.strip_root,
                    cancel_event=self.cancel_event,
                )
            )

        record = InstallRecord.create(
            package.package_id,
            package.version,
            merge_files(groups),
            artifacts=hashes,
            destination=destination,
        )
        try:
            report = self.registry.register(
                record, staged_root=staged, strict=self.config.strict_conflicts
            )
        except BaseException:
            if staged.exists():
                safe_rmtree(staged, require_prefix=self.layout.staging_dir)
            raise

        outcome.conflicts = report or None
        outcome.root = self.registry.root_for(package.package_id, package.version)
        outcome.advance(PackageState.REGISTERED)

    def _fetch(self, artifacts) -> List[CacheEntry]:
        # All artifacts are awaited before the first error is raised so no
        # download of this package is left running unobserved
        futures = [self.fetcher.submit(a) for a in artifacts]
        errors = [f.exception() for f in futures]
        for error in errors:
            if error is not None:
                raise error
        return [f.result().entry for f in futures]

    def _intact_record(
        self, package: ResolvedPackage, hashes: List[str], destination: str
    ) -> Optional[InstallRecord]:
        try:
            record = self.registry.find_record(package.package_id, package.version)
        except InstallRegistryError as e:
            logger.warning(f"{e}. Reinstalling {package}.")
            return None

        if record is None:
            return None
        if record.destination != destination or not self.registry.is_intact(record, hashes):
            logger.info(f"Install of {package} is incomplete or outdated, reinstalling")
            return None
        return record

    def fetch_url(self, url: str) -> CacheEntry:
        """Download an arbitrary URL into the cache and return its entry."""
        return self.fetcher.fetch_unpinned(url)

    def _log_summary(self, report: InstallReport) -> None:
        skipped = sum(1 for o in report.outcomes.values() if o.skipped)
        installed = len(report.installed())
        failed = len(report.failed())
        message = (
            f"{installed} installed, {skipped} already installed, {failed} failed "
            f"({report.elapsed:.2f}s)"
        )
        if failed:
            logger.error(message)
        else:
            logger.info(message)


def install_packages(
    config: ToolpkgConfig, requested: Optional[Iterable[RequestLike]] = None
) -> InstallReport:
    """
    Convenience function to run one install.

    Example:
        >>> report = install_packages(parse_config(Path("toolpkg.yaml")))
        >>> raise SystemExit(report.exit_code)
    """
    return Installer(config).install(requested)


__all__ = [
    "PackageState",
    "PackageOutcome",
    "InstallReport",
    "Installer",
    "install_packages",
]
