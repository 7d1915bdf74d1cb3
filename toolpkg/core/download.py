"""
Bounded-concurrency artifact fetcher with retry and integrity verification.

This module provides:
- RetryPolicy: max attempts, backoff function and retryable-error predicate
- Fetcher: downloads artifacts into the DownloadCache, skipping content that
  is already cached, verifying every byte received against the expected
  SHA256 before it is promoted, and deduplicating identical content across
  concurrent requests

Downloads stream into a temporary file inside the cache directory and are
renamed into place only after verification, so an interrupted or corrupted
transfer never becomes a cache entry.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional

import requests
from requests.exceptions import ChunkedEncodingError, ConnectionError, HTTPError, Timeout

from toolpkg.core.download_cache import CacheEntry, DownloadCache
from toolpkg.core.exceptions import ArtifactUnavailable, IntegrityError, OperationCancelled
from toolpkg.core.locking import LockManager
from toolpkg.core.verification import StreamingHasher
from toolpkg.toolchain.models import ArtifactDescriptor

logger = logging.getLogger(__name__)

# Status codes worth retrying; every other 4xx is permanent
_RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


def exponential_backoff(base: float = 1.0, cap: float = 30.0) -> Callable[[int], float]:
    """
    Build a backoff function: base, 2*base, 4*base, ... capped at ``cap``.

    Example:
        >>> backoff = exponential_backoff(1.0)
        >>> [backoff(n) for n in (1, 2, 3)]
        [1.0, 2.0, 4.0]
    """

    def backoff(attempt: int) -> float:
        return min(cap, base * (2 ** (attempt - 1)))

    return backoff


def is_transient_error(error: BaseException) -> bool:
    """
    Default retryable-error predicate.

    Connection resets, timeouts, truncated bodies, 5xx/408/429 responses and
    integrity mismatches are retried. Other HTTP errors (e.g. 404) are not.
    """
    if isinstance(error, IntegrityError):
        return True
    if isinstance(error, HTTPError):
        status = error.response.status_code if error.response is not None else None
        return status in _RETRYABLE_STATUS
    return isinstance(error, (ConnectionError, Timeout, ChunkedEncodingError))


@dataclass(frozen=True)
class RetryPolicy:
    """
    How a failed artifact download is retried.

    Attributes:
        max_attempts: Total attempts including the first
        backoff: attempt number (1-based) -> seconds to wait before the next try
        is_retryable: Predicate deciding whether an error is worth retrying
    """

    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=exponential_backoff)
    is_retryable: Callable[[BaseException], bool] = is_transient_error

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        return attempt < self.max_attempts and self.is_retryable(error)


@dataclass
class FetchResult:
    """
    Outcome of fetching one artifact.

    Attributes:
        artifact: The requested artifact
        entry: Cache entry on success
        error: Failure on error (ArtifactUnavailable, IntegrityError, ...)
        downloaded: False when the content was already cached
        attempts: Number of download attempts made (0 on a cache hit)
    """

    artifact: ArtifactDescriptor
    entry: Optional[CacheEntry] = None
    error: Optional[BaseException] = None
    downloaded: bool = False
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.entry is not None


class Fetcher:
    """
    Downloads artifacts into a DownloadCache.

    Example:
        >>> cache = DownloadCache(Path("/data/cache"))
        >>> with Fetcher(cache, concurrency=4) as fetcher:
        ...     results = fetcher.fetch_all(artifacts)
        >>> all(r.ok for r in results.values())
        True
    """

    def __init__(
        self,
        cache: DownloadCache,
        lock_manager: Optional[LockManager] = None,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = 4,
        timeout: float = 30,
        cancel_event: Optional[threading.Event] = None,
        chunk_size: int = 64 * 1024,
    ):
        """
        Initialize fetcher.

        Args:
            cache: Cache receiving verified content
            lock_manager: Cross-process locks per content hash (optional)
            session: HTTP session (default: new requests.Session)
            retry_policy: Default retry policy
            concurrency: Worker count of the shared download pool
            timeout: Per-request connect/read timeout in seconds
            cancel_event: Set to abort in-flight downloads
            chunk_size: Streaming chunk size in bytes
        """
        self.cache = cache
        self.lock_manager = lock_manager
        self.session = session or requests.Session()
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = max(1, concurrency)
        self.timeout = timeout
        self.cancel_event = cancel_event or threading.Event()
        self.chunk_size = chunk_size

        self._executor: Optional[ThreadPoolExecutor] = None
        self._in_flight: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self.requests_made = 0

    # ------------------------------------------------------------------
    # Pool management
    # ------------------------------------------------------------------

    def __enter__(self) -> "Fetcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close(cancel=exc_type is not None)

    def close(self, cancel: bool = False) -> None:
        """Shut down the shared download pool."""
        with self._lock:
            executor, self._executor = self._executor, None
            self._in_flight.clear()
        if executor is not None:
            executor.shutdown(wait=True, cancel_futures=cancel)

    def submit(
        self, artifact: ArtifactDescriptor, retry_policy: Optional[RetryPolicy] = None
    ) -> "Future[FetchResult]":
        """
        Schedule an artifact on the shared pool.

        Artifacts with the same SHA256 submitted while a fetch is in flight
        share one Future, so identical content is downloaded once.
        """
        with self._lock:
            future = self._in_flight.get(artifact.sha256)
            if future is not None:
                return future

            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.concurrency, thread_name_prefix="fetch"
                )
            future = self._executor.submit(self.fetch, artifact, retry_policy)
            self._in_flight[artifact.sha256] = future
            return future

    def fetch_all(
        self,
        artifacts: Iterable[ArtifactDescriptor],
        concurrency: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> Dict[str, FetchResult]:
        """
        Fetch many artifacts with bounded concurrency.

        Failures are captured per artifact rather than raised.

        Args:
            artifacts: Artifacts to fetch (duplicates by hash are fetched once)
            concurrency: Parallel downloads (default: fetcher's concurrency)
            retry_policy: Policy override for this call

        Returns:
            Dict of sha256 -> FetchResult
        """
        unique: Dict[str, ArtifactDescriptor] = {}
        for artifact in artifacts:
            unique.setdefault(artifact.sha256, artifact)

        results: Dict[str, FetchResult] = {}
        if not unique:
            return results

        workers = max(1, min(concurrency or self.concurrency, len(unique)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch-all") as pool:
            futures = {
                sha: pool.submit(self._fetch_captured, artifact, retry_policy)
                for sha, artifact in unique.items()
            }
            for sha, future in futures.items():
                results[sha] = future.result()

        return results

    def _fetch_captured(
        self, artifact: ArtifactDescriptor, retry_policy: Optional[RetryPolicy]
    ) -> FetchResult:
        try:
            return self.fetch(artifact, retry_policy)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.error(f"Fetch failed: {artifact.url}: {e}")
            return FetchResult(artifact=artifact, error=e)

    # ------------------------------------------------------------------
    # Single artifact
    # ------------------------------------------------------------------

    def fetch(
        self, artifact: ArtifactDescriptor, retry_policy: Optional[RetryPolicy] = None
    ) -> FetchResult:
        """
        Fetch one artifact, using the cache when possible.

        Returns:
            FetchResult with a cache entry

        Raises:
            ArtifactUnavailable: On a non-retryable failure or exhausted retries
            IntegrityError: If every attempt produced mismatching content, or the
                cached entry does not have the declared size
            OperationCancelled: If the cancel event was set
        """
        policy = retry_policy or self.retry_policy
        lock = (
            self.lock_manager.cache_entry_lock(artifact.sha256)
            if self.lock_manager is not None
            else nullcontext()
        )

        with lock:
            entry = self.cache.lookup(artifact.sha256)
            if entry is not None:
                if entry.size != artifact.size:
                    raise IntegrityError(
                        artifact.url,
                        f"{artifact.size} bytes",
                        f"{entry.size} bytes",
                        kind="size",
                    )
                logger.info(f"ALREADY FETCHED | {artifact.name} {artifact.sha256}")
                return FetchResult(artifact=artifact, entry=entry)

            logger.info(f"FETCHING        | {artifact.name} {artifact.sha256}")
            attempt = 0
            while True:
                attempt += 1
                self._check_cancelled()
                try:
                    entry = self._download_verified(artifact)
                    return FetchResult(
                        artifact=artifact, entry=entry, downloaded=True, attempts=attempt
                    )
                except OperationCancelled:
                    raise
                except Exception as e:
                    if not policy.should_retry(e, attempt):
                        raise self._final_error(artifact, e, attempt) from e

                    delay = policy.backoff(attempt)
                    logger.warning(
                        f"Download attempt {attempt} of {artifact.url} failed: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    self._sleep(delay)

    def fetch_unpinned(self, url: str, retry_policy: Optional[RetryPolicy] = None) -> CacheEntry:
        """
        Download content whose hash is not known in advance.

        The digest is computed while streaming and the content is promoted
        under it. Useful for pinning a new artifact into a manifest.

        Returns:
            The resulting cache entry
        """
        policy = retry_policy or self.retry_policy
        attempt = 0
        while True:
            attempt += 1
            self._check_cancelled()
            try:
                return self._download(url, expected_sha256=None)
            except OperationCancelled:
                raise
            except Exception as e:
                if not policy.should_retry(e, attempt):
                    raise ArtifactUnavailable(url, self._describe(e, attempt)) from e
                delay = policy.backoff(attempt)
                logger.warning(f"Download attempt {attempt} of {url} failed: {e}")
                self._sleep(delay)

    def _download_verified(self, artifact: ArtifactDescriptor) -> CacheEntry:
        return self._download(
            artifact.url, expected_sha256=artifact.sha256, expected_size=artifact.size
        )

    def _download(
        self, url: str, expected_sha256: Optional[str], expected_size: Optional[int] = None
    ) -> CacheEntry:
        temp_path = self.cache.new_temp_path(expected_sha256 or "unpinned")
        try:
            with self._lock:
                self.requests_made += 1
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()

                hasher = StreamingHasher()
                with open(temp_path, "wb") as f:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        self._check_cancelled()
                        if chunk:
                            f.write(chunk)
                            hasher.update(chunk)
                            if expected_size is not None and hasher.size > expected_size:
                                raise IntegrityError(
                                    url,
                                    f"{expected_size} bytes",
                                    f"more than {expected_size} bytes",
                                    kind="size",
                                )

            actual = hasher.finalize()
            if expected_sha256 is not None and not hasher.verify(expected_sha256):
                raise IntegrityError(url, expected_sha256, actual)
            if expected_size is not None and hasher.size != expected_size:
                raise IntegrityError(
                    url, f"{expected_size} bytes", f"{hasher.size} bytes", kind="size"
                )

            return self.cache.adopt(temp_path, actual, hasher.size)
        finally:
            temp_path.unlink(missing_ok=True)

    def _final_error(
        self, artifact: ArtifactDescriptor, error: BaseException, attempt: int
    ) -> Exception:
        if isinstance(error, IntegrityError):
            return IntegrityError(artifact.url, error.expected, error.actual, error.kind)
        return ArtifactUnavailable(artifact.url, self._describe(error, attempt))

    @staticmethod
    def _describe(error: BaseException, attempt: int) -> str:
        if isinstance(error, HTTPError) and error.response is not None:
            reason = f"HTTP {error.response.status_code}"
        else:
            reason = str(error)
        if attempt > 1:
            reason += f" (after {attempt} attempts)"
        return reason

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise OperationCancelled("Download cancelled")

    def _sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self.cancel_event.wait(seconds):
            raise OperationCancelled("Download cancelled")


__all__ = [
    "RetryPolicy",
    "FetchResult",
    "Fetcher",
    "exponential_backoff",
    "is_transient_error",
]
