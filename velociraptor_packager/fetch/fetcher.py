"""Bounded-concurrency tool downloader with integrity checks.

Every pending tool of a :class:`ToolDatabase` is fetched at most once:

* A worker claims a record before touching it, so two workers never
  download the same key.
* Content is streamed to a ``.part`` file beside its destination and only
  renamed into the cache after the optional hash check passes.
* Transient transport failures are retried with exponential backoff.
* Cancellation leaves unfinished tools ``pending`` with no temp files.
"""

from __future__ import annotations

import hashlib
import os
import queue
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

import requests

from velociraptor_packager.core.config import PackagerConfig
from velociraptor_packager.core.errors import (
    DownloadFailed,
    FetchCancelled,
    FetchError,
    HashMismatch,
)
from velociraptor_packager.core.logger import get_module_logger
from velociraptor_packager.core.models import DownloadStatus, ToolDatabase, ToolRecord
from velociraptor_packager.utils.hashing import (
    file_matches_hash,
    new_hasher,
    parse_expected_hash,
)
from velociraptor_packager.utils.io import make_temp_path, safe_filename

logger = get_module_logger("fetch")

DEFAULT_CHUNK_SIZE = 64 * 1024
USER_AGENT = "velociraptor-packager"


def tool_file_name(record: ToolRecord) -> str:
    """Return the cache file name for ``record`` (URL basename or key)."""

    if record.url:
        basename = unquote(urlparse(record.url).path.rstrip("/").rsplit("/", 1)[-1])
        if basename:
            return safe_filename(basename)
    return safe_filename(record.key)


def cache_dir_name(key: str) -> str:
    """Return the cache directory for tool ``key``, distinct for every key."""

    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:8]
    return f"{safe_filename(key)}-{digest}"


def _describe(exc: requests.RequestException) -> str:
    response = getattr(exc, "response", None)
    if response is not None and getattr(response, "status_code", None):
        return f"HTTP {response.status_code}"
    return f"{type(exc).__name__}: {exc}"


@dataclass
class FetchSummary:
    """Outcome of one fetch phase, by tool key."""

    downloaded: List[str] = field(default_factory=list)
    cached: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    interrupted: List[str] = field(default_factory=list)
    network_requests: int = 0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "downloaded": sorted(self.downloaded),
            "cached": sorted(self.cached),
            "failed": sorted(self.failed),
            "skipped": sorted(self.skipped),
            "interrupted": sorted(self.interrupted),
            "network_requests": self.network_requests,
            "cancelled": self.cancelled,
        }


class ToolFetcher:
    """
    Download tools into a local cache

    Args:
        cache_dir: Root of the tool cache
        concurrency: Number of worker threads
        max_attempts: Network attempts per tool before it is failed
        backoff: Base delay in seconds between attempts (doubles each retry)
        timeout: Timeout in seconds for a single attempt
        offline: Never touch the network, only accept cached files
        session: Optional pre-configured :class:`requests.Session`
    """

    def __init__(
        self,
        cache_dir: Path,
        *,
        concurrency: int = 4,
        max_attempts: int = 3,
        backoff: float = 5.0,
        timeout: float = 60.0,
        offline: bool = False,
        session: Optional[requests.Session] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.cache_dir = Path(cache_dir)
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.timeout = timeout
        self.offline = offline
        self.chunk_size = chunk_size

        self._owns_session = session is None
        self.session = session or requests.Session()
        if self._owns_session:
            self.session.headers.update({"User-Agent": USER_AGENT})

        self._counter_lock = threading.Lock()
        self._requests = 0

    @classmethod
    def from_config(
        cls,
        config: PackagerConfig,
        *,
        cache_dir: Optional[Path] = None,
        concurrency: Optional[int] = None,
        offline: bool = False,
        session: Optional[requests.Session] = None,
    ) -> "ToolFetcher":
        return cls(
            cache_dir or config.cache_dir,
            concurrency=concurrency or config.max_workers,
            max_attempts=config.max_attempts,
            backoff=config.retry_backoff,
            timeout=config.request_timeout,
            offline=offline,
            session=session,
        )

    def close(self) -> None:
        """Close the underlying session if this fetcher created it."""

        if self._owns_session:
            self.session.close()

    def __enter__(self) -> "ToolFetcher":
        return self

    def __exit__(self, *_exc_info: Any) -> None:
        self.close()

    def cache_path_for(self, record: ToolRecord) -> Path:
        return self.cache_dir / cache_dir_name(record.key) / tool_file_name(record)

    def fetch_all(
        self, database: ToolDatabase, cancel: Optional[threading.Event] = None
    ) -> FetchSummary:
        """Bring every pending tool to downloaded, failed or skipped."""

        cancel = cancel or threading.Event()
        summary = FetchSummary()
        self._requests = 0

        work: "queue.Queue[str]" = queue.Queue()
        for key in database.pending_keys():
            work.put(key)

        if work.empty():
            logger.info("No pending tools to fetch")
            return summary

        workers = min(self.concurrency, work.qsize())
        logger.info(f"Fetching {work.qsize()} tool(s) with {workers} worker(s)")

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tool-fetch") as executor:
            futures = [
                executor.submit(self._worker, database, work, cancel, summary)
                for _ in range(workers)
            ]
            pending = set(futures)
            try:
                while pending:
                    _, pending = wait(pending, timeout=0.5)
            except KeyboardInterrupt:
                logger.warning("Interrupted, cancelling in-flight downloads")
                cancel.set()
                wait(futures)
            for future in futures:
                future.result()

        summary.network_requests = self._requests
        summary.cancelled = cancel.is_set()
        logger.info(
            f"Fetch complete: {len(summary.downloaded)} downloaded, "
            f"{len(summary.cached)} cached, {len(summary.failed)} failed, "
            f"{len(summary.skipped)} skipped"
            + (", cancelled" if summary.cancelled else "")
        )
        return summary

    def _worker(
        self,
        database: ToolDatabase,
        work: "queue.Queue[str]",
        cancel: threading.Event,
        summary: FetchSummary,
    ) -> None:
        while not cancel.is_set():
            try:
                key = work.get_nowait()
            except queue.Empty:
                return
            if not database.claim(key):
                continue
            try:
                self._process(database, key, cancel, summary)
            finally:
                database.release(key)

    def _process(
        self,
        database: ToolDatabase,
        key: str,
        cancel: threading.Event,
        summary: FetchSummary,
    ) -> None:
        record = database.get(key)
        cache_path = self.cache_path_for(record)

        if record.expected_hash:
            try:
                parse_expected_hash(record.expected_hash)
            except ValueError as exc:
                database.resolve(key, DownloadStatus.FAILED, error=str(exc))
                summary.failed.append(key)
                logger.error(f"{record.name}: {exc}")
                return

        try:
            cached = self._is_cached(record, cache_path)
        except OSError as exc:
            self._fail_local(database, key, exc, summary)
            return
        if cached:
            database.resolve(key, DownloadStatus.DOWNLOADED, cache_path=cache_path)
            summary.cached.append(key)
            logger.info(f"{record.name}: using cached {cache_path}")
            return

        if not record.url:
            reason = "no download URL declared"
        elif self.offline:
            reason = "not in cache (offline mode)"
        else:
            reason = None
        if reason:
            database.resolve(key, DownloadStatus.SKIPPED, error=reason)
            summary.skipped.append(key)
            logger.warning(f"{record.name}: skipped, {reason}")
            return

        try:
            attempts = self._download(record, cache_path, cancel)
        except FetchCancelled:
            summary.interrupted.append(key)
            logger.warning(f"{record.name}: download cancelled, left pending")
        except FetchError as exc:
            database.resolve(
                key, DownloadStatus.FAILED, error=str(exc), attempts=exc.attempts
            )
            summary.failed.append(key)
            logger.error(str(exc))
        except OSError as exc:
            self._fail_local(database, key, exc, summary)
        else:
            database.resolve(
                key, DownloadStatus.DOWNLOADED, cache_path=cache_path, attempts=attempts
            )
            summary.downloaded.append(key)
            logger.info(f"{record.name}: downloaded to {cache_path}")

    @staticmethod
    def _fail_local(
        database: ToolDatabase, key: str, exc: OSError, summary: FetchSummary
    ) -> None:
        """Record a local filesystem error against ``key`` and keep fetching."""

        record = database.get(key)
        error = f"{record.name}: cache error ({exc})"
        database.resolve(key, DownloadStatus.FAILED, error=error)
        summary.failed.append(key)
        logger.error(error)

    def _is_cached(self, record: ToolRecord, cache_path: Path) -> bool:
        if not cache_path.is_file():
            return False
        if record.expected_hash and not file_matches_hash(cache_path, record.expected_hash):
            logger.warning(f"{record.name}: cached file hash mismatch, discarding {cache_path}")
            cache_path.unlink()
            return False
        return True

    def _download(
        self, record: ToolRecord, cache_path: Path, cancel: threading.Event
    ) -> int:
        """Download ``record`` with retries and return the attempts used."""

        attempt = 0
        while True:
            attempt += 1
            if cancel.is_set():
                raise FetchCancelled(record.name)
            try:
                self._attempt(record, cache_path, cancel, attempt)
            except requests.RequestException as exc:
                last_error = _describe(exc)
                if attempt >= self.max_attempts:
                    raise DownloadFailed(record.name, attempt, last_error) from exc
                delay = self.backoff * 2 ** (attempt - 1)
                logger.warning(
                    f"{record.name}: attempt {attempt}/{self.max_attempts} failed "
                    f"({last_error}), retrying in {delay:.1f}s"
                )
                if cancel.wait(delay):
                    raise FetchCancelled(record.name) from exc
            else:
                return attempt

    def _attempt(
        self,
        record: ToolRecord,
        cache_path: Path,
        cancel: threading.Event,
        attempt: int,
    ) -> None:
        expected = parse_expected_hash(record.expected_hash) if record.expected_hash else None
        hasher = new_hasher(expected[0]) if expected else None
        temp_path = make_temp_path(cache_path.parent, prefix=f".{cache_path.name}.")

        try:
            with self._counter_lock:
                self._requests += 1
            logger.debug(f"{record.name}: GET {record.url} (attempt {attempt})")
            response = self.session.get(record.url, stream=True, timeout=self.timeout)
            try:
                response.raise_for_status()
                with temp_path.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if cancel.is_set():
                            raise FetchCancelled(record.name)
                        if not chunk:
                            continue
                        handle.write(chunk)
                        if hasher is not None:
                            hasher.update(chunk)
            finally:
                response.close()

            if cancel.is_set():
                raise FetchCancelled(record.name)

            if expected is not None:
                actual = hasher.hexdigest()
                if actual != expected[1]:
                    raise HashMismatch(
                        record.name, expected[0], expected[1], actual, attempts=attempt
                    )

            os.replace(temp_path, cache_path)
        finally:
            temp_path.unlink(missing_ok=True)


__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "FetchSummary",
    "ToolFetcher",
    "cache_dir_name",
    "tool_file_name",
]
