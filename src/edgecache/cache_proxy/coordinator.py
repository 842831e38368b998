"""Ties cache lookups, backend downloads and cache writes into one request flow."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import structlog
from botocore.exceptions import BotoCoreError
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .backend import DownloadResult, S3Downloader, parse_object_key
from .errors import BackendError, EdgeCacheError, StorageError
from .store import CacheStats, DiskLRUCache


LOGGER = structlog.get_logger("edgecache.cache_proxy.coordinator")
TRACER = trace.get_tracer("edgecache.cache_proxy")

DEFAULT_FETCH_TIMEOUT_SECONDS = 300.0
DEFAULT_CHUNK_BYTES = 1024 * 1024

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("edgecache_requests_total", "Object requests handled"))
HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("edgecache_hits_total", "Requests served from disk"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("edgecache_misses_total", "Requests not found on disk"))
COALESCED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgecache_coalesced_total", "Misses that waited on an in-flight download")
)
DOWNLOAD_FAILURES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgecache_download_failures_total", "Backend downloads that failed or timed out")
)
BYTES_DOWNLOADED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgecache_bytes_downloaded_total", "Bytes fetched from the backend")
)


@dataclass(frozen=True, slots=True)
class FetchResult:
    key: str
    path: Path
    hit: bool
    coalesced: bool = False


class _DeadlineStream:
    """Iterates a download body, aborting once the fetch deadline passes."""

    def __init__(self, key: str, result: DownloadResult, deadline: float, chunk_bytes: int) -> None:
        self._key = key
        self._result = result
        self._deadline = deadline
        self._chunk_bytes = chunk_bytes
        self.bytes_read = 0

    def __iter__(self) -> Iterator[bytes]:
        chunks = self._result.iter_chunks(self._chunk_bytes)
        while True:
            if time.monotonic() > self._deadline:
                raise BackendError(f"Timed out downloading {self._key}", key=self._key)
            try:
                chunk = next(chunks)
            except StopIteration:
                break
            except (BotoCoreError, OSError) as exc:
                raise BackendError(f"Failed reading {self._key}: {exc}", key=self._key) from exc
            self.bytes_read += len(chunk)
            yield chunk
        expected = self._result.size
        if expected and self.bytes_read != expected:
            raise BackendError(
                f"Truncated download of {self._key}: got {self.bytes_read} of {expected} bytes",
                key=self._key,
            )


class RequestCoordinator:
    """Serves keys from the disk cache, filling misses from the backend.

    Concurrent misses for one key share a single download through the
    in-flight registry; the entry is dropped once that download settles, so a
    failed fetch is retried by whichever request comes next.
    """

    def __init__(
        self,
        store: DiskLRUCache,
        downloader: S3Downloader,
        *,
        fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        chunk_bytes: int = DEFAULT_CHUNK_BYTES,
    ) -> None:
        self._store = store
        self._downloader = downloader
        self._fetch_timeout = fetch_timeout_seconds
        self._chunk_bytes = max(1, chunk_bytes)
        self._inflight: dict[str, asyncio.Task[Path]] = {}

    @property
    def store(self) -> DiskLRUCache:
        return self._store

    @property
    def downloader(self) -> S3Downloader:
        return self._downloader

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def fetch(self, key: str) -> FetchResult:
        REQUEST_COUNTER.inc()
        with TRACER.start_as_current_span("edgecache.fetch", attributes={"edgecache.key": key}) as span:
            path = await asyncio.to_thread(self._store.get, key)
            if path is not None:
                HIT_COUNTER.inc()
                span.set_attribute("edgecache.hit", True)
                LOGGER.info("cache_hit", key=key)
                return FetchResult(key=key, path=path, hit=True)

            MISS_COUNTER.inc()
            span.set_attribute("edgecache.hit", False)
            parse_object_key(key)

            task = self._inflight.get(key)
            coalesced = task is not None
            if task is None:
                LOGGER.info("cache_miss", key=key)
                task = asyncio.create_task(self._fill(key))
                self._inflight[key] = task
                task.add_done_callback(lambda done, key=key: self._settle(key, done))
            else:
                COALESCED_COUNTER.inc()
                LOGGER.info("cache_miss_coalesced", key=key)
            span.set_attribute("edgecache.coalesced", coalesced)

            try:
                path = await asyncio.wait_for(asyncio.shield(task), timeout=self._fetch_timeout)
            except asyncio.TimeoutError as exc:
                DOWNLOAD_FAILURES_COUNTER.inc()
                LOGGER.warning("download_timed_out", key=key, timeout_seconds=self._fetch_timeout)
                raise BackendError(f"Timed out fetching {key}", key=key) from exc
            return FetchResult(key=key, path=path, hit=False, coalesced=coalesced)

    def stats(self) -> CacheStats:
        return self._store.stats()

    def _settle(self, key: str, task: asyncio.Task[Path]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark the outcome as retrieved; waiters that timed out never will.
            task.exception()

    async def _fill(self, key: str) -> Path:
        deadline = time.monotonic() + self._fetch_timeout
        started = time.perf_counter()
        with TRACER.start_as_current_span("edgecache.download", attributes={"edgecache.key": key}) as span:
            try:
                path, size = await asyncio.to_thread(self._download_and_store, key, deadline)
            except StorageError as exc:
                LOGGER.error("cache_store_failed", key=key, error=str(exc))
                raise
            except EdgeCacheError as exc:
                DOWNLOAD_FAILURES_COUNTER.inc()
                LOGGER.warning("download_failed", key=key, error=str(exc), error_type=type(exc).__name__)
                raise
            span.set_attribute("edgecache.bytes", size)
        LOGGER.info(
            "cache_filled",
            key=key,
            bytes=size,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return path

    def _download_and_store(self, key: str, deadline: float) -> tuple[Path, int]:
        result = self._downloader.download(key)
        LOGGER.debug("download_started", key=key, advertised_bytes=result.size)
        stream = _DeadlineStream(key, result, deadline, self._chunk_bytes)
        try:
            path = self._store.put(key, stream)
        finally:
            result.close()
        BYTES_DOWNLOADED_COUNTER.inc(stream.bytes_read)
        return path, stream.bytes_read
