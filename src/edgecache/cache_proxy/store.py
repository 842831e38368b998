"""Disk-backed LRU cache with crash-safe metadata persistence."""

from __future__ import annotations

import hashlib
import os
import stat
import tempfile
import threading
from collections import OrderedDict
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Union

import structlog
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .errors import RecoverableMetadataError, StorageError


LOGGER = structlog.get_logger("edgecache.cache_proxy.store")

METADATA_FILENAME = "metadata.json"
FILES_DIRNAME = "files"
TEMP_PREFIX = ".incoming-"
TEMP_SUFFIX = ".tmp"
READ_CHUNK_BYTES = 1024 * 1024
_DIGEST_CHARS = 16
_MAX_READABLE_CHARS = 96
_SAFE_PUNCTUATION = frozenset("-_.")

ChunkSource = Union[bytes, bytearray, memoryview, Iterable[bytes]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CacheEntry(BaseModel):
    """Metadata for one cached object."""

    key: str
    filename: str
    size: int = Field(ge=0)
    access_time: datetime
    create_time: datetime


class CacheStats(BaseModel):
    """Point-in-time view of the cache counters."""

    hits: int
    misses: int
    evictions: int
    total_bytes: int
    max_bytes: int
    entry_count: int
    cache_dir: str


_ENTRY_LIST = TypeAdapter(list[CacheEntry])


def _keep_safe(text: str) -> str:
    kept = []
    for char in text:
        if char == "/":
            kept.append("_")
        elif (char.isascii() and char.isalnum()) or char in _SAFE_PUNCTUATION:
            kept.append(char)
    return "".join(kept)


def sanitize_filename(key: str) -> str:
    """Filter a key down to filesystem-safe characters, keeping its extension."""
    base, ext = os.path.splitext(key)
    return _keep_safe(base) + _keep_safe(ext)


def local_filename(key: str) -> str:
    """On-disk name for ``key``: a digest of the full key plus a readable tail.

    The digest makes names unique per key even when two keys sanitize to the
    same characters; the tail keeps the extension and enough of the path to
    recognise the object when browsing the cache directory.
    """
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:_DIGEST_CHARS]
    readable = sanitize_filename(key)[-_MAX_READABLE_CHARS:].lstrip(".")
    if not readable:
        return digest
    return f"{digest}_{readable}"


def _iter_chunks(data: ChunkSource) -> Iterator[bytes]:
    if isinstance(data, (bytes, bytearray, memoryview)):
        yield bytes(data)
        return
    read = getattr(data, "read", None)
    if callable(read):
        while True:
            chunk = read(READ_CHUNK_BYTES)
            if not chunk:
                return
            yield chunk
    yield from data


class ReadWriteLock:
    """Shared/exclusive lock; a waiting writer holds back new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class DiskLRUCache:
    """Stores whole objects under ``<cache_dir>/files`` and evicts least recently used first.

    The index (entries, recency order and counters) lives in memory behind a
    single read/write lock and is mirrored to ``metadata.json`` after every
    write. Object bytes are streamed to a temporary file without holding the
    lock; only the bookkeeping and the final rename happen under it.
    """

    def __init__(
        self,
        cache_dir: Path | str,
        max_size_bytes: int,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._cache_dir = Path(cache_dir)
        self._files_dir = self._cache_dir / FILES_DIRNAME
        self._metadata_path = self._cache_dir / METADATA_FILENAME
        self._max_size = max(0, int(max_size_bytes))
        self._clock = clock or _utcnow
        self._lock = ReadWriteLock()
        # Oldest first; the last item is the most recently used.
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._current_size = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        try:
            self._files_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to create cache directory {self._files_dir}: {exc}") from exc
        self._load()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    @property
    def files_dir(self) -> Path:
        return self._files_dir

    @property
    def metadata_path(self) -> Path:
        return self._metadata_path

    @property
    def max_size_bytes(self) -> int:
        return self._max_size

    def get(self, key: str) -> Optional[Path]:
        """Return the cached file for ``key`` and mark it most recently used, or ``None`` on a miss."""
        with self._lock.write_locked():
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            path = self._files_dir / entry.filename
            if not path.is_file():
                LOGGER.warning("cache_entry_stale", key=key, filename=entry.filename)
                self._drop(entry)
                self._misses += 1
                self._persist()
                return None
            entry.access_time = self._clock()
            self._entries.move_to_end(key)
            self._hits += 1
            return path

    def put(self, key: str, data: ChunkSource) -> Path:
        """Store ``data`` under ``key``, replacing any previous object, and return its path."""
        filename = local_filename(key)
        final_path = self._files_dir / filename
        tmp_path, size = self._write_temp(key, data)
        try:
            with self._lock.write_locked():
                existing = self._entries.get(key)
                if existing is not None:
                    self._remove(existing)
                evicted = self._evict_for(size)
                os.replace(tmp_path, final_path)
                now = self._clock()
                self._entries[key] = CacheEntry(
                    key=key,
                    filename=filename,
                    size=size,
                    access_time=now,
                    create_time=now,
                )
                self._current_size += size
                total = self._current_size
                self._persist()
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to store {key}: {exc}", key=key) from exc
        LOGGER.info(
            "cache_stored",
            key=key,
            filename=filename,
            bytes=size,
            evicted=evicted,
            total_bytes=total,
            replaced=existing is not None,
        )
        if size > self._max_size:
            LOGGER.warning("cache_object_exceeds_capacity", key=key, bytes=size, max_bytes=self._max_size)
        return final_path

    def contains(self, key: str) -> bool:
        with self._lock.read_locked():
            return key in self._entries

    def entries(self) -> list[CacheEntry]:
        """Copies of the live entries, least recently used first."""
        with self._lock.read_locked():
            return [entry.model_copy() for entry in self._entries.values()]

    def stats(self) -> CacheStats:
        with self._lock.read_locked():
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                total_bytes=self._current_size,
                max_bytes=self._max_size,
                entry_count=len(self._entries),
                cache_dir=str(self._cache_dir),
            )

    def _write_temp(self, key: str, data: ChunkSource) -> tuple[Path, int]:
        try:
            fd, name = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX, dir=self._files_dir)
        except OSError as exc:
            raise StorageError(f"Failed to create temp file for {key}: {exc}", key=key) from exc
        tmp_path = Path(name)
        size = 0
        try:
            with os.fdopen(fd, "wb") as handle:
                for chunk in _iter_chunks(data):
                    if not chunk:
                        continue
                    handle.write(chunk)
                    size += len(chunk)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to write {key}: {exc}", key=key) from exc
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        return tmp_path, size

    def _evict_for(self, incoming: int) -> int:
        evicted = 0
        while self._entries and self._current_size + incoming > self._max_size:
            _, entry = next(iter(self._entries.items()))
            self._remove(entry)
            self._evictions += 1
            evicted += 1
            LOGGER.info("cache_evicted", key=entry.key, reclaimed_bytes=entry.size)
        return evicted

    def _remove(self, entry: CacheEntry) -> None:
        path = self._files_dir / entry.filename
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("cache_file_remove_failed", key=entry.key, path=str(path), error=str(exc))
        self._drop(entry)

    def _drop(self, entry: CacheEntry) -> None:
        if self._entries.pop(entry.key, None) is not None:
            self._current_size -= entry.size

    def _persist(self) -> None:
        payload = _ENTRY_LIST.dump_json(list(self._entries.values()), indent=2)
        tmp_path = self._metadata_path.with_name(self._metadata_path.name + TEMP_SUFFIX)
        try:
            tmp_path.write_bytes(payload)
            os.replace(tmp_path, self._metadata_path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            LOGGER.warning("cache_metadata_persist_failed", path=str(self._metadata_path), error=str(exc))

    def _read_metadata(self) -> list[CacheEntry]:
        if not self._metadata_path.exists():
            return []
        try:
            raw = self._metadata_path.read_bytes()
        except OSError as exc:
            raise RecoverableMetadataError(f"Unreadable metadata: {exc}") from exc
        try:
            return _ENTRY_LIST.validate_json(raw)
        except ValidationError as exc:
            raise RecoverableMetadataError(f"Invalid metadata: {exc.error_count()} errors") from exc

    def _load(self) -> None:
        self._remove_partial_files()
        try:
            persisted = self._read_metadata()
        except RecoverableMetadataError as exc:
            LOGGER.warning("cache_metadata_invalid", path=str(self._metadata_path), error=str(exc))
            persisted = []

        survivors: dict[str, CacheEntry] = {}
        for entry in persisted:
            if Path(entry.filename).name != entry.filename or entry.filename.startswith(TEMP_PREFIX):
                LOGGER.warning("cache_entry_rejected", key=entry.key, filename=entry.filename)
                continue
            try:
                info = (self._files_dir / entry.filename).stat()
            except OSError:
                LOGGER.info("cache_entry_missing", key=entry.key, filename=entry.filename)
                continue
            if not stat.S_ISREG(info.st_mode):
                continue
            entry.size = info.st_size
            previous = survivors.get(entry.key)
            if previous is None or entry.access_time > previous.access_time:
                survivors[entry.key] = entry

        # Most recent first, equal timestamps ordered by key.
        ordered = sorted(survivors.values(), key=lambda item: item.key)
        ordered.sort(key=lambda item: item.access_time, reverse=True)
        for entry in reversed(ordered):
            self._entries[entry.key] = entry
            self._current_size += entry.size

        self._remove_orphans({entry.filename for entry in ordered})
        LOGGER.info(
            "cache_loaded",
            cache_dir=str(self._cache_dir),
            entries=len(self._entries),
            total_bytes=self._current_size,
            max_bytes=self._max_size,
        )

    def _remove_partial_files(self) -> None:
        for path in self._files_dir.glob(f"{TEMP_PREFIX}*"):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                LOGGER.warning("cache_partial_remove_failed", path=str(path), error=str(exc))
                continue
            LOGGER.info("cache_partial_removed", path=str(path))

    def _remove_orphans(self, referenced: set[str]) -> None:
        for path in self._files_dir.iterdir():
            if path.name in referenced or not path.is_file():
                continue
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                LOGGER.warning("cache_orphan_remove_failed", path=str(path), error=str(exc))
                continue
            LOGGER.info("cache_orphan_removed", path=str(path))
