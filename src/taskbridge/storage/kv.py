"""Key-value backing store used for all persisted bridge state.

Every piece of durable state -- the aggregate mapping record, the sync
lock, idempotency records and pending conflicts -- lives behind the
``KVStore`` protocol.  Two implementations are provided:

* ``MemoryKVStore`` -- dict backed, for tests and single-process runs.
* ``JsonFileKVStore`` -- one JSON document on disk.  Writes go to a
  temporary file in the same directory followed by ``os.replace()`` so
  readers never see partial data.  Every read-modify-write holds an
  exclusive ``flock`` on a companion ``<name>.lock`` file, so separate
  processes sharing the document neither lose each other's writes nor
  both win a ``compare_and_swap``.  POSIX only.

Entries may carry a TTL.  Expired entries are invisible to every read
and are dropped lazily on the next write.
"""

from __future__ import annotations

import asyncio
import errno
import fcntl
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Protocol, runtime_checkable

from ..core.async_utils import run_sync

logger = logging.getLogger(__name__)

DEFAULT_FILE_LOCK_TIMEOUT = 8.0
FILE_LOCK_POLL_INTERVAL = 0.05


@dataclass
class KVPage:
    """One page of ``list_keys`` output.

    Attributes:
        keys: Keys on this page, in ascending order.
        cursor: Last key of this page; pass back to fetch the next page.
        complete: ``True`` when no keys remain after this page.
    """

    keys: list[str] = field(default_factory=list)
    cursor: str | None = None
    complete: bool = True


@runtime_checkable
class KVStore(Protocol):
    """Asynchronous key-value store with optional per-entry TTL."""

    async def get(self, key: str) -> str | None: ...

    async def put(
        self, key: str, value: str, ttl_seconds: float | None = None
    ) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list_keys(
        self, prefix: str = "", limit: int = 1000, cursor: str | None = None
    ) -> KVPage: ...

    async def compare_and_swap(
        self,
        key: str,
        expected: str | None,
        new: str | None,
        ttl_seconds: float | None = None,
    ) -> bool: ...


# ---------------------------------------------------------------------------
# Shared entry helpers
# ---------------------------------------------------------------------------


def _entry(value: str, ttl_seconds: float | None, now: float) -> dict:
    expires_at = now + ttl_seconds if ttl_seconds is not None else None
    return {"value": value, "expires_at": expires_at}


def _live_value(entry: dict | None, now: float) -> str | None:
    if entry is None:
        return None
    expires_at = entry.get("expires_at")
    if expires_at is not None and expires_at <= now:
        return None
    return entry.get("value")


def _page(
    data: dict[str, dict],
    now: float,
    prefix: str,
    limit: int,
    cursor: str | None,
) -> KVPage:
    keys = sorted(
        k
        for k, entry in data.items()
        if k.startswith(prefix)
        and (cursor is None or k > cursor)
        and _live_value(entry, now) is not None
    )
    page = keys[:limit]
    return KVPage(
        keys=page,
        cursor=page[-1] if page else cursor,
        complete=len(keys) <= limit,
    )


def _swap(
    data: dict[str, dict],
    now: float,
    key: str,
    expected: str | None,
    new: str | None,
    ttl_seconds: float | None,
) -> bool:
    current = _live_value(data.get(key), now)
    if current != expected:
        return False
    if new is None:
        data.pop(key, None)
    else:
        data[key] = _entry(new, ttl_seconds, now)
    return True


def _purge(data: dict[str, dict], now: float) -> None:
    for key in [k for k, e in data.items() if _live_value(e, now) is None]:
        del data[key]


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class MemoryKVStore:
    """Dict-backed ``KVStore``.

    Args:
        clock: Returns the current time in seconds; injectable for tests.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._data: dict[str, dict] = {}
        self._clock = clock

    async def get(self, key: str) -> str | None:
        return _live_value(self._data.get(key), self._clock())

    async def put(
        self, key: str, value: str, ttl_seconds: float | None = None
    ) -> None:
        now = self._clock()
        _purge(self._data, now)
        self._data[key] = _entry(value, ttl_seconds, now)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(
        self, prefix: str = "", limit: int = 1000, cursor: str | None = None
    ) -> KVPage:
        return _page(self._data, self._clock(), prefix, limit, cursor)

    async def compare_and_swap(
        self,
        key: str,
        expected: str | None,
        new: str | None,
        ttl_seconds: float | None = None,
    ) -> bool:
        # No await between read and write, so this is atomic on the loop.
        return _swap(
            self._data, self._clock(), key, expected, new, ttl_seconds
        )


# ---------------------------------------------------------------------------
# JSON file store
# ---------------------------------------------------------------------------


class JsonFileKVStore:
    """``KVStore`` persisted as a single JSON document.

    Blocking file I/O runs in a worker thread via ``run_sync``.  Writes
    within one process are serialised by an ``asyncio.Lock``; across
    processes by ``flock`` on ``<path>.lock`` (exclusive for writes,
    shared for reads).

    Args:
        path: Location of the JSON document.  Parent directories are
            created on first use.
        clock: Returns the current time in seconds; injectable for tests.
        lock_timeout: Seconds to wait for the file lock before raising
            ``TimeoutError``.
    """

    def __init__(
        self,
        path: Path | str,
        clock: Callable[[], float] = time.time,
        lock_timeout: float = DEFAULT_FILE_LOCK_TIMEOUT,
    ) -> None:
        self._path = Path(path).expanduser()
        self._clock = clock
        self._lock = asyncio.Lock()
        self.lock_timeout = lock_timeout

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return self._path.with_name(f"{self._path.name}.lock")

    # ------------------------------------------------------------------
    # File access
    # ------------------------------------------------------------------

    @contextmanager
    def _file_lock(self, exclusive: bool) -> Iterator[None]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        mode = (fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH) | fcntl.LOCK_NB
        deadline = time.monotonic() + self.lock_timeout
        with open(self.lock_path, "a") as lock_file:
            while True:
                try:
                    fcntl.flock(lock_file.fileno(), mode)
                    break
                except OSError as exc:
                    if exc.errno not in (errno.EACCES, errno.EAGAIN):
                        raise
                    if time.monotonic() >= deadline:
                        raise TimeoutError(
                            f"Timed out waiting for lock on {self._path}"
                        ) from exc
                    time.sleep(FILE_LOCK_POLL_INTERVAL)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load(self) -> dict[str, dict]:
        if not self._path.exists():
            return {}
        with open(self._path, encoding="utf-8") as fh:
            return json.load(fh)

    def _read(self) -> dict[str, dict]:
        with self._file_lock(exclusive=False):
            return self._load()

    def _write(self, data: dict[str, dict]) -> None:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._path.parent), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _mutate(self, fn: Callable[[dict[str, dict], float], bool]) -> bool:
        with self._file_lock(exclusive=True):
            data = self._load()
            now = self._clock()
            changed = fn(data, now)
            if changed:
                _purge(data, now)
                self._write(data)
        return changed

    # ------------------------------------------------------------------
    # KVStore API
    # ------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        data = await run_sync(self._read)
        return _live_value(data.get(key), self._clock())

    async def put(
        self, key: str, value: str, ttl_seconds: float | None = None
    ) -> None:
        def apply(data: dict[str, dict], now: float) -> bool:
            data[key] = _entry(value, ttl_seconds, now)
            return True

        async with self._lock:
            await run_sync(self._mutate, apply)

    async def delete(self, key: str) -> None:
        def apply(data: dict[str, dict], now: float) -> bool:
            return data.pop(key, None) is not None

        async with self._lock:
            await run_sync(self._mutate, apply)

    async def list_keys(
        self, prefix: str = "", limit: int = 1000, cursor: str | None = None
    ) -> KVPage:
        data = await run_sync(self._read)
        return _page(data, self._clock(), prefix, limit, cursor)

    async def compare_and_swap(
        self,
        key: str,
        expected: str | None,
        new: str | None,
        ttl_seconds: float | None = None,
    ) -> bool:
        def apply(data: dict[str, dict], now: float) -> bool:
            return _swap(data, now, key, expected, new, ttl_seconds)

        async with self._lock:
            swapped = await run_sync(self._mutate, apply)
        if not swapped:
            logger.debug("compare_and_swap lost on %s", key)
        return swapped
