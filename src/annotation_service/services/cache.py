"""Process-wide TTL cache over row-store reads, plus a keyed async mutex."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Hashable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class CacheKind(Enum):
    """Resource kinds held in the cache."""

    TASK_ROWS = "task_rows"
    ANNOTATIONS = "annotations"
    ROW_IDS = "row_ids"
    FINALIZED_IDS = "finalized_ids"
    WORKER_LANGUAGES = "worker_languages"


CacheKey = tuple[CacheKind, str]


class _Miss:
    """Sentinel type for a cache miss."""

    _instance: _Miss | None = None

    def __new__(cls) -> _Miss:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


@dataclass
class CacheEntry:
    """A cached value and the clock reading at which it was fetched."""

    value: Any
    fetched_at: float


class TTLCache:
    """
    Memoizes upstream reads keyed by (resource kind, resource id).

    A key is stale when ``now - fetched_at >= ttl``. Fetch failures propagate
    to the caller and are never stored.
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock if clock is not None else time.monotonic
        self._entries: dict[CacheKey, CacheEntry] = {}

    def get(self, key: CacheKey, ttl: float | None = None) -> Any:
        """Return the cached value, or MISS when absent or stale under ``ttl``."""
        entry = self._entries.get(key)
        if entry is None:
            return MISS
        if ttl is not None and self._clock() - entry.fetched_at >= ttl:
            return MISS
        return entry.value

    def set(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = CacheEntry(value=value, fetched_at=self._clock())

    def invalidate(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_fetch(
        self,
        key: CacheKey,
        ttl: float,
        fetch_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Return a fresh cached value, or call ``fetch_fn`` and store its result."""
        cached = self.get(key, ttl)
        if cached is not MISS:
            return cached
        value = await fetch_fn()
        self.set(key, value)
        return value

    def update_if_present(self, key: CacheKey, fn: Callable[[Any], None]) -> bool:
        """
        Apply an in-place update to a cached value without touching its timestamp.

        Returns False when nothing is cached under ``key``.
        """
        entry = self._entries.get(key)
        if entry is None:
            return False
        fn(entry.value)
        return True

    def sizes(self) -> dict[str, int]:
        """Number of cached keys per resource kind."""
        counts = {kind.value: 0 for kind in CacheKind}
        for kind, _resource_id in self._entries:
            counts[kind.value] += 1
        return counts


class KeyedLock:
    """Async mutex per key; lock objects are dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
