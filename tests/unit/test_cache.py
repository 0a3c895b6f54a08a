"""Tests for the TTL cache and keyed lock."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from freezegun import freeze_time

from annotation_service.services.cache import MISS, CacheKind, KeyedLock, TTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> TTLCache:
    return TTLCache(clock=clock)


KEY = (CacheKind.ANNOTATIONS, "sheet-1")


@pytest.mark.unit
class TestTTLCache:
    def test_missing_key_is_a_miss(self, cache):
        assert cache.get(KEY) is MISS
        assert not MISS

    def test_value_is_fresh_until_ttl_elapses(self, cache, clock):
        cache.set(KEY, ["a"])
        clock.now += 59.9
        assert cache.get(KEY, ttl=60) == ["a"]
        clock.now += 0.1
        assert cache.get(KEY, ttl=60) is MISS

    def test_get_without_ttl_ignores_age(self, cache, clock):
        cache.set(KEY, 1)
        clock.now += 10_000
        assert cache.get(KEY) == 1

    def test_invalidate_and_clear(self, cache):
        cache.set(KEY, 1)
        cache.set((CacheKind.ROW_IDS, "sheet-1"), {"R1"})
        cache.invalidate(KEY)
        assert cache.get(KEY) is MISS
        cache.clear()
        assert cache.get((CacheKind.ROW_IDS, "sheet-1")) is MISS

    async def test_get_or_fetch_calls_upstream_once_while_fresh(self, cache, clock):
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return calls

        assert await cache.get_or_fetch(KEY, 30, fetch) == 1
        assert await cache.get_or_fetch(KEY, 30, fetch) == 1
        clock.now += 30
        assert await cache.get_or_fetch(KEY, 30, fetch) == 2

    async def test_fetch_failure_is_not_cached(self, cache):
        async def failing():
            raise RuntimeError("upstream down")

        async def working():
            return "ok"

        with pytest.raises(RuntimeError):
            await cache.get_or_fetch(KEY, 30, failing)
        assert cache.get(KEY) is MISS
        assert await cache.get_or_fetch(KEY, 30, working) == "ok"

    def test_update_if_present_keeps_timestamp(self, cache, clock):
        cache.set(KEY, ["a"])
        clock.now += 50
        assert cache.update_if_present(KEY, lambda items: items.append("b")) is True
        assert cache.get(KEY, ttl=60) == ["a", "b"]
        clock.now += 10
        assert cache.get(KEY, ttl=60) is MISS

    def test_update_if_present_on_missing_key(self, cache):
        assert cache.update_if_present(KEY, lambda items: items.append("b")) is False
        assert cache.get(KEY) is MISS

    def test_sizes_counts_per_kind(self, cache):
        cache.set((CacheKind.ANNOTATIONS, "a"), [])
        cache.set((CacheKind.ANNOTATIONS, "b"), [])
        cache.set((CacheKind.TASK_ROWS, "f"), [])
        sizes = cache.sizes()
        assert sizes["annotations"] == 2
        assert sizes["task_rows"] == 1
        assert sizes["row_ids"] == 0

    def test_default_clock_follows_monotonic_time(self):
        with freeze_time("2026-03-01 12:00:00") as frozen:
            cache = TTLCache()
            cache.set(KEY, "v")
            frozen.tick(timedelta(seconds=59))
            assert cache.get(KEY, ttl=60) == "v"
            frozen.tick(timedelta(seconds=1))
            assert cache.get(KEY, ttl=60) is MISS


@pytest.mark.unit
class TestKeyedLock:
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("row"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    async def test_different_keys_run_concurrently(self):
        locks = KeyedLock()
        inside: set[str] = set()
        overlap = False

        async def worker(key: str) -> None:
            nonlocal overlap
            async with locks.hold(key):
                inside.add(key)
                await asyncio.sleep(0.01)
                if len(inside) == 2:
                    overlap = True
                inside.discard(key)

        await asyncio.gather(worker("a"), worker("b"))
        assert overlap

    async def test_lock_is_released_after_error(self):
        locks = KeyedLock()
        with pytest.raises(ValueError):
            async with locks.hold("row"):
                assert locks.is_locked("row")
                raise ValueError("boom")
        assert not locks.is_locked("row")
        assert locks._locks == {}
