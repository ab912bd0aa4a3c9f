"""Tests for the lookup cache."""

from __future__ import annotations

import pytest

from loremaster.services.cache import CacheConfig, LookupCache


class _Monotonic:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> _Monotonic:
    return _Monotonic()


def test_get_and_set() -> None:
    cache: LookupCache[str] = LookupCache()

    assert cache.get("sword") is None
    cache.set("sword", "icons/sword.png")

    assert cache.get("sword") == "icons/sword.png"
    assert "sword" in cache
    assert len(cache) == 1
    assert cache.stats.hits == 1
    assert cache.stats.misses == 1
    assert cache.stats.hit_rate == pytest.approx(0.5)


def test_least_recently_used_entry_is_evicted() -> None:
    cache: LookupCache[int] = LookupCache(CacheConfig(max_entries=2))
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")

    cache.set("c", 3)

    assert "b" not in cache
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert cache.stats.evictions == 1


def test_entries_expire_after_ttl(clock: _Monotonic) -> None:
    cache: LookupCache[int] = LookupCache(CacheConfig(ttl_seconds=10), clock=clock)
    cache.set("k", 1)

    clock.now += 5
    assert cache.get("k") == 1

    clock.now += 6
    assert cache.get("k") is None
    assert cache.stats.expirations == 1
    assert len(cache) == 0


def test_zero_ttl_never_expires(clock: _Monotonic) -> None:
    cache: LookupCache[int] = LookupCache(CacheConfig(ttl_seconds=0), clock=clock)
    cache.set("k", 1)

    clock.now += 10_000

    assert cache.get("k") == 1


def test_get_or_load_only_loads_once() -> None:
    cache: LookupCache[str] = LookupCache()
    calls: list[str] = []

    def loader() -> str:
        calls.append("load")
        return "value"

    assert cache.get_or_load("key", loader) == "value"
    assert cache.get_or_load("key", loader) == "value"
    assert calls == ["load"]


def test_invalidate_and_clear() -> None:
    cache: LookupCache[int] = LookupCache()
    cache.set("a", 1)
    cache.set("b", 2)

    assert cache.invalidate("a") is True
    assert cache.invalidate("a") is False
    assert cache.clear() == 1
    assert len(cache) == 0


def test_stats_can_be_disabled() -> None:
    cache: LookupCache[int] = LookupCache(CacheConfig(track_stats=False))
    cache.set("a", 1)
    cache.get("a")

    assert cache.stats is None
