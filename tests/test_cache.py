from __future__ import annotations

import pytest

from wasession.util.cache import TTLCache


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_ttl_cache_evicts_oldest_when_full() -> None:
    evicted: list[str] = []
    cache: TTLCache[str, int] = TTLCache(2, 60.0, on_evict=lambda k, _v: evicted.append(k))

    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)

    assert evicted == ["a"]
    assert cache.get("a") is None
    assert list(cache) == ["b", "c"]
    assert len(cache) == 2


def test_ttl_cache_expires_from_insertion_time() -> None:
    clock = Clock()
    cache: TTLCache[str, int] = TTLCache(10, 5.0, clock=clock)

    cache.set("a", 1)
    clock.now = 4.0
    cache.set("a", 2)  # overwrite keeps the original insertion time
    assert cache.get("a") == 2

    clock.now = 5.0
    assert cache.get("a") is None
    assert "a" not in cache
    assert len(cache) == 0


def test_ttl_cache_purge_reports_stale_entries() -> None:
    clock = Clock()
    cache: TTLCache[str, int] = TTLCache(10, 1.0, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    clock.now = 2.0
    cache.set("c", 3)  # writes purge first

    assert cache.purge() == 0
    assert list(cache) == ["c"]


def test_ttl_cache_rejects_bad_bounds() -> None:
    with pytest.raises(ValueError):
        TTLCache(0, 1.0)
    with pytest.raises(ValueError):
        TTLCache(1, 0.0)
