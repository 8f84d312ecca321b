"""Tests for the bounded LRU cache."""

import pytest

from frameface_cluster.lru import LRUCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_evicts_least_recently_used():
    cache = LRUCache(max_entries=2, ttl=None)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1  # "b" is now the oldest
    cache.set("c", 3)
    assert "b" not in cache
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert len(cache) == 2


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = LRUCache(max_entries=10, ttl=60.0, clock=clock)
    cache.set("k", "v")
    clock.now = 59.0
    assert cache.get("k") == "v"
    # reading refreshed the entry's age
    clock.now = 118.0
    assert cache.get("k") == "v"
    clock.now = 179.0
    assert cache.get("k") is None
    assert len(cache) == 0


def test_hit_and_miss_counters():
    cache = LRUCache(max_entries=4)
    cache.get("missing")
    cache.set("x", 1)
    cache.get("x")
    assert cache.hits == 1
    assert cache.misses == 1


def test_clear_and_invalid_capacity():
    cache = LRUCache(max_entries=1)
    cache.set("x", 1)
    cache.clear()
    assert len(cache) == 0
    with pytest.raises(ValueError):
        LRUCache(max_entries=0)
