"""
Tests for the TTL cache.
"""

import pytest

from protocol_guard.core.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


async def test_hit_and_miss_statistics(clock):
    cache = TTLCache(ttl_seconds=60, clock=clock)
    await cache.set("protocol:1210", "arrest")

    assert await cache.get("protocol:1210") == "arrest"
    assert await cache.get("protocol:9999") is None
    assert cache.stats.hits == 1
    assert cache.stats.misses == 1
    assert cache.stats.hit_rate == 50.0


async def test_entries_expire(clock):
    cache = TTLCache(ttl_seconds=60, clock=clock)
    await cache.set("k", "v")
    clock.now = 60.5
    assert await cache.get("k") is None
    assert cache.stats.expirations == 1


async def test_per_entry_ttl_and_purge(clock):
    cache = TTLCache(ttl_seconds=60, clock=clock)
    await cache.set("short", 1, ttl_seconds=5)
    await cache.set("long", 2)
    clock.now = 10
    assert await cache.purge_expired() == 1
    assert cache.size() == 1
    assert await cache.contains("long")


async def test_lru_eviction(clock):
    cache = TTLCache(ttl_seconds=60, max_entries=2, clock=clock)
    await cache.set("a", 1)
    await cache.set("b", 2)
    await cache.get("a")
    await cache.set("c", 3)

    assert await cache.contains("a")
    assert not await cache.contains("b")
    assert cache.stats.evictions == 1


async def test_invalidate_prefix(clock):
    cache = TTLCache(clock=clock)
    await cache.set("search:abc", [])
    await cache.set("search:def", [])
    await cache.set("protocol:1210", None)

    assert await cache.invalidate_prefix("search:") == 2
    assert await cache.contains("protocol:1210")
    assert await cache.delete("protocol:1210")
    assert not await cache.delete("protocol:1210")


async def test_to_dict(clock):
    cache = TTLCache(ttl_seconds=30, max_entries=10, clock=clock)
    await cache.set("a", 1)
    info = cache.to_dict()
    assert info["size"] == 1
    assert info["max_entries"] == 10
    assert "hit_rate_percent" in info
