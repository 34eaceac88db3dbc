"""Tests for the TTL cache."""

import pytest
from unittest.mock import AsyncMock
from src.services import cache as cache_module
from src.services.cache import TTLCache, get_shared_cache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TTLCache(ttl_seconds=30, clock=clock)


@pytest.mark.unit
def test_get_within_ttl(cache, clock):
    cache.set("dashboard:agent-1", {"total": 3})
    clock.advance(29)

    assert cache.get("dashboard:agent-1") == {"total": 3}
    assert cache.stats()["hits"] == 1


@pytest.mark.unit
def test_entry_expires_on_read(cache, clock):
    cache.set("dashboard:agent-1", {"total": 3})
    clock.advance(30)

    assert cache.get("dashboard:agent-1") is None
    assert len(cache) == 0
    assert cache.stats()["misses"] == 1


@pytest.mark.unit
def test_per_entry_ttl(cache, clock):
    cache.set("short", 1, ttl_seconds=5)
    cache.set("long", 2)
    clock.advance(10)

    assert cache.get("short") is None
    assert cache.get("long") == 2


@pytest.mark.unit
def test_evict_expired(cache, clock):
    cache.set("a", 1, ttl_seconds=5)
    cache.set("b", 2, ttl_seconds=50)
    clock.advance(10)

    assert cache.evict_expired() == 1
    assert len(cache) == 1


@pytest.mark.unit
def test_invalidate_prefix(cache):
    cache.set("dashboard:agent-1", 1)
    cache.set("dashboard:all", 2)
    cache.set("pipeline:link-1", 3)

    assert cache.invalidate_prefix("dashboard:") == 2
    assert cache.get("pipeline:link-1") == 3


@pytest.mark.unit
def test_delete_and_clear(cache):
    cache.set("a", 1)
    assert cache.delete("a")
    assert not cache.delete("a")

    cache.set("b", 2)
    cache.clear()
    assert len(cache) == 0


@pytest.mark.unit
def test_make_key():
    assert TTLCache.make_key("pipeline", "link-1") == "pipeline:link-1"
    assert TTLCache.make_key("dashboard", None) == "dashboard:"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_get_or_compute_caches_result(cache, clock):
    compute = AsyncMock(return_value={"score": 14})

    first = await cache.get_or_compute("pipeline:link-1", compute)
    second = await cache.get_or_compute("pipeline:link-1", compute)
    clock.advance(31)
    third = await cache.get_or_compute("pipeline:link-1", compute)

    assert first == second == third == {"score": 14}
    assert compute.await_count == 2


@pytest.mark.unit
def test_separate_instances_do_not_share_entries(clock):
    first = TTLCache(clock=clock)
    second = TTLCache(clock=clock)
    first.set("a", 1)

    assert second.get("a") is None


@pytest.mark.unit
def test_set_sweeps_expired_entries(cache, clock):
    for agent in range(5):
        cache.set(f"dashboard:agent-{agent}", agent, ttl_seconds=5)
    clock.advance(10)

    cache.set("dashboard:agent-new", "fresh")

    assert len(cache) == 1


@pytest.mark.unit
def test_size_bound_evicts_oldest(clock):
    bounded = TTLCache(ttl_seconds=30, clock=clock, max_entries=2)
    bounded.set("a", 1)
    bounded.set("b", 2)
    bounded.set("c", 3)

    assert len(bounded) == 2
    assert bounded.get("a") is None
    assert bounded.get("c") == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_get_or_compute_skips_rejected_values(cache):
    compute = AsyncMock(return_value={"degraded_sections": ["deals"]})

    await cache.get_or_compute("dashboard:all", compute, cacheable=lambda v: not v["degraded_sections"])
    await cache.get_or_compute("dashboard:all", compute, cacheable=lambda v: not v["degraded_sections"])

    assert compute.await_count == 2
    assert len(cache) == 0


@pytest.mark.unit
def test_shared_cache_is_one_instance(monkeypatch):
    monkeypatch.setattr(cache_module, "_shared_cache", None)

    assert get_shared_cache() is get_shared_cache()
