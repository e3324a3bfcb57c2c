"""
Unit Tests for the L1 Cache

Covers the cost budget, frequency-based admission, TTL expiry and the
frequency sketch.
"""

import random

import pytest

from src.infrastructure.cache.local_cache import FrequencySketch, LocalCache, estimate_cost


@pytest.fixture
def small_cache(clock):
    return LocalCache(max_cost=100, num_counters=1024, buffer_items=1, clock=clock)


@pytest.mark.unit
class TestFrequencySketch:
    def test_counts_increments(self):
        sketch = FrequencySketch(1024)
        for _ in range(3):
            sketch.increment("hot")
        assert sketch.estimate("hot") >= 3
        assert sketch.estimate("cold") == 0

    def test_counters_saturate(self):
        sketch = FrequencySketch(1024)
        for _ in range(100):
            sketch.increment("hot")
        assert sketch.estimate("hot") == 15

    def test_reset_halves_counters(self):
        sketch = FrequencySketch(1024)
        for _ in range(8):
            sketch.increment("hot")
        before = sketch.estimate("hot")
        sketch.reset()
        assert sketch.estimate("hot") == before // 2


@pytest.mark.unit
class TestBasicOperations:
    def test_set_and_get(self, local_cache):
        assert local_cache.set("user:1", {"id": 1})
        assert local_cache.get("user:1") == {"id": 1}
        assert "user:1" in local_cache
        assert len(local_cache) == 1

    def test_miss_returns_none(self, local_cache):
        assert local_cache.get("absent") is None
        assert local_cache.stats()["misses"] == 1

    def test_delete(self, local_cache):
        local_cache.set("k", "v")
        assert local_cache.delete("k")
        assert not local_cache.delete("k")
        assert local_cache.used_cost == 0

    def test_delete_where(self, local_cache):
        local_cache.set("user:1", "a")
        local_cache.set("user:2", "b")
        local_cache.set("order:1", "c")

        assert local_cache.delete_where(lambda k: k.startswith("user:")) == 2
        assert "order:1" in local_cache

    def test_estimate_cost(self):
        assert estimate_cost(b"abcd") == 4
        assert estimate_cost("héllo") == 6
        assert estimate_cost({"a": 1}) == len('{"a":1}')


@pytest.mark.unit
class TestExpiry:
    def test_entry_expires_after_ttl(self, local_cache, clock):
        local_cache.set("k", "v", ttl=10)
        clock.advance(9.9)
        assert local_cache.get("k") == "v"
        assert local_cache.ttl("k") == pytest.approx(0.1)

        clock.advance(0.2)

        assert local_cache.get("k") is None
        assert local_cache.stats()["expired"] == 1

    def test_no_ttl_never_expires(self, local_cache, clock):
        local_cache.set("k", "v")
        clock.advance(10**6)
        assert local_cache.get("k") == "v"
        assert local_cache.ttl("k") is None

    def test_purge_expired(self, local_cache, clock):
        local_cache.set("short", "v", ttl=1)
        local_cache.set("long", "v", ttl=100)
        clock.advance(5)

        assert local_cache.purge_expired() == 1
        assert len(local_cache) == 1

    @pytest.mark.asyncio
    async def test_close_stops_admitting(self, clock):
        cache = LocalCache(max_cost=1024, clock=clock, cleanup_interval=0.01)
        cache.start()
        cache.set("k", "v")

        await cache.close()

        assert len(cache) == 0
        assert not cache.set("k", "v")


@pytest.mark.unit
class TestCostBudget:
    def test_oversized_entry_rejected(self, small_cache):
        assert not small_cache.set("huge", "x", cost=101)
        assert small_cache.stats()["rejected"] == 1
        assert small_cache.used_cost == 0

    def test_used_cost_never_exceeds_budget(self, small_cache):
        rng = random.Random(7)
        for i in range(500):
            key = f"k{rng.randint(0, 40)}"
            if rng.random() < 0.5:
                small_cache.get(key)
            else:
                small_cache.set(key, i, cost=rng.randint(1, 30))
            assert small_cache.used_cost <= small_cache.max_cost

    def test_growing_existing_entry_evicts_others(self, small_cache):
        small_cache.set("a", "1", cost=50)
        small_cache.set("b", "2", cost=50)

        assert small_cache.set("a", "bigger", cost=80)

        assert small_cache.used_cost <= 100
        assert small_cache.get("a") == "bigger"
        assert "b" not in small_cache


@pytest.mark.unit
class TestAdmission:
    def test_cold_key_cannot_displace_hot_keys(self, small_cache):
        small_cache.set("a", "1", cost=60)
        small_cache.set("b", "2", cost=40)
        for _ in range(3):
            small_cache.get("a")
            small_cache.get("b")

        assert not small_cache.set("scan", "x", cost=40)
        assert "a" in small_cache and "b" in small_cache
        assert small_cache.stats()["rejected"] == 1

    def test_frequent_key_is_admitted(self, small_cache):
        small_cache.set("a", "1", cost=60)
        small_cache.set("b", "2", cost=40)
        small_cache.get("b")

        # Repeated misses build up frequency for the candidate
        for _ in range(5):
            small_cache.get("popular")

        assert small_cache.set("popular", "x", cost=40)
        assert small_cache.get("popular") == "x"
        assert small_cache.used_cost <= 100
        assert small_cache.stats()["evicted"] >= 1

    def test_expired_entries_make_room_first(self, small_cache, clock):
        small_cache.set("old", "1", cost=100, ttl=1)
        for _ in range(5):
            small_cache.get("old")
        clock.advance(2)

        assert small_cache.set("new", "2", cost=50)
