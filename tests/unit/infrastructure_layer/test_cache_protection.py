"""
Unit Tests for Penetration Protection

NegativeCache (null:<key> markers), BloomFilter and DistributedLock.
"""

import pytest

from src.infrastructure.cache.local_cache import LocalCache
from src.infrastructure.cache.protection import BloomFilter, DistributedLock, NegativeCache, null_key


@pytest.mark.unit
class TestBloomFilter:
    def test_added_keys_always_found(self):
        bloom = BloomFilter(expected_items=1000, fp_rate=0.01)
        keys = [f"user:{i}" for i in range(1000)]
        for key in keys:
            bloom.add(key)

        assert all(bloom.might_exist(k) for k in keys)
        assert len(bloom) == 1000

    def test_false_positive_rate_near_target(self):
        bloom = BloomFilter(expected_items=1000, fp_rate=0.01)
        for i in range(1000):
            bloom.add(f"user:{i}")

        false_positives = sum(1 for i in range(10_000) if f"other:{i}" in bloom)

        assert false_positives / 10_000 < 0.03

    def test_sizing(self):
        bloom = BloomFilter(expected_items=100_000, fp_rate=0.01)
        assert bloom.num_bits == 958_506
        assert bloom.num_hashes == 7

    def test_clear(self):
        bloom = BloomFilter(100, 0.01)
        bloom.add("a")
        bloom.clear()
        assert not bloom.might_exist("a")
        assert len(bloom) == 0

    @pytest.mark.parametrize("items, rate", [(0, 0.01), (10, 0.0), (10, 1.0)])
    def test_invalid_parameters(self, items, rate):
        with pytest.raises(ValueError):
            BloomFilter(items, rate)


@pytest.mark.unit
class TestNegativeCacheLocal:
    @pytest.mark.asyncio
    async def test_mark_and_check(self, local_cache):
        negative = NegativeCache(local_cache)

        assert not await negative.is_negative("user:404")
        await negative.mark("user:404")

        assert await negative.is_negative("user:404")
        assert null_key("user:404") == "null:user:404"

    @pytest.mark.asyncio
    async def test_marker_expires(self, local_cache, clock):
        negative = NegativeCache(local_cache, ttl=60)
        await negative.mark("user:404")

        clock.advance(60)

        assert not await negative.is_negative("user:404")

    @pytest.mark.asyncio
    async def test_mark_drops_positive_entry(self, local_cache):
        local_cache.set("user:7", {"id": 7})
        await NegativeCache(local_cache).mark("user:7")
        assert local_cache.get("user:7") is None

    @pytest.mark.asyncio
    async def test_clear(self, local_cache):
        negative = NegativeCache(local_cache)
        await negative.mark("user:404")
        await negative.clear("user:404")
        assert not await negative.is_negative("user:404")


@pytest.mark.unit
class TestNegativeCacheRedis:
    @pytest.mark.asyncio
    async def test_marker_written_to_redis_with_ttl(self, local_cache, redis_client):
        await NegativeCache(local_cache, redis_client).mark("user:404")

        assert await redis_client.get("null:user:404") == "1"
        assert 0 < await redis_client.ttl("null:user:404") <= 60

    @pytest.mark.asyncio
    async def test_marker_visible_to_other_process(self, local_cache, redis_client, make_redis_client, clock):
        await NegativeCache(local_cache, redis_client).mark("user:404")

        other_local = LocalCache(max_cost=1024 * 1024, buffer_items=1, clock=clock)
        other = NegativeCache(other_local, make_redis_client())

        assert await other.is_negative("user:404")
        # Backfilled into the other process's L1
        assert other_local.get("null:user:404") is not None

    @pytest.mark.asyncio
    async def test_mark_removes_positive_l2_entry(self, local_cache, redis_client):
        await redis_client.set("user:7", '{"id": 7}', ttl=300)
        await NegativeCache(local_cache, redis_client).mark("user:7")
        assert await redis_client.get("user:7") is None


@pytest.mark.unit
class TestDistributedLock:
    @pytest.mark.asyncio
    async def test_only_one_holder(self, redis_client):
        lock = DistributedLock(redis_client)

        token = await lock.acquire("report")
        assert token is not None
        assert await lock.acquire("report") is None
        assert 0 < await redis_client.ttl("lock:report") <= 10

    @pytest.mark.asyncio
    async def test_only_owner_releases(self, redis_client):
        lock = DistributedLock(redis_client)
        token = await lock.acquire("report")

        assert not await lock.release("report", "someone-else")
        assert await lock.release("report", token)
        assert await lock.acquire("report") is not None
