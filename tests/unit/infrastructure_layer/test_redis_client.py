"""
Unit Tests for RedisClient

Uses fakeredis as the server; the failing fixture simulates an unreachable
Redis so error mapping can be checked.
"""

import pytest

from src.core.exceptions import CacheConnectionError
from src.infrastructure.cache.redis_client import PoolStats, RedisClient


@pytest.mark.unit
class TestCommands:
    @pytest.mark.asyncio
    async def test_set_get_delete(self, redis_client):
        assert await redis_client.set("k", "v")
        assert await redis_client.get("k") == "v"
        assert await redis_client.exists("k") == 1
        assert await redis_client.delete("k") == 1
        assert await redis_client.get("k") is None

    @pytest.mark.asyncio
    async def test_get_with_ttl(self, redis_client):
        await redis_client.set("k", "v", ttl=30)

        value, remaining = await redis_client.get_with_ttl("k")

        assert value == "v"
        assert 0 < remaining <= 30

    @pytest.mark.asyncio
    async def test_get_with_ttl_without_expiry(self, redis_client):
        await redis_client.set("k", "v")
        assert await redis_client.get_with_ttl("k") == ("v", None)
        assert await redis_client.get_with_ttl("absent") == (None, None)

    @pytest.mark.asyncio
    async def test_set_nx(self, redis_client):
        assert await redis_client.set_nx("lock", "a", ttl=5)
        assert not await redis_client.set_nx("lock", "b", ttl=5)
        assert await redis_client.get("lock") == "a"

    @pytest.mark.asyncio
    async def test_incr_expire_ttl(self, redis_client):
        assert await redis_client.incr("counter") == 1
        assert await redis_client.incr("counter") == 2
        assert await redis_client.ttl("counter") == -1
        await redis_client.expire("counter", 60)
        assert 0 < await redis_client.ttl("counter") <= 60
        assert await redis_client.ttl("absent") == -2

    @pytest.mark.asyncio
    async def test_mset_and_mget(self, redis_client):
        await redis_client.mset({"a": "1", "b": "2"}, ttl=60)
        assert await redis_client.mget(["a", "b", "c"]) == ["1", "2", None]
        assert await redis_client.mget([]) == []

    @pytest.mark.asyncio
    async def test_run_script(self, redis_client):
        result = await redis_client.run_script("return redis.call('INCRBY', KEYS[1], ARGV[1])", ["n"], [5])
        assert result == 5
        # Second run goes through the cached script
        assert await redis_client.run_script("return redis.call('INCRBY', KEYS[1], ARGV[1])", ["n"], [5]) == 10

    @pytest.mark.asyncio
    async def test_scan_iter(self, redis_client):
        for i in range(5):
            await redis_client.set(f"user:{i}", "x")
        await redis_client.set("order:1", "x")

        keys = [k async for k in redis_client.scan_iter("user:*")]

        assert sorted(keys) == [f"user:{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_ping(self, redis_client):
        assert await redis_client.ping()


@pytest.mark.unit
class TestFailures:
    @pytest.mark.asyncio
    async def test_unreachable_server_maps_to_connection_error(self, failing_redis_client):
        with pytest.raises(CacheConnectionError) as exc_info:
            await failing_redis_client.get("k")
        assert exc_info.value.details["key"] == "k"

    @pytest.mark.asyncio
    async def test_not_connected_client_raises(self, settings):
        client = RedisClient(settings)
        assert not client.is_connected
        with pytest.raises(CacheConnectionError):
            await client.get("k")

    @pytest.mark.asyncio
    async def test_connect_failure_raises(self, settings_factory):
        settings = settings_factory(REDIS_HOST="127.0.0.1", REDIS_PORT=1, REDIS_STARTUP_PING_TIMEOUT=0.5,
                                    REDIS_DIAL_TIMEOUT=0.2)
        client = RedisClient(settings)
        with pytest.raises(CacheConnectionError):
            await client.connect()
        assert not client.is_connected


@pytest.mark.unit
class TestIntrospection:
    @pytest.mark.asyncio
    async def test_pool_stats_without_pool(self, redis_client):
        assert redis_client.pool_stats() == PoolStats()

    @pytest.mark.asyncio
    async def test_health_check(self, redis_client):
        health = await redis_client.health_check()
        assert health["status"] == "healthy"
        assert health["ping_latency_ms"] is not None

    @pytest.mark.asyncio
    async def test_disconnect(self, redis_client):
        await redis_client.disconnect()
        assert not redis_client.is_connected
