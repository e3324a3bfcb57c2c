"""
Unit Tests for MultiLevelCache

Scenario tests for the read-through path: stampede protection, negative
caching, the membership filter, L2 backfill and degraded operation when
Redis is down. Also covers invalidation and versioned namespaces.
"""

import asyncio

import pytest
from pydantic import BaseModel

from src.core.context import RequestContext
from src.core.exceptions import (
    CacheConnectionError,
    CacheMembershipRejectedError,
    NotFoundError,
    RequestTimeoutError,
)
from src.infrastructure.cache.codec import PydanticCodec
from src.infrastructure.cache.local_cache import LocalCache
from src.infrastructure.cache.multi_level import MultiLevelCache
from src.infrastructure.cache.protection import BloomFilter


class CountingLoader:
    """Loader double that records how often it ran."""

    def __init__(self, value=None, error: Exception | None = None, delay: float = 0.0):
        self.value = value
        self.error = error
        self.delay = delay
        self.calls = 0

    async def __call__(self, ctx: RequestContext):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.value


@pytest.fixture
def l1_only(local_cache, settings, mock_metrics, clock):
    return MultiLevelCache(local_cache, None, settings=settings, metrics=mock_metrics, clock=clock)


@pytest.fixture
def two_tier(local_cache, redis_client, settings, mock_metrics, clock):
    return MultiLevelCache(local_cache, redis_client, settings=settings, metrics=mock_metrics, clock=clock)


@pytest.fixture
def make_replica(make_redis_client, settings, mock_metrics, clock):
    """Another process: its own L1, the same Redis server."""

    def _make() -> MultiLevelCache:
        local = LocalCache(max_cost=1024 * 1024, num_counters=1024, buffer_items=1, clock=clock)
        return MultiLevelCache(local, make_redis_client(), settings=settings, metrics=mock_metrics, clock=clock)

    return _make


@pytest.mark.unit
class TestStampede:
    @pytest.mark.asyncio
    async def test_thousand_concurrent_misses_load_once(self, l1_only, ctx, mock_metrics):
        loader = CountingLoader(value={"id": 1}, delay=0.05)

        results = await asyncio.gather(*(l1_only.get(ctx, "user:1", loader) for _ in range(1000)))

        assert loader.calls == 1
        assert all(r == {"id": 1} for r in results)
        assert mock_metrics.record_singleflight_shared.call_count == 999

    @pytest.mark.asyncio
    async def test_stampede_with_redis(self, two_tier, ctx):
        loader = CountingLoader(value="v", delay=0.05)

        results = await asyncio.gather(*(two_tier.get(ctx, "hot", loader) for _ in range(200)))

        assert loader.calls == 1
        assert set(results) == {"v"}

    @pytest.mark.asyncio
    async def test_loader_errors_are_shared_but_not_cached(self, l1_only, ctx):
        loader = CountingLoader(error=RuntimeError("db down"), delay=0.01)

        results = await asyncio.gather(*(l1_only.get(ctx, "k", loader) for _ in range(10)), return_exceptions=True)
        assert all(isinstance(r, RuntimeError) for r in results)
        assert loader.calls == 1

        loader.error = None
        loader.value = "recovered"
        assert await l1_only.get(ctx, "k", loader) == "recovered"
        assert loader.calls == 2


@pytest.mark.unit
class TestReadThrough:
    @pytest.mark.asyncio
    async def test_second_read_served_from_l1(self, l1_only, ctx, mock_metrics):
        loader = CountingLoader(value=[1, 2, 3])

        assert await l1_only.get(ctx, "k", loader) == [1, 2, 3]
        assert await l1_only.get(ctx, "k", loader) == [1, 2, 3]

        assert loader.calls == 1
        mock_metrics.record_cache_hit.assert_called_with("l1")

    @pytest.mark.asyncio
    async def test_l1_ttl_capped(self, l1_only, ctx, local_cache):
        await l1_only.get(ctx, "k", CountingLoader(value="v"), ttl=300)
        assert local_cache.ttl("k") <= 60

    @pytest.mark.asyncio
    async def test_value_written_to_l2_with_ttl(self, two_tier, ctx, redis_client):
        await two_tier.get(ctx, "user:1", CountingLoader(value={"id": 1}), ttl=120)

        assert await redis_client.get("user:1") == '{"id":1}'
        assert 0 < await redis_client.ttl("user:1") <= 120

    @pytest.mark.asyncio
    async def test_l2_hit_backfills_other_process(self, two_tier, make_replica, ctx):
        await two_tier.get(ctx, "user:1", CountingLoader(value={"id": 1}))
        replica = make_replica()
        loader = CountingLoader(error=AssertionError("loader must not run"))

        assert await replica.get(ctx, "user:1", loader) == {"id": 1}
        assert loader.calls == 0
        assert replica.local.get("user:1") == {"id": 1}

    @pytest.mark.asyncio
    async def test_expired_deadline_short_circuits(self, l1_only, clock):
        ctx = RequestContext(request_id="r", clock=clock).with_timeout(1.0)
        clock.advance(1.5)
        loader = CountingLoader(value="v")

        with pytest.raises(RequestTimeoutError):
            await l1_only.get(ctx, "k", loader)
        assert loader.calls == 0


@pytest.mark.unit
class TestNegativeCaching:
    @pytest.mark.asyncio
    async def test_not_found_is_remembered(self, two_tier, ctx, redis_client):
        loader = CountingLoader(error=NotFoundError("no user 404"))

        with pytest.raises(NotFoundError):
            await two_tier.get(ctx, "user:404", loader)
        with pytest.raises(NotFoundError):
            await two_tier.get(ctx, "user:404", loader)

        assert loader.calls == 1
        assert await redis_client.get("null:user:404") is not None
        assert 0 < await redis_client.ttl("null:user:404") <= 60

    @pytest.mark.asyncio
    async def test_none_from_loader_means_not_found(self, l1_only, ctx):
        loader = CountingLoader(value=None)
        with pytest.raises(NotFoundError):
            await l1_only.get(ctx, "user:404", loader)
        with pytest.raises(NotFoundError):
            await l1_only.get(ctx, "user:404", loader)
        assert loader.calls == 1

    @pytest.mark.asyncio
    async def test_negative_marker_expires(self, l1_only, ctx, clock):
        loader = CountingLoader(error=NotFoundError("missing"))
        with pytest.raises(NotFoundError):
            await l1_only.get(ctx, "user:404", loader)

        clock.advance(60)
        loader.error = None
        loader.value = "created since"

        assert await l1_only.get(ctx, "user:404", loader) == "created since"

    @pytest.mark.asyncio
    async def test_negative_marker_shared_across_processes(self, two_tier, make_replica, ctx):
        with pytest.raises(NotFoundError):
            await two_tier.get(ctx, "user:404", CountingLoader(error=NotFoundError("missing")))
        replica_loader = CountingLoader(value="should not load")

        with pytest.raises(NotFoundError):
            await make_replica().get(ctx, "user:404", replica_loader)
        assert replica_loader.calls == 0

    @pytest.mark.asyncio
    async def test_set_clears_negative_marker(self, two_tier, ctx, redis_client):
        with pytest.raises(NotFoundError):
            await two_tier.get(ctx, "user:5", CountingLoader(value=None))

        await two_tier.set("user:5", {"id": 5})

        assert await redis_client.get("null:user:5") is None
        assert await two_tier.get(ctx, "user:5", CountingLoader(value=None)) == {"id": 5}


@pytest.mark.unit
class TestMembershipFilter:
    @pytest.mark.asyncio
    async def test_unknown_key_rejected_without_loading(self, local_cache, settings, mock_metrics, clock, ctx):
        cache = MultiLevelCache(local_cache, settings=settings, bloom=BloomFilter(1000, 0.001),
                                metrics=mock_metrics, clock=clock)
        loader = CountingLoader(value="v")

        with pytest.raises(CacheMembershipRejectedError):
            await cache.get(ctx, "user:999", loader)
        assert loader.calls == 0

        assert cache.seed_filter(["user:999"]) == 1
        assert await cache.get(ctx, "user:999", loader) == "v"

    def test_filter_enabled_from_settings(self, local_cache, settings_factory, mock_metrics):
        settings = settings_factory(CACHE_BLOOM_ENABLED=True, CACHE_BLOOM_EXPECTED_ITEMS=500)
        cache = MultiLevelCache(local_cache, settings=settings, metrics=mock_metrics)
        assert cache.bloom is not None

    @pytest.mark.asyncio
    async def test_loaded_keys_join_filter(self, local_cache, settings, mock_metrics, clock, ctx):
        bloom = BloomFilter(1000, 0.001)
        cache = MultiLevelCache(local_cache, settings=settings, bloom=bloom, metrics=mock_metrics, clock=clock)

        await cache.set("user:1", "v")

        assert bloom.might_exist("user:1")


@pytest.mark.unit
class TestRedisOutage:
    @pytest.mark.asyncio
    async def test_reads_degrade_to_loader(self, local_cache, failing_redis_client, settings, mock_metrics,
                                           clock, ctx):
        cache = MultiLevelCache(local_cache, failing_redis_client, settings=settings, metrics=mock_metrics,
                                clock=clock)
        loader = CountingLoader(value="v")

        assert await cache.get(ctx, "k", loader) == "v"
        assert await cache.get(ctx, "k", loader) == "v"
        assert loader.calls == 1

    @pytest.mark.asyncio
    async def test_invalidate_never_raises(self, local_cache, failing_redis_client, settings, mock_metrics, ctx):
        cache = MultiLevelCache(local_cache, failing_redis_client, settings=settings, metrics=mock_metrics)
        local_cache.set("k", "v")

        await cache.invalidate("k")

        assert local_cache.get("k") is None

    @pytest.mark.asyncio
    async def test_locks_require_redis(self, l1_only):
        with pytest.raises(CacheConnectionError):
            await l1_only.acquire_lock("job")


@pytest.mark.unit
class TestInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate_clears_both_tiers(self, two_tier, ctx, redis_client, local_cache):
        await two_tier.set("user:1", {"id": 1})

        await two_tier.invalidate("user:1")

        assert local_cache.get("user:1") is None
        assert await redis_client.get("user:1") is None

    @pytest.mark.asyncio
    async def test_invalidate_pattern(self, two_tier, redis_client, local_cache):
        for key in ("user:1", "user:2", "order:1"):
            await two_tier.set(key, key)

        deleted = await two_tier.invalidate_pattern("user:*")

        assert deleted == 2
        assert local_cache.get("user:1") is None
        assert local_cache.get("order:1") == "order:1"
        assert await redis_client.get("order:1") is not None

    @pytest.mark.asyncio
    async def test_load_in_flight_during_invalidate_is_not_cached(self, two_tier, ctx, redis_client, local_cache):
        old_loader = CountingLoader(value={"v": "old"}, delay=0.05)
        new_loader = CountingLoader(value={"v": "new"})

        first = asyncio.create_task(two_tier.get(ctx, "user:1", old_loader))
        await asyncio.sleep(0.01)
        await two_tier.invalidate("user:1")

        assert await first == {"v": "old"}
        assert local_cache.get("user:1") is None
        assert await redis_client.get("user:1") is None

        assert await two_tier.get(ctx, "user:1", new_loader) == {"v": "new"}
        assert new_loader.calls == 1

    @pytest.mark.asyncio
    async def test_callers_after_invalidate_start_a_fresh_load(self, l1_only, ctx):
        old_loader = CountingLoader(value="old", delay=0.05)
        new_loader = CountingLoader(value="new", delay=0.01)

        first = asyncio.create_task(l1_only.get(ctx, "user:1", old_loader))
        await asyncio.sleep(0.01)
        await l1_only.invalidate("user:1")
        second = await l1_only.get(ctx, "user:1", new_loader)

        assert second == "new"
        assert await first == "old"
        assert new_loader.calls == 1
        assert await l1_only.get(ctx, "user:1", old_loader) == "new"

    @pytest.mark.asyncio
    async def test_not_found_during_invalidate_is_not_remembered(self, two_tier, ctx, redis_client):
        missing = CountingLoader(error=NotFoundError("gone"), delay=0.05)

        first = asyncio.create_task(two_tier.get(ctx, "user:1", missing))
        await asyncio.sleep(0.01)
        await two_tier.invalidate("user:1")

        with pytest.raises(NotFoundError):
            await first
        assert await redis_client.get("null:user:1") is None
        assert await two_tier.get(ctx, "user:1", CountingLoader(value="back")) == "back"

    @pytest.mark.asyncio
    async def test_pattern_invalidate_detaches_running_loads(self, two_tier, ctx, local_cache):
        first = asyncio.create_task(two_tier.get(ctx, "user:1", CountingLoader(value="old", delay=0.05)))
        await asyncio.sleep(0.01)
        await two_tier.invalidate_pattern("user:*")
        await first

        assert local_cache.get("user:1") is None
        assert await two_tier.get(ctx, "user:1", CountingLoader(value="new")) == "new"

    @pytest.mark.asyncio
    async def test_set_during_load_wins(self, two_tier, ctx, redis_client):
        first = asyncio.create_task(two_tier.get(ctx, "user:1", CountingLoader(value="loaded", delay=0.05)))
        await asyncio.sleep(0.01)
        await two_tier.set("user:1", "written")
        await first

        assert await redis_client.get("user:1") == '"written"'
        assert await two_tier.get(ctx, "user:1", CountingLoader(error=AssertionError())) == "written"

    @pytest.mark.asyncio
    async def test_locks(self, two_tier):
        token = await two_tier.acquire_lock("job")
        assert token is not None
        assert await two_tier.acquire_lock("job") is None
        assert await two_tier.release_lock("job", token)


@pytest.mark.unit
class TestNamespaces:
    @pytest.mark.asyncio
    async def test_namespace_key_embeds_version(self, two_tier):
        assert await two_tier.namespace_key("users", "42") == "users:v0:42"

        assert await two_tier.invalidate_namespace("users") == 1

        assert await two_tier.namespace_key("users", "42") == "users:v1:42"

    @pytest.mark.asyncio
    async def test_version_bump_seen_by_other_process(self, two_tier, make_replica, clock, redis_client):
        replica = make_replica()
        assert await replica.namespace_key("users", "42") == "users:v0:42"

        await two_tier.invalidate_namespace("users")
        assert await redis_client.get("ns:users:version") == "1"

        clock.advance(1.0)
        assert await replica.namespace_key("users", "42") == "users:v1:42"

    @pytest.mark.asyncio
    async def test_local_bump_without_redis(self, l1_only):
        assert await l1_only.invalidate_namespace("users") == 1
        assert await l1_only.invalidate_namespace("users") == 2
        assert await l1_only.namespace_key("users", "a") == "users:v2:a"


@pytest.mark.unit
class TestIntrospection:
    @pytest.mark.asyncio
    async def test_stats_and_health(self, two_tier, l1_only):
        assert two_tier.stats()["l2_connected"] is True
        assert l1_only.stats()["l2_connected"] is False
        assert (await l1_only.health_check())["l2"] == {"status": "disabled"}
        assert (await two_tier.health_check())["l2"]["status"] == "healthy"


class User(BaseModel):
    id: int
    name: str


@pytest.mark.unit
class TestCodec:
    @pytest.mark.asyncio
    async def test_pydantic_model_round_trips_through_l2(
        self, redis_client, make_redis_client, settings, mock_metrics, clock, ctx
    ):
        def build(redis):
            local = LocalCache(max_cost=1024 * 1024, num_counters=1024, buffer_items=1, clock=clock)
            return MultiLevelCache(
                local, redis, settings=settings, metrics=mock_metrics, clock=clock, codec=PydanticCodec(User)
            )

        await build(redis_client).get(ctx, "user:7", CountingLoader(value=User(id=7, name="ada")))
        assert await redis_client.get("user:7") == '{"id":7,"name":"ada"}'

        loaded = await build(make_redis_client()).get(ctx, "user:7", CountingLoader(error=AssertionError()))
        assert loaded == User(id=7, name="ada")
