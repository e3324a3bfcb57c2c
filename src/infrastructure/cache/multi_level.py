#!/usr/bin/env python3
"""
Multi-Level Read-Through Cache

STAGE-F: Cache lookup, load and invalidation

Architecture:
    MultiLevelCache (Public API)
        ├── LocalCache      (L1, per process, TTL capped at CACHE_L1_MAX_TTL)
        ├── RedisClient     (L2, shared, optional)
        ├── NegativeCache   (null:<key> markers)
        ├── BloomFilter     (optional membership pre-check)
        └── SingleFlight    (one loader per key per process)

Resolution order for get(ctx, key, loader):
    1. deadline check
    2. L1 hit                       → return
    3. membership filter (enabled)  → NotFound if the key was never stored
    4. negative marker (L1, L2)     → NotFound
    5. L2 hit                       → backfill L1, return
    6. single-flight: re-check L1/L2, then run the loader
         success   → write L2 and L1, clear negative marker, add to filter
         not found → write negative marker, raise NotFound
         error     → raise, no cache mutation

L2 failures never fail a read: they are logged and treated as a miss, so a
Redis outage degrades to L1 plus loader. Writes after a successful load are
best-effort for the same reason.

Invalidation:
    - invalidate(*keys): L1 first, then L2 (positive entries and markers)
      and detach running loads of those keys so they cannot write back
    - invalidate_pattern(pattern): L1 by glob, L2 by SCAN (100 per step)
    - namespaces: keys built by namespace_key(ns, suffix) embed a version
      read from ``ns:<ns>:version``; invalidate_namespace(ns) INCRs it.
      Other processes observe the bump within CACHE_NAMESPACE_VERSION_TTL.

Author: System Architect
Date: 2025-12-13
"""

import fnmatch
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Generic, TypeVar

from src.core.clock import SYSTEM_CLOCK, Clock
from src.core.config.constants import KEY_PREFIX_NAMESPACE, SCAN_BATCH_SIZE, CacheTier, Stage
from src.core.config.settings import Settings, get_settings
from src.core.context import RequestContext
from src.core.exceptions import (
    CacheConnectionError,
    CacheError,
    CacheMembershipRejectedError,
    NotFoundError,
)
from src.core.logging.logger import get_logger, log_stage
from src.infrastructure.cache.codec import Codec, JsonCodec
from src.infrastructure.cache.local_cache import LocalCache
from src.infrastructure.cache.protection import BloomFilter, DistributedLock, NegativeCache, null_key
from src.infrastructure.cache.redis_client import RedisClient
from src.infrastructure.cache.scripts import SET_POSITIVE_SCRIPT
from src.infrastructure.cache.single_flight import SingleFlight
from src.infrastructure.monitoring.metrics_collector import MetricsCollector, get_metrics_collector

logger = get_logger(__name__)

T = TypeVar("T")

Loader = Callable[[RequestContext], Awaitable[T]]


class MultiLevelCache(Generic[T]):
    """
    Read-through cache over L1 and L2 with stampede and penetration protection.

    Usage:
        cache = MultiLevelCache(local, redis, settings=settings)

        async def load_user(ctx):
            row = await repo.find(ctx, 42)
            if row is None:
                raise NotFoundError("user 42")
            return row

        user = await cache.get(ctx, "user:42", load_user)
        await cache.invalidate("user:42")
    """

    def __init__(
        self,
        local: LocalCache,
        redis: RedisClient | None = None,
        codec: Codec[T] | None = None,
        settings: Settings | None = None,
        bloom: BloomFilter | None = None,
        metrics: MetricsCollector | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ):
        self._settings = settings or get_settings()
        cfg = self._settings.cache
        self._local = local
        self._redis = redis
        self._codec: Codec[Any] = codec or JsonCodec()
        self._metrics = metrics or get_metrics_collector()
        self._clock = clock

        self._default_ttl = cfg.CACHE_DEFAULT_TTL
        self._l1_max_ttl = cfg.CACHE_L1_MAX_TTL
        self._version_ttl = cfg.CACHE_NAMESPACE_VERSION_TTL
        self._op_timeout = self._settings.redis.REDIS_READ_TIMEOUT

        self._negative = NegativeCache(local, redis, ttl=cfg.CACHE_NULL_TTL)
        if bloom is None and cfg.CACHE_BLOOM_ENABLED:
            bloom = BloomFilter(cfg.CACHE_BLOOM_EXPECTED_ITEMS, cfg.CACHE_BLOOM_FP_RATE)
        self._bloom = bloom
        self._flight = SingleFlight()
        self._versions: dict[str, tuple[int, float]] = {}

        # Invalidation generations: a load that started before an invalidation
        # of its key (or any pattern invalidation) must not write back
        self._generation = 0
        self._invalidated_at: dict[str, int] = {}
        self._pattern_invalidated_at = 0
        self._pending = 0

    # =========================================================================
    # Helpers
    # =========================================================================

    def _l2(self) -> RedisClient | None:
        if self._redis is not None and self._redis.is_connected:
            return self._redis
        return None

    def _timeout(self, ctx: RequestContext | None) -> float:
        return ctx.bounded(self._op_timeout) if ctx is not None else self._op_timeout

    def _l1_ttl(self, ttl: float | None) -> float:
        return self._l1_max_ttl if not ttl else min(ttl, self._l1_max_ttl)

    def _invalidated_since(self, key: str, generation: int) -> bool:
        return (
            self._invalidated_at.get(key, 0) > generation
            or self._pattern_invalidated_at > generation
        )

    def _next_generation(self) -> int:
        # Markers only matter to reads and loads that were running when they were set
        if self._pending == 0:
            self._invalidated_at.clear()
        self._generation += 1
        return self._generation

    @property
    def local(self) -> LocalCache:
        return self._local

    @property
    def negative(self) -> NegativeCache:
        return self._negative

    @property
    def bloom(self) -> BloomFilter | None:
        return self._bloom

    # =========================================================================
    # Read path
    # =========================================================================

    async def get(self, ctx: RequestContext, key: str, loader: Loader[T], ttl: float | None = None) -> T:
        """
        Return the value for ``key``, loading it at most once per process on a miss.

        Raises:
            NotFoundError: The loader (now or within the negative TTL) reported no record
            RequestTimeoutError: The request deadline passed before a value was found
            Exception: Whatever the loader raised
        """
        ctx.check_deadline()

        value = self._local.get(key)
        if value is not None:
            self._metrics.record_cache_hit(CacheTier.L1.value)
            return value
        self._metrics.record_cache_miss(CacheTier.L1.value)

        if self._bloom is not None and not self._bloom.might_exist(key):
            self._metrics.record_cache_hit(CacheTier.BLOOM.value)
            raise CacheMembershipRejectedError("key rejected by membership filter", request_id=ctx.request_id,
                                               details={"key": key})

        if await self._is_negative(ctx, key):
            self._metrics.record_cache_hit(CacheTier.NEGATIVE.value)
            raise NotFoundError("record not found (negative cache)", request_id=ctx.request_id,
                                details={"key": key})

        found, value = await self._read_l2(ctx, key, self._generation)
        if found:
            return value

        ctx.check_deadline()
        value, shared = await self._flight.do(key, lambda: self._load(ctx, key, loader, ttl))
        if shared:
            self._metrics.record_singleflight_shared()
        return value

    async def _is_negative(self, ctx: RequestContext, key: str) -> bool:
        try:
            return await self._negative.is_negative(key, timeout=self._timeout(ctx))
        except CacheError as e:
            log_stage(ctx.logger, Stage.CACHE_LOOKUP.value, "Negative cache lookup failed, treating as miss",
                      level="warning", key=key, error=e.message)
            return False

    async def _read_l2(self, ctx: RequestContext, key: str, generation: int) -> tuple[bool, Any]:
        redis = self._l2()
        if redis is None:
            return False, None
        self._pending += 1
        try:
            raw, remaining = await redis.get_with_ttl(key, timeout=self._timeout(ctx))
        except CacheError as e:
            log_stage(ctx.logger, Stage.CACHE_LOOKUP.value, "L2 read failed, treating as miss",
                      level="warning", key=key, error=e.message)
            return False, None
        finally:
            self._pending -= 1
        if raw is None:
            self._metrics.record_cache_miss(CacheTier.L2.value)
            return False, None
        try:
            value = self._codec.decode(raw)
        except (ValueError, TypeError) as e:
            log_stage(ctx.logger, Stage.CACHE_LOOKUP.value, "L2 value undecodable, treating as miss",
                      level="warning", key=key, error=str(e))
            return False, None
        self._metrics.record_cache_hit(CacheTier.L2.value)
        if not self._invalidated_since(key, generation):
            self._local.set(key, value, ttl=self._l1_ttl(remaining))
        return True, value

    async def _load(self, ctx: RequestContext, key: str, loader: Loader[T], ttl: float | None) -> T:
        generation = self._generation
        self._pending += 1
        try:
            return await self._load_since(ctx, key, loader, ttl, generation)
        finally:
            self._pending -= 1

    async def _load_since(
        self, ctx: RequestContext, key: str, loader: Loader[T], ttl: float | None, generation: int
    ) -> T:
        # Another caller may have filled a tier while this one queued
        value = self._local.get(key)
        if value is not None:
            return value
        found, value = await self._read_l2(ctx, key, generation)
        if found:
            return value

        log_stage(ctx.logger, Stage.CACHE_LOAD.value, "Cache miss, invoking loader", level="debug", key=key)
        try:
            value = await loader(ctx)
            if value is None:
                raise NotFoundError("loader returned no value", request_id=ctx.request_id, details={"key": key})
        except NotFoundError:
            self._metrics.record_cache_load("not_found")
            if not self._invalidated_since(key, generation):
                await self._mark_negative(ctx, key)
            raise
        except Exception:
            self._metrics.record_cache_load("error")
            raise

        self._metrics.record_cache_load("success")
        await self._write_through(ctx, key, value, ttl, generation=generation)
        return value

    async def _mark_negative(self, ctx: RequestContext, key: str) -> None:
        try:
            await self._negative.mark(key, timeout=self._timeout(ctx))
        except CacheError as e:
            log_stage(ctx.logger, Stage.CACHE_LOAD.value, "Negative cache write failed",
                      level="warning", key=key, error=e.message)

    async def _write_through(
        self,
        ctx: RequestContext | None,
        key: str,
        value: T,
        ttl: float | None,
        generation: int | None = None,
    ) -> None:
        """
        Store ``value`` in L2 then L1.

        With ``generation`` set (a loaded value), nothing is stored once the
        key has been invalidated after that generation: the caller still gets
        the value, the next get() loads again.
        """
        if generation is not None and self._invalidated_since(key, generation):
            log_stage(logger, Stage.CACHE_LOAD.value, "Key invalidated during load, not caching",
                      level="debug", key=key)
            return
        ttl = ttl or self._default_ttl
        redis = self._l2()
        if redis is not None:
            try:
                await redis.run_script(
                    SET_POSITIVE_SCRIPT,
                    [key, null_key(key)],
                    [self._codec.encode(value), int(ttl * 1000)],
                    timeout=self._timeout(ctx),
                )
            except CacheError as e:
                logger.warning("L2 write failed", stage=Stage.CACHE_LOAD.value, key=key, error=e.message)
            if generation is not None and self._invalidated_since(key, generation):
                # Invalidated while the L2 write was in flight
                await self._delete_l2(ctx, [key])
                return
        self._local.delete(null_key(key))
        self._local.set(key, value, ttl=self._l1_ttl(ttl))
        if self._bloom is not None:
            self._bloom.add(key)

    # =========================================================================
    # Write / invalidate
    # =========================================================================

    async def set(self, key: str, value: T, ttl: float | None = None, ctx: RequestContext | None = None) -> None:
        """Store ``value`` in both tiers (write-through). Running loads of ``key`` will not overwrite it."""
        self._invalidated_at[key] = self._next_generation()
        self._flight.forget(key)
        await self._write_through(ctx, key, value, ttl)

    async def invalidate(self, *keys: str, ctx: RequestContext | None = None) -> None:
        """
        Drop ``keys`` from every tier. L1 is cleared before L2 is contacted.

        Loads of these keys already running are detached: their results are
        returned to their callers but not cached, and the next get() runs the
        loader again.

        Never raises: L2 errors are logged and the entries age out by TTL.
        """
        if not keys:
            return
        generation = self._next_generation()
        for key in keys:
            self._invalidated_at[key] = generation
            self._flight.forget(key)
            self._local.delete(key)
            self._local.delete(null_key(key))

        await self._delete_l2(ctx, [*keys, *(null_key(k) for k in keys)])

    async def _delete_l2(self, ctx: RequestContext | None, keys: list[str]) -> None:
        redis = self._l2()
        if redis is None:
            return
        try:
            await redis.delete(*keys, timeout=self._timeout(ctx))
        except CacheError as e:
            logger.warning("L2 invalidation failed", stage=Stage.CACHE_INVALIDATE.value,
                           keys=keys, error=e.message)

    async def invalidate_pattern(self, pattern: str, ctx: RequestContext | None = None) -> int:
        """
        Drop every key matching the glob ``pattern``.

        Every load running at call time is detached, matching or not.

        Returns:
            Number of L2 keys deleted
        """
        self._pattern_invalidated_at = self._next_generation()
        self._flight.forget_where(lambda k: fnmatch.fnmatchcase(k, pattern))
        self._local.delete_where(lambda k: fnmatch.fnmatchcase(k, pattern))

        redis = self._l2()
        if redis is None:
            return 0
        deleted = 0
        batch: list[str] = []
        try:
            async for key in redis.scan_iter(pattern, count=SCAN_BATCH_SIZE):
                batch.append(key)
                if len(batch) >= SCAN_BATCH_SIZE:
                    deleted += await redis.delete(*batch, timeout=self._timeout(ctx))
                    batch.clear()
            if batch:
                deleted += await redis.delete(*batch, timeout=self._timeout(ctx))
        except CacheError as e:
            logger.warning("L2 pattern invalidation failed", stage=Stage.CACHE_INVALIDATE.value,
                           pattern=pattern, deleted=deleted, error=e.message)
        log_stage(logger, Stage.CACHE_INVALIDATE.value, "Pattern invalidated", pattern=pattern, deleted=deleted)
        return deleted

    # =========================================================================
    # Versioned namespaces
    # =========================================================================

    @staticmethod
    def _version_key(namespace: str) -> str:
        return f"{KEY_PREFIX_NAMESPACE}{namespace}:version"

    async def namespace_version(self, namespace: str, ctx: RequestContext | None = None) -> int:
        cached = self._versions.get(namespace)
        now = self._clock.monotonic()
        if cached is not None and now - cached[1] < self._version_ttl:
            return cached[0]

        version = cached[0] if cached is not None else 0
        redis = self._l2()
        if redis is not None:
            try:
                raw = await redis.get(self._version_key(namespace), timeout=self._timeout(ctx))
                version = int(raw) if raw is not None else 0
            except CacheError as e:
                logger.warning("Namespace version read failed, using last known",
                               stage=Stage.CACHE_LOOKUP.value, namespace=namespace, error=e.message)
        self._versions[namespace] = (version, now)
        return version

    async def namespace_key(self, namespace: str, suffix: str, ctx: RequestContext | None = None) -> str:
        """Build ``<namespace>:v<version>:<suffix>`` with the current namespace version."""
        version = await self.namespace_version(namespace, ctx)
        return f"{namespace}:v{version}:{suffix}"

    async def invalidate_namespace(self, namespace: str, ctx: RequestContext | None = None) -> int:
        """
        Orphan every key built under ``namespace``; orphans expire by TTL.

        Returns:
            The new namespace version
        """
        current = self._versions.get(namespace, (0, 0.0))[0]
        version = current + 1
        redis = self._l2()
        if redis is not None:
            try:
                version = max(version, await redis.incr(self._version_key(namespace), timeout=self._timeout(ctx)))
            except CacheError as e:
                logger.warning("Namespace version bump failed, bumping locally",
                               stage=Stage.CACHE_INVALIDATE.value, namespace=namespace, error=e.message)
        self._versions[namespace] = (version, self._clock.monotonic())
        log_stage(logger, Stage.CACHE_INVALIDATE.value, "Namespace invalidated", namespace=namespace, version=version)
        return version

    # =========================================================================
    # Locks, filter seeding, introspection
    # =========================================================================

    async def acquire_lock(self, key: str, ttl: int | None = None, ctx: RequestContext | None = None) -> str | None:
        redis = self._l2()
        if redis is None:
            raise CacheConnectionError("distributed lock requires Redis", details={"key": key})
        return await DistributedLock(redis).acquire(key, ttl, timeout=self._timeout(ctx))

    async def release_lock(self, key: str, token: str, ctx: RequestContext | None = None) -> bool:
        redis = self._l2()
        if redis is None:
            raise CacheConnectionError("distributed lock requires Redis", details={"key": key})
        return await DistributedLock(redis).release(key, token, timeout=self._timeout(ctx))

    def seed_filter(self, keys: Iterable[str]) -> int:
        """Add known-existing keys to the membership filter. Returns how many were added."""
        if self._bloom is None:
            return 0
        count = 0
        for key in keys:
            self._bloom.add(key)
            count += 1
        return count

    def stats(self) -> dict[str, Any]:
        return {
            "l1": self._local.stats(),
            "l2_connected": self._l2() is not None,
            "bloom_items": len(self._bloom) if self._bloom is not None else None,
            "singleflight": self._flight.stats(),
        }

    async def health_check(self) -> dict[str, Any]:
        redis = self._l2()
        return {
            "l1": self._local.stats(),
            "l2": await redis.health_check() if redis is not None else {"status": "disabled"},
        }
