"""
Distributed Rate Limiters

STAGE-H: Cluster-wide admission

Two algorithms, each a single atomic Lua script:

- SlidingWindowLimiter: a sorted set ``ratelimit:<identity>`` holds one member
  per admitted request, scored by its timestamp. Members older than the window
  are trimmed before counting, so at most ``limit`` requests are admitted in
  any window-length span across all replicas.
- DistributedTokenBucket: a hash ``tokenbucket:<identity>`` holds
  {tokens, last}; the script refills, consumes and writes back, and the key
  expires after 60 s of inactivity.

Every distributed limiter is built with a local fallback limiter. When Redis
is unreachable the decision is delegated to it and a warning is logged: the
cluster-wide bound degrades to a per-replica bound, but it never disappears.

Author: System Architect
Date: 2025-12-13
"""

import uuid

from src.core.clock import SYSTEM_CLOCK, Clock
from src.core.config.constants import (
    KEY_PREFIX_RATE_LIMIT,
    KEY_PREFIX_TOKEN_BUCKET,
    TOKEN_BUCKET_KEY_TTL,
    Stage,
)
from src.core.exceptions import CacheError
from src.core.logging.logger import get_logger
from src.core.resilience.rate_limiter import LocalRateLimiter
from src.infrastructure.cache.redis_client import RedisClient
from src.infrastructure.cache.scripts import SLIDING_WINDOW_SCRIPT, TOKEN_BUCKET_SCRIPT
from src.infrastructure.monitoring.metrics_collector import MetricsCollector, get_metrics_collector

logger = get_logger(__name__)


class _DistributedLimiter:
    """Shared plumbing: Redis availability, fallback and metrics."""

    def __init__(
        self,
        redis: RedisClient | None,
        fallback: LocalRateLimiter,
        name: str,
        op_timeout: float,
        clock: Clock,
        metrics: MetricsCollector | None,
    ):
        self._redis = redis
        self._fallback = fallback
        self.name = name
        self._op_timeout = op_timeout
        self._clock = clock
        self._metrics = metrics or get_metrics_collector()
        self.fallback_count = 0

    @property
    def fallback(self) -> LocalRateLimiter:
        return self._fallback

    def _use_fallback(self, identity: str, reason: str) -> bool:
        self.fallback_count += 1
        self._metrics.record_rate_limit_fallback(self.name)
        logger.warning(
            "Distributed rate limiter unavailable, using local limiter",
            stage=Stage.DISTRIBUTED_RATE_LIMITING.value,
            limiter=self.name,
            identity=identity,
            error=reason,
        )
        allowed = self._fallback.allow(identity)
        if not allowed:
            self._metrics.record_rate_limit_exceeded(self.name)
        return allowed

    async def _evaluate(self, identity: str, script: str, key: str, args: list) -> bool:
        if self._redis is None or not self._redis.is_connected:
            return self._use_fallback(identity, "redis not connected")
        try:
            result = await self._redis.run_script(script, [key], args, timeout=self._op_timeout)
        except CacheError as e:
            return self._use_fallback(identity, e.message)
        allowed = int(result[0]) == 1
        if not allowed:
            self._metrics.record_rate_limit_exceeded(self.name)
        return allowed

    def retry_after(self, identity: str) -> int:
        return 1


class SlidingWindowLimiter(_DistributedLimiter):
    """
    At most ``limit`` admissions per ``window`` seconds per identity, cluster-wide.

    Usage:
        limiter = SlidingWindowLimiter(redis, limit=100, window=1.0, fallback=local)
        if not await limiter.allow(client_ip):
            ...
    """

    def __init__(
        self,
        redis: RedisClient | None,
        limit: int,
        window: float = 1.0,
        *,
        fallback: LocalRateLimiter,
        clock: Clock = SYSTEM_CLOCK,
        metrics: MetricsCollector | None = None,
        name: str = "sliding_window",
        op_timeout: float = 1.0,
    ):
        super().__init__(redis, fallback, name, op_timeout, clock, metrics)
        if limit <= 0 or window <= 0:
            raise ValueError("limit and window must be positive")
        self.limit = limit
        self.window = window

    async def allow(self, identity: str) -> bool:
        now_us = int(self._clock.now() * 1_000_000)
        window_us = int(self.window * 1_000_000)
        member = f"{now_us}-{uuid.uuid4().hex[:12]}"
        ttl_ms = int(self.window * 2000)
        return await self._evaluate(
            identity,
            SLIDING_WINDOW_SCRIPT,
            f"{KEY_PREFIX_RATE_LIMIT}{identity}",
            [now_us, window_us, self.limit, member, ttl_ms],
        )

    def retry_after(self, identity: str) -> int:
        return max(1, int(self.window + 0.999))


class DistributedTokenBucket(_DistributedLimiter):
    """
    Token bucket with shared state: ``rate`` tokens/s, at most ``capacity`` banked.
    """

    def __init__(
        self,
        redis: RedisClient | None,
        rate: float,
        capacity: int,
        *,
        fallback: LocalRateLimiter,
        clock: Clock = SYSTEM_CLOCK,
        metrics: MetricsCollector | None = None,
        name: str = "token_bucket",
        op_timeout: float = 1.0,
    ):
        super().__init__(redis, fallback, name, op_timeout, clock, metrics)
        if rate <= 0 or capacity <= 0:
            raise ValueError("rate and capacity must be positive")
        self.rate = rate
        self.capacity = capacity

    async def allow(self, identity: str) -> bool:
        return await self._evaluate(
            identity,
            TOKEN_BUCKET_SCRIPT,
            f"{KEY_PREFIX_TOKEN_BUCKET}{identity}",
            [self.rate, self.capacity, repr(self._clock.now()), 1, TOKEN_BUCKET_KEY_TTL],
        )

    def retry_after(self, identity: str) -> int:
        return max(1, int(1 / self.rate + 0.999))
