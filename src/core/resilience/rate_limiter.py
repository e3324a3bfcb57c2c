"""
Local Rate Limiter

STAGE-G: Per-identity token buckets

Each identity (client IP, user ID, "global") owns a token bucket that starts
full with ``burst`` tokens and refills at ``rate`` tokens per second. A call
is admitted when a whole token is available.

Memory is bounded two ways:
- at most ``max_identities`` buckets; admitting a new identity when full
  evicts the least recently used one
- a background sweeper drops buckets idle for longer than ``ttl``

An evicted identity that comes back starts again with a full bucket.

Every limiter created through a RateLimiterRegistry can be stopped in one
call during shutdown.
"""

import asyncio
import math
import threading
from collections import OrderedDict
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Protocol

from src.core.clock import SYSTEM_CLOCK, Clock
from src.core.config.constants import Stage
from src.core.logging.logger import get_logger

logger = get_logger(__name__)

GLOBAL_IDENTITY = "global"


class RateLimiter(Protocol):
    """Anything that can decide whether an identity may proceed."""

    def allow(self, identity: str) -> bool | Awaitable[bool]: ...

    def retry_after(self, identity: str) -> int: ...


@dataclass
class _Bucket:
    tokens: float
    updated_at: float
    last_seen: float


class LocalRateLimiter:
    """
    In-process token bucket limiter keyed by identity.

    Usage:
        limiter = LocalRateLimiter(rate=100, burst=200)
        limiter.start()            # background sweeper
        if not limiter.allow(client_ip):
            raise RateLimitExceededError(...)
        await limiter.stop()
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        max_identities: int = 10_000,
        ttl: float = 600.0,
        cleanup_interval: float = 60.0,
        clock: Clock = SYSTEM_CLOCK,
        name: str = "local",
    ):
        if rate <= 0 or burst <= 0:
            raise ValueError("rate and burst must be positive")
        if max_identities <= 0:
            raise ValueError("max_identities must be positive")
        self.name = name
        self.rate = rate
        self.burst = burst
        self._max_identities = max_identities
        self._ttl = ttl
        self._cleanup_interval = cleanup_interval
        self._clock = clock
        self._buckets: OrderedDict[str, _Bucket] = OrderedDict()
        self._lock = threading.Lock()
        self._sweeper: asyncio.Task | None = None
        self._evictions = 0

    def _refill(self, bucket: _Bucket, now: float) -> None:
        elapsed = max(0.0, now - bucket.updated_at)
        bucket.tokens = min(float(self.burst), bucket.tokens + elapsed * self.rate)
        bucket.updated_at = now

    def _bucket_for(self, identity: str, now: float) -> _Bucket:
        bucket = self._buckets.get(identity)
        if bucket is not None:
            self._buckets.move_to_end(identity)
            return bucket
        while len(self._buckets) >= self._max_identities:
            self._buckets.popitem(last=False)
            self._evictions += 1
        bucket = _Bucket(tokens=float(self.burst), updated_at=now, last_seen=now)
        self._buckets[identity] = bucket
        return bucket

    def allow(self, identity: str) -> bool:
        """Consume one token for ``identity``; False if none is available."""
        with self._lock:
            now = self._clock.monotonic()
            bucket = self._bucket_for(identity, now)
            self._refill(bucket, now)
            bucket.last_seen = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True
            return False

    def retry_after(self, identity: str) -> int:
        """Whole seconds until ``identity`` has a token again (at least 1)."""
        with self._lock:
            bucket = self._buckets.get(identity)
            if bucket is None:
                return 1
            self._refill(bucket, self._clock.monotonic())
            missing = max(0.0, 1.0 - bucket.tokens)
            return max(1, math.ceil(missing / self.rate))

    def size(self) -> int:
        """Number of identities currently tracked."""
        with self._lock:
            return len(self._buckets)

    def sweep(self) -> int:
        """
        Drop buckets idle for longer than the TTL. Returns the number dropped.

        Buckets are kept in last-seen order, so the walk starts at the least
        recently used end and stops at the first bucket still inside the TTL.
        """
        removed = 0
        with self._lock:
            cutoff = self._clock.monotonic() - self._ttl
            while self._buckets:
                identity, bucket = next(iter(self._buckets.items()))
                if bucket.last_seen >= cutoff:
                    break
                del self._buckets[identity]
                removed += 1
        if removed:
            logger.debug("Idle rate limit buckets swept", stage=Stage.RATE_LIMITING.value,
                         limiter=self.name, removed=removed)
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            self.sweep()

    def start(self) -> None:
        """Start the background sweeper on the running loop (idempotent)."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    def cancel(self) -> asyncio.Task | None:
        """Cancel the sweeper without waiting for it. Returns the cancelled task."""
        task, self._sweeper = self._sweeper, None
        if task is not None:
            task.cancel()
        return task

    async def stop(self) -> None:
        """Stop the sweeper and wait for it to finish (idempotent)."""
        task = self.cancel()
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def stats(self) -> dict[str, float | int | str]:
        return {
            "name": self.name,
            "rate": self.rate,
            "burst": self.burst,
            "identities": self.size(),
            "max_identities": self._max_identities,
            "evictions": self._evictions,
        }


class GlobalRateLimiter:
    """One bucket shared by every caller: ``allow()`` ignores the identity."""

    def __init__(self, limiter: LocalRateLimiter):
        self._limiter = limiter
        self.name = limiter.name

    def allow(self, identity: str = GLOBAL_IDENTITY) -> bool:
        return self._limiter.allow(GLOBAL_IDENTITY)

    def retry_after(self, identity: str = GLOBAL_IDENTITY) -> int:
        return self._limiter.retry_after(GLOBAL_IDENTITY)


class RateLimiterRegistry:
    """Tracks local limiters so shutdown can stop every sweeper at once."""

    def __init__(self, clock: Clock = SYSTEM_CLOCK):
        self._clock = clock
        self._limiters: dict[str, LocalRateLimiter] = {}
        self._lock = threading.Lock()

    def create(
        self,
        name: str,
        rate: float,
        burst: int,
        max_identities: int = 10_000,
        ttl: float = 600.0,
        cleanup_interval: float = 60.0,
    ) -> LocalRateLimiter:
        limiter = LocalRateLimiter(
            rate, burst, max_identities, ttl, cleanup_interval, clock=self._clock, name=name
        )
        return self.register(name, limiter)

    def create_global(self, name: str, rate: float, burst: int) -> GlobalRateLimiter:
        return GlobalRateLimiter(self.create(name, rate, burst, max_identities=1))

    def register(self, name: str, limiter: LocalRateLimiter) -> LocalRateLimiter:
        with self._lock:
            previous = self._limiters.get(name)
            self._limiters[name] = limiter
        # The replaced sweeper is cancelled here; stop_all() no longer sees it
        if previous is not None and previous is not limiter:
            previous.cancel()
        return limiter

    def get(self, name: str) -> LocalRateLimiter | None:
        return self._limiters.get(name)

    def start_all(self) -> None:
        for limiter in list(self._limiters.values()):
            limiter.start()

    async def stop_all(self) -> None:
        with self._lock:
            limiters = list(self._limiters.values())
        for limiter in limiters:
            await limiter.stop()
        logger.info("Rate limiters stopped", stage=Stage.SHUTDOWN.value, count=len(limiters))

    def __len__(self) -> int:
        return len(self._limiters)

    def __iter__(self):
        return iter(list(self._limiters.values()))
