"""
Cache Penetration Protection

STAGE-E: Negative cache, membership filter and distributed lock

Requests for records that do not exist would otherwise miss every tier and
hit the database each time. Two mechanisms stop that:

- NegativeCache: after a loader reports "not found", the key is marked under
  ``null:<key>`` for 60 seconds in L2 and mirrored in L1. Marking also drops
  any positive entry for the key.
- BloomFilter: a probabilistic set of keys known to exist. A negative answer
  is definitive (the key was never added), a positive one may be wrong at
  the configured false-positive rate.

DistributedLock is a SET NX lease under ``lock:<key>`` for callers that must
serialize work across processes.

Author: System Architect
Date: 2025-12-13
"""

import hashlib
import math
import threading
import uuid

from src.core.config.constants import (
    KEY_PREFIX_LOCK,
    KEY_PREFIX_NULL,
    LOCK_TTL,
    NEGATIVE_CACHE_TTL,
    NULL_SENTINEL,
)
from src.core.logging.logger import get_logger
from src.infrastructure.cache.local_cache import LocalCache
from src.infrastructure.cache.redis_client import RedisClient
from src.infrastructure.cache.scripts import RELEASE_LOCK_SCRIPT, SET_NEGATIVE_SCRIPT

logger = get_logger(__name__)


def null_key(key: str) -> str:
    return f"{KEY_PREFIX_NULL}{key}"


class NegativeCache:
    """
    Remembers keys whose records are known not to exist.

    L1 is always consulted first. L2 is optional; without it the marker is
    local to this process. Redis errors propagate to the caller.
    """

    def __init__(self, local: LocalCache, redis: RedisClient | None = None, ttl: int = NEGATIVE_CACHE_TTL):
        self._local = local
        self._redis = redis
        self._ttl = ttl

    @property
    def ttl(self) -> int:
        return self._ttl

    def _l2(self) -> RedisClient | None:
        if self._redis is not None and self._redis.is_connected:
            return self._redis
        return None

    async def is_negative(self, key: str, timeout: float | None = None) -> bool:
        marker = null_key(key)
        if self._local.get(marker) is not None:
            return True
        redis = self._l2()
        if redis is None:
            return False
        value, remaining = await redis.get_with_ttl(marker, timeout=timeout)
        if value is None:
            return False
        self._local.set(marker, NULL_SENTINEL, ttl=remaining or self._ttl, cost=len(marker))
        return True

    async def mark(self, key: str, timeout: float | None = None) -> None:
        """Record that ``key`` has no value and drop any positive entry for it."""
        marker = null_key(key)
        self._local.delete(key)
        self._local.set(marker, NULL_SENTINEL, ttl=self._ttl, cost=len(marker))
        redis = self._l2()
        if redis is not None:
            await redis.run_script(SET_NEGATIVE_SCRIPT, [marker, key], [NULL_SENTINEL, self._ttl], timeout=timeout)

    async def clear(self, *keys: str, timeout: float | None = None) -> None:
        markers = [null_key(k) for k in keys]
        for marker in markers:
            self._local.delete(marker)
        redis = self._l2()
        if redis is not None and markers:
            await redis.delete(*markers, timeout=timeout)


class BloomFilter:
    """
    Fixed-size Bloom filter with double hashing.

    Sized for ``expected_items`` at ``fp_rate``:
        m = -n ln(p) / (ln 2)^2 bits, k = (m / n) ln 2 hash functions

    Usage:
        bloom = BloomFilter(100_000, 0.01)
        bloom.add("user:42")
        bloom.might_exist("user:42")  # True
        bloom.might_exist("user:43")  # False (or True with probability ~1%)
    """

    def __init__(self, expected_items: int = 100_000, fp_rate: float = 0.01):
        if expected_items <= 0:
            raise ValueError("expected_items must be positive")
        if not 0.0 < fp_rate < 1.0:
            raise ValueError("fp_rate must be within (0, 1)")
        self._num_bits = max(8, math.ceil(-expected_items * math.log(fp_rate) / (math.log(2) ** 2)))
        self._num_hashes = max(1, round(self._num_bits / expected_items * math.log(2)))
        self._bits = bytearray((self._num_bits + 7) // 8)
        self._count = 0
        self._lock = threading.Lock()

    @property
    def num_bits(self) -> int:
        return self._num_bits

    @property
    def num_hashes(self) -> int:
        return self._num_hashes

    def _positions(self, key: str) -> list[int]:
        digest = hashlib.blake2b(key.encode("utf-8"), digest_size=16).digest()
        h1 = int.from_bytes(digest[:8], "little")
        h2 = int.from_bytes(digest[8:], "little") | 1
        return [(h1 + i * h2) % self._num_bits for i in range(self._num_hashes)]

    def add(self, key: str) -> None:
        positions = self._positions(key)
        with self._lock:
            for pos in positions:
                self._bits[pos >> 3] |= 1 << (pos & 7)
            self._count += 1

    def might_exist(self, key: str) -> bool:
        positions = self._positions(key)
        with self._lock:
            return all(self._bits[pos >> 3] & (1 << (pos & 7)) for pos in positions)

    __contains__ = might_exist

    def __len__(self) -> int:
        return self._count

    def clear(self) -> None:
        with self._lock:
            self._bits = bytearray(len(self._bits))
            self._count = 0


class DistributedLock:
    """SET NX lease under ``lock:<key>``, released only by its owner."""

    def __init__(self, redis: RedisClient, ttl: int = LOCK_TTL):
        self._redis = redis
        self._ttl = ttl

    async def acquire(self, key: str, ttl: int | None = None, timeout: float | None = None) -> str | None:
        """Return an owner token, or None if the lock is held elsewhere."""
        token = uuid.uuid4().hex
        acquired = await self._redis.set_nx(f"{KEY_PREFIX_LOCK}{key}", token, ttl or self._ttl, timeout=timeout)
        return token if acquired else None

    async def release(self, key: str, token: str, timeout: float | None = None) -> bool:
        released = await self._redis.run_script(
            RELEASE_LOCK_SCRIPT, [f"{KEY_PREFIX_LOCK}{key}"], [token], timeout=timeout
        )
        return bool(released)
