#!/usr/bin/env python3
"""
L1 In-Process Cache with Frequency-Based Admission

STAGE-B: L1 cache

A per-process, cost-bounded cache. Unlike a plain LRU, a new entry does not
automatically push out an old one: when the cost budget is full, the
candidate competes against a victim sampled from the least-recently-used
entries, and is only admitted if it has been requested at least as often.
One-off keys (scans, crawlers) therefore cannot flush the hot set.

Architecture:
    LocalCache
        ├── FrequencySketch (count-min, 4 rows of 4-bit-saturating counters,
        │                    halved every 10 x width increments)
        ├── read buffer     (keys read since the last drain; drained into
        │                    the sketch every BUFFER_ITEMS reads)
        └── OrderedDict     (entries in recency order, each with cost and expiry)

Invariants:
    - sum of admitted entry costs never exceeds max_cost
    - an expired entry is never returned
    - an entry costing more than max_cost is never admitted

Thread-safety: one threading.Lock guards every structure. Reads are recorded
into the buffer under the same lock and the sketch is only updated in batches,
so the hot read path stays a dict lookup plus an append.

Author: System Architect
Date: 2025-12-13
"""

import asyncio
import sys
import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import orjson

from src.core.clock import SYSTEM_CLOCK, Clock
from src.core.config.constants import L1_SAMPLE_SIZE, SKETCH_COUNTER_MAX, SKETCH_DEPTH
from src.core.logging.logger import get_logger

logger = get_logger(__name__)

_MASK64 = (1 << 64) - 1
_HALVE = bytes(i >> 1 for i in range(256))


def _next_power_of_two(n: int) -> int:
    return 1 << max(0, (n - 1).bit_length())


class FrequencySketch:
    """
    Count-min sketch estimating how often each key was requested recently.

    Counters saturate at 15. After ``10 x width`` increments every counter is
    halved, so popularity decays and yesterday's hot keys eventually lose
    their advantage.
    """

    def __init__(self, num_counters: int):
        self._width = _next_power_of_two(max(16, num_counters))
        self._mask = self._width - 1
        self._rows = [bytearray(self._width) for _ in range(SKETCH_DEPTH)]
        self._reset_at = 10 * self._width
        self._additions = 0

    def _indexes(self, key: str) -> list[int]:
        h1 = hash(key) & _MASK64
        h2 = ((h1 >> 32) | 1) & _MASK64
        return [(h1 + i * h2) & self._mask for i in range(SKETCH_DEPTH)]

    def increment(self, key: str) -> None:
        for row, idx in zip(self._rows, self._indexes(key)):
            if row[idx] < SKETCH_COUNTER_MAX:
                row[idx] += 1
        self._additions += 1
        if self._additions >= self._reset_at:
            self.reset()

    def estimate(self, key: str) -> int:
        return min(row[idx] for row, idx in zip(self._rows, self._indexes(key)))

    def reset(self) -> None:
        """Halve every counter (aging)."""
        self._rows = [bytearray(row.translate(_HALVE)) for row in self._rows]
        self._additions = 0

    def clear(self) -> None:
        for row in self._rows:
            row[:] = bytes(self._width)
        self._additions = 0


@dataclass
class _Entry:
    value: Any
    cost: int
    expires_at: float | None


def estimate_cost(value: Any) -> int:
    """Approximate size in bytes of a cached value."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return len(value)
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    try:
        return len(orjson.dumps(value, default=str))
    except TypeError:
        return sys.getsizeof(value)


class LocalCache:
    """
    Cost-bounded in-process cache with TinyLFU-style admission and TTL.

    Usage:
        cache = LocalCache(max_cost=64 * 1024 * 1024)
        cache.set("user:42", user, ttl=60)
        user = cache.get("user:42")
    """

    def __init__(
        self,
        max_cost: int = 64 * 1024 * 1024,
        num_counters: int = 1_000_000,
        buffer_items: int = 64,
        cleanup_interval: float = 30.0,
        clock: Clock = SYSTEM_CLOCK,
    ):
        if max_cost <= 0:
            raise ValueError("max_cost must be positive")
        self._max_cost = max_cost
        self._buffer_items = max(1, buffer_items)
        self._cleanup_interval = cleanup_interval
        self._clock = clock

        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._sketch = FrequencySketch(num_counters)
        self._read_buffer: list[str] = []
        self._used_cost = 0
        self._lock = threading.Lock()

        self._cleaner: asyncio.Task | None = None
        self._closed = False

        # Stats
        self._hits = 0
        self._misses = 0
        self._admitted = 0
        self._rejected = 0
        self._evicted = 0
        self._expired = 0

    # =========================================================================
    # Read path
    # =========================================================================

    def get(self, key: str) -> Any | None:
        """Return the live value for ``key`` or None."""
        with self._lock:
            self._record_read(key)
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._is_expired(entry):
                self._remove(key, entry)
                self._expired += 1
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def ttl(self, key: str) -> float | None:
        """Remaining lifetime in seconds; None when absent or unbounded."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expires_at is None or self._is_expired(entry):
                return None
            return entry.expires_at - self._clock.monotonic()

    def _record_read(self, key: str) -> None:
        self._read_buffer.append(key)
        if len(self._read_buffer) >= self._buffer_items:
            self._drain_reads()

    def _drain_reads(self) -> None:
        for key in self._read_buffer:
            self._sketch.increment(key)
        self._read_buffer.clear()

    def flush_reads(self) -> None:
        """Apply buffered reads to the frequency sketch now."""
        with self._lock:
            self._drain_reads()

    # =========================================================================
    # Write path
    # =========================================================================

    def set(self, key: str, value: Any, ttl: float | None = None, cost: int | None = None) -> bool:
        """
        Offer an entry to the cache.

        Args:
            key: Cache key
            value: Value to store (kept by reference)
            ttl: Lifetime in seconds; None or <= 0 means no expiry
            cost: Cost in bytes; estimated from the value when omitted

        Returns:
            True if the entry is now cached, False if admission rejected it
        """
        if cost is None:
            cost = estimate_cost(value)
        expires_at = self._clock.monotonic() + ttl if ttl and ttl > 0 else None

        with self._lock:
            if self._closed:
                return False
            if cost > self._max_cost:
                self._rejected += 1
                return False

            existing = self._entries.get(key)
            if existing is not None:
                self._used_cost += cost - existing.cost
                existing.value, existing.cost, existing.expires_at = value, cost, expires_at
                self._entries.move_to_end(key)
                self._evict_until_fits(0, protect=key)
                return True

            if not self._make_room(key, cost):
                self._rejected += 1
                return False

            self._entries[key] = _Entry(value, cost, expires_at)
            self._used_cost += cost
            self._admitted += 1
            return True

    def _make_room(self, key: str, cost: int) -> bool:
        candidate_freq = None
        while self._used_cost + cost > self._max_cost:
            victim_key, victim = self._sample_victim()
            if victim_key is None:
                return False
            if self._is_expired(victim):
                self._remove(victim_key, victim)
                self._expired += 1
                continue
            if candidate_freq is None:
                candidate_freq = self._sketch.estimate(key)
            if candidate_freq < self._sketch.estimate(victim_key):
                return False
            self._remove(victim_key, victim)
            self._evicted += 1
        return True

    def _sample_victim(self, protect: str | None = None) -> tuple[str | None, _Entry | None]:
        """
        Least frequently used among the L1_SAMPLE_SIZE least recently used entries.

        An expired entry in the sample is returned immediately.
        """
        best_key, best_entry, best_freq = None, None, None
        seen = 0
        for key, entry in self._entries.items():
            if key == protect:
                continue
            if self._is_expired(entry):
                return key, entry
            freq = self._sketch.estimate(key)
            if best_freq is None or freq < best_freq:
                best_key, best_entry, best_freq = key, entry, freq
            seen += 1
            if seen >= L1_SAMPLE_SIZE:
                break
        return best_key, best_entry

    def _evict_until_fits(self, extra: int, protect: str) -> None:
        while self._used_cost + extra > self._max_cost:
            victim_key, victim = self._sample_victim(protect=protect)
            if victim_key is None:
                break
            self._remove(victim_key, victim)
            self._evicted += 1

    def delete(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            self._remove(key, entry)
            return True

    def delete_where(self, predicate: Callable[[str], bool]) -> int:
        """Remove every entry whose key satisfies ``predicate``."""
        with self._lock:
            doomed = [(k, e) for k, e in self._entries.items() if predicate(k)]
            for key, entry in doomed:
                self._remove(key, entry)
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._read_buffer.clear()
            self._sketch.clear()
            self._used_cost = 0

    def _remove(self, key: str, entry: _Entry) -> None:
        del self._entries[key]
        self._used_cost -= entry.cost

    # =========================================================================
    # Expiry
    # =========================================================================

    def _is_expired(self, entry: _Entry) -> bool:
        return entry.expires_at is not None and entry.expires_at <= self._clock.monotonic()

    def _purge_expired_locked(self) -> int:
        expired = [(k, e) for k, e in self._entries.items() if self._is_expired(e)]
        for key, entry in expired:
            self._remove(key, entry)
        self._expired += len(expired)
        return len(expired)

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            return self._purge_expired_locked()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            removed = self.purge_expired()
            if removed:
                logger.debug("L1 expired entries purged", stage="B.2", removed=removed)

    def start(self) -> None:
        """Start the background expiry sweeper on the running loop."""
        if self._cleaner is None or self._cleaner.done():
            self._cleaner = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def close(self) -> None:
        """Stop the sweeper and release every entry."""
        if self._cleaner is not None:
            self._cleaner.cancel()
            try:
                await self._cleaner
            except asyncio.CancelledError:
                pass
            self._cleaner = None
        with self._lock:
            self._closed = True
            self._entries.clear()
            self._read_buffer.clear()
            self._used_cost = 0
        logger.info("L1 cache closed", stage="B.3")

    # =========================================================================
    # Introspection
    # =========================================================================

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not self._is_expired(entry)

    @property
    def used_cost(self) -> int:
        return self._used_cost

    @property
    def max_cost(self) -> int:
        return self._max_cost

    def stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "size": len(self._entries),
            "used_cost": self._used_cost,
            "max_cost": self._max_cost,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total else 0.0,
            "admitted": self._admitted,
            "rejected": self._rejected,
            "evicted": self._evicted,
            "expired": self._expired,
        }
