"""
Clock Abstraction

Every time-dependent component (L1 TTLs, limiter refill, breaker windows,
sweepers) takes a clock so tests can drive time deterministically.

- ``now()``: wall-clock seconds, used where values are shared across
  processes (Redis sliding-window scores, timestamps in health payloads)
- ``monotonic()``: elapsed-time measurement inside a single process

Author: System Architect
Date: 2025-12-05
"""

import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float: ...

    def monotonic(self) -> float: ...


class SystemClock:
    """Clock backed by the operating system."""

    def now(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()


class ManualClock:
    """
    Clock that only moves when told to.

    Both readings advance together so code mixing wall and monotonic time
    sees a consistent timeline.
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self._wall = start
        self._mono = 0.0

    def now(self) -> float:
        return self._wall

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> None:
        self._wall += seconds
        self._mono += seconds


SYSTEM_CLOCK = SystemClock()
