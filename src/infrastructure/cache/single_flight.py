"""
Single-Flight Guard

STAGE-D: Duplicate suppression

At most one computation per key runs at a time inside this process. Callers
arriving while it runs join it and receive the same value or the same
exception; the result is not cached once the computation finishes.

The computation runs in its own task, and each caller awaits it through
``asyncio.shield``. Cancelling one caller (for example its request timed
out) therefore does not cancel the computation the others are waiting on.

Author: System Architect
Date: 2025-12-13
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from src.core.logging.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class SingleFlight:
    """
    Usage:
        group = SingleFlight()
        value, shared = await group.do("user:42", lambda: load_user(42))
    """

    def __init__(self) -> None:
        self._calls: dict[str, asyncio.Task] = {}

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> tuple[T, bool]:
        """
        Run ``fn`` unless a call for ``key`` is already in flight.

        Returns:
            (value, shared): shared is True when this caller joined an existing call
        """
        task = self._calls.get(key)
        shared = task is not None
        if task is None:
            task = asyncio.get_running_loop().create_task(self._run(fn))
            self._calls[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        value = await asyncio.shield(task)
        return value, shared

    @staticmethod
    async def _run(fn: Callable[[], Awaitable[T]]) -> T:
        return await fn()

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
        # Mark the outcome retrieved even if every waiter was cancelled
        if not task.cancelled():
            task.exception()

    def forget(self, key: str) -> None:
        """Let the next caller for ``key`` start a fresh computation."""
        self._calls.pop(key, None)

    def forget_where(self, predicate: Callable[[str], bool]) -> int:
        """forget() every in-flight key satisfying ``predicate``. Returns how many."""
        doomed = [key for key in self._calls if predicate(key)]
        for key in doomed:
            del self._calls[key]
        return len(doomed)

    def in_flight(self) -> int:
        return len(self._calls)

    def stats(self) -> dict[str, Any]:
        return {"in_flight": len(self._calls)}
