"""
Request Context

A RequestContext is created once per request by the request-ID middleware
and passed explicitly to anything on the request path that can block:
cache reads, loaders, limiter calls, health pings. It carries:

- request_id: correlation ID echoed in ``X-Request-ID``
- deadline: monotonic instant after which work should stop (None = no deadline)
- identity: authenticated subject, set by the auth dependency
- logger: structlog logger already bound to the request ID
- cancellation: an asyncio.Event set by the timeout stage

Author: System Architect
Date: 2025-12-05
"""

import asyncio
import uuid
from dataclasses import dataclass, field

import structlog

from src.core.clock import SYSTEM_CLOCK, Clock
from src.core.exceptions.request import RequestTimeoutError
from src.core.logging import get_logger


def new_request_id() -> str:
    """Generate a globally unique request ID (UUID4 text form)."""
    return str(uuid.uuid4())


@dataclass
class RequestContext:
    request_id: str = field(default_factory=new_request_id)
    deadline: float | None = None
    identity: str | None = None
    clock: Clock = field(default=SYSTEM_CLOCK, repr=False)
    logger: structlog.stdlib.BoundLogger | None = field(default=None, repr=False)
    cancelled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger("request").bind(request_id=self.request_id)

    @classmethod
    def background(cls, clock: Clock = SYSTEM_CLOCK) -> "RequestContext":
        """Context for work that does not belong to a request (startup, collectors)."""
        return cls(request_id=f"bg-{new_request_id()}", clock=clock)

    def with_timeout(self, seconds: float) -> "RequestContext":
        """Tighten the deadline to at most ``seconds`` from now (never loosens it)."""
        candidate = self.clock.monotonic() + seconds
        if self.deadline is None or candidate < self.deadline:
            self.deadline = candidate
        return self

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self.clock.monotonic())

    def bounded(self, ceiling: float) -> float:
        """The smaller of ``ceiling`` and the time remaining."""
        remaining = self.remaining()
        return ceiling if remaining is None else min(ceiling, remaining)

    @property
    def expired(self) -> bool:
        if self.cancelled.is_set():
            return True
        return self.deadline is not None and self.clock.monotonic() >= self.deadline

    def cancel(self) -> None:
        self.cancelled.set()

    def check_deadline(self) -> None:
        """Raise RequestTimeoutError if the request should stop."""
        if self.expired:
            raise RequestTimeoutError(
                "request deadline exceeded",
                request_id=self.request_id,
                details={"cancelled": self.cancelled.is_set()},
            )
