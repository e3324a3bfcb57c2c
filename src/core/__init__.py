"""
Core Module

Foundational components: configuration, logging, exceptions, the clock,
the per-request context and the in-process resilience primitives.
"""

from .clock import SYSTEM_CLOCK, Clock, ManualClock, SystemClock
from .context import RequestContext, new_request_id
from .exceptions import (
    AppBaseError,
    BackendUnavailableError,
    CacheConnectionError,
    CacheError,
    CircuitBreakerOpenError,
    ConfigurationError,
    NotFoundError,
    RateLimitExceededError,
    RequestTimeoutError,
    UnauthorizedError,
    ValidationError,
)
from .logging import (
    clear_request_id,
    get_logger,
    get_request_id,
    log_stage,
    set_request_id,
    setup_logging,
)

__all__ = [
    "SYSTEM_CLOCK",
    "Clock",
    "ManualClock",
    "SystemClock",
    "RequestContext",
    "new_request_id",
    "setup_logging",
    "get_logger",
    "set_request_id",
    "get_request_id",
    "clear_request_id",
    "log_stage",
    "AppBaseError",
    "BackendUnavailableError",
    "ConfigurationError",
    "CacheError",
    "CacheConnectionError",
    "CircuitBreakerOpenError",
    "NotFoundError",
    "RateLimitExceededError",
    "RequestTimeoutError",
    "UnauthorizedError",
    "ValidationError",
]
