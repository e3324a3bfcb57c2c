"""
Resilience Module - In-Process Protection

COMPONENTS:
===========
- LocalRateLimiter: per-identity token buckets with bounded memory
- GlobalRateLimiter: a single bucket shared by every caller
- RateLimiterRegistry: named limiters started and stopped together
- CircuitBreaker: closed / open / half-open breaker with generation counting
- CircuitBreakerRegistry: lazily created breakers sharing one config

Redis-backed limiters live in src.infrastructure.rate_limiting and fall back
to a LocalRateLimiter when Redis is unreachable.

Author: System Architect
Date: 2025-12-09
"""

from .circuit_breaker import BreakerConfig, CircuitBreaker, CircuitBreakerRegistry, Counts
from .rate_limiter import GlobalRateLimiter, LocalRateLimiter, RateLimiter, RateLimiterRegistry

__all__ = [
    "BreakerConfig",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "Counts",
    "GlobalRateLimiter",
    "LocalRateLimiter",
    "RateLimiter",
    "RateLimiterRegistry",
]
