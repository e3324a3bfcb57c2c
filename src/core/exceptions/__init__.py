"""
Exception Module

Structured exception hierarchy for the resilient API core.
Exceptions are organized by theme; each one carries the HTTP status and
public error code it renders as.

Module Structure:
-----------------
- **base.py**: AppBaseError base class + ConfigurationError, InternalError
- **auth.py**: Authentication and debug-surface exceptions
- **backend.py**: Required backing service failures
- **cache.py**: Cache exceptions and NotFoundError
- **circuit_breaker.py**: Circuit breaker exceptions
- **rate_limit.py**: Rate limiting exceptions
- **request.py**: Request timeout
- **validation.py**: Invalid parameters

Usage:
------
```python
from src.core.exceptions import CacheConnectionError, NotFoundError
from src.core.exceptions.circuit_breaker import CircuitBreakerOpenError
```

Author: System Architect
Date: 2025-12-08
"""

from src.core.exceptions.auth import (
    DebugAccessDeniedError,
    DebugEndpointsDisabledError,
    ForbiddenError,
    UnauthorizedError,
)
from src.core.exceptions.backend import BackendUnavailableError, DatabaseError
from src.core.exceptions.base import AppBaseError, ConfigurationError, InternalError
from src.core.exceptions.cache import (
    CacheConnectionError,
    CacheError,
    CacheKeyError,
    CacheMembershipRejectedError,
    CacheTimeoutError,
    NotFoundError,
)
from src.core.exceptions.circuit_breaker import (
    CircuitBreakerError,
    CircuitBreakerHalfOpenLimitError,
    CircuitBreakerOpenError,
)
from src.core.exceptions.rate_limit import RateLimitError, RateLimitExceededError
from src.core.exceptions.request import RequestTimeoutError
from src.core.exceptions.validation import ValidationError

__all__ = [
    "AppBaseError",
    "ConfigurationError",
    "InternalError",
    "UnauthorizedError",
    "ForbiddenError",
    "DebugAccessDeniedError",
    "DebugEndpointsDisabledError",
    "BackendUnavailableError",
    "DatabaseError",
    "CacheError",
    "CacheConnectionError",
    "CacheKeyError",
    "CacheTimeoutError",
    "NotFoundError",
    "CacheMembershipRejectedError",
    "CircuitBreakerError",
    "CircuitBreakerOpenError",
    "CircuitBreakerHalfOpenLimitError",
    "RateLimitError",
    "RateLimitExceededError",
    "RequestTimeoutError",
    "ValidationError",
]
