"""
Cache-Related Exceptions

All exceptions related to caching operations (Redis, in-process cache)
and to the "record absent" outcome a loader reports to the cache.

Author: System Architect
Date: 2025-12-08
"""

from src.core.config.constants import CODE_NOT_FOUND
from src.core.exceptions.base import AppBaseError


class CacheError(AppBaseError):
    """Base exception for cache-related errors."""
    pass


class CacheConnectionError(CacheError):
    """
    Raised when unable to connect to cache (Redis).

    Common causes:
    - Redis server is down
    - Network connectivity issues
    - Pool exhausted past the pool timeout
    """
    pass


class CacheKeyError(CacheError):
    """Raised when a cache key operation fails for a reason other than transport."""
    pass


class CacheTimeoutError(CacheConnectionError):
    """Raised when a Redis call exceeds its deadline. Retryable."""
    pass


class NotFoundError(AppBaseError):
    """
    The requested record does not exist.

    Loaders raise this to tell the multi-level cache to store a negative entry.
    """

    status_code = 404
    error_code = CODE_NOT_FOUND
    public_message = "not found"


class CacheMembershipRejectedError(NotFoundError):
    """The membership filter proved the key was never stored."""
    pass
