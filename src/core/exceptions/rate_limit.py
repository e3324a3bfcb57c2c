"""
Rate Limiting Exceptions

All exceptions related to rate limiting operations

Author: System Architect
Date: 2025-12-08
"""

from src.core.config.constants import CODE_TOO_MANY_REQUESTS
from src.core.exceptions.base import AppBaseError


class RateLimitError(AppBaseError):
    """Base exception for rate limiting errors."""
    pass


class RateLimitExceededError(RateLimitError):
    """
    Raised when rate limit is exceeded.

    Rendered as 429 with a Retry-After header. Clients should back off.
    """

    status_code = 429
    error_code = CODE_TOO_MANY_REQUESTS
    public_message = "too many requests"
