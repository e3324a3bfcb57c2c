"""
Circuit Breaker Exceptions

All exceptions related to circuit breaker operations

Author: System Architect
Date: 2025-12-08
"""

from src.core.config.constants import CODE_SERVICE_UNAVAILABLE
from src.core.exceptions.base import AppBaseError


class CircuitBreakerError(AppBaseError):
    """Base exception for circuit breaker errors."""

    status_code = 503
    error_code = CODE_SERVICE_UNAVAILABLE
    public_message = "service temporarily unavailable (circuit open)"


class CircuitBreakerOpenError(CircuitBreakerError):
    """
    Raised when circuit breaker is open (fail fast).

    The circuit moves to half-open once its timeout elapses, at which point
    a bounded number of probe requests are let through.
    """
    pass


class CircuitBreakerHalfOpenLimitError(CircuitBreakerOpenError):
    """Raised when a half-open breaker has already admitted its probe quota."""
    pass
