"""
Request Lifecycle Exceptions

Author: System Architect
Date: 2025-12-08
"""

from src.core.config.constants import CODE_REQUEST_TIMEOUT
from src.core.exceptions.base import AppBaseError


class RequestTimeoutError(AppBaseError):
    """Raised when the request deadline has passed or the request was cancelled."""

    status_code = 408
    error_code = CODE_REQUEST_TIMEOUT
    public_message = "request timeout"
