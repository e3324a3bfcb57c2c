"""
Backend Exceptions

Failures of required backing services (MySQL, Redis at startup).

Author: System Architect
Date: 2025-12-08
"""

from src.core.config.constants import CODE_BACKEND_UNAVAILABLE
from src.core.exceptions.base import AppBaseError


class BackendUnavailableError(AppBaseError):
    status_code = 503
    error_code = CODE_BACKEND_UNAVAILABLE
    public_message = "backend unavailable"


class DatabaseError(BackendUnavailableError):
    """Raised when the MySQL pool cannot be opened or pinged."""
    pass
