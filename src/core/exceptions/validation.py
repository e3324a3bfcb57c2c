"""
Validation Exceptions

Author: System Architect
Date: 2025-12-08
"""

from src.core.config.constants import CODE_INVALID_PARAMS
from src.core.exceptions.base import AppBaseError


class ValidationError(AppBaseError):
    """Raised when request parameters are invalid."""

    status_code = 400
    error_code = CODE_INVALID_PARAMS
    public_message = "invalid parameters"
