"""
Authentication Exceptions

The pipeline never tells a client *why* a credential was refused: missing,
malformed, expired and revoked tokens all render the same 401 body.

Author: System Architect
Date: 2025-12-08
"""

from src.core.config.constants import (
    CODE_DEBUG_DISABLED,
    CODE_DEBUG_UNAUTHORIZED,
    CODE_UNAUTHORIZED,
)
from src.core.exceptions.base import AppBaseError


class UnauthorizedError(AppBaseError):
    """Credential missing, invalid, expired or revoked."""

    status_code = 401
    error_code = CODE_UNAUTHORIZED
    public_message = "unauthorized"


class ForbiddenError(UnauthorizedError):
    """Credential valid but not permitted. Rendered like any other auth failure."""
    pass


class DebugAccessDeniedError(AppBaseError):
    status_code = 401
    error_code = CODE_DEBUG_UNAUTHORIZED
    public_message = "unauthorized: invalid or missing debug token"


class DebugEndpointsDisabledError(AppBaseError):
    status_code = 403
    error_code = CODE_DEBUG_DISABLED
    public_message = "debug endpoints disabled: DEBUG_AUTH_TOKEN not configured"
