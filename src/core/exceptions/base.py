"""
Base Exception Class

This module contains the base exception class that all other exceptions
inherit from. Specialized exceptions live in their themed modules.

Every exception carries the HTTP status and public error code it maps to,
so a single handler can render the JSON envelope {"code", "message"}.

Author: System Architect
Date: 2025-12-08
"""

from typing import Any

from src.core.config.constants import CODE_INTERNAL


class AppBaseError(Exception):
    """
    Base exception for all application errors.

    Attributes:
        message: Error message (internal; may carry detail)
        request_id: Request ID for correlation (if available)
        details: Additional error details (dict)
        status_code: HTTP status the error maps to
        error_code: Public error code for the JSON envelope
        public_message: Message exposed to clients

    Example:
        raise CacheKeyError(
            "Failed to GET key",
            request_id="abc-123",
            details={"key": "user:42"}
        )
    """

    status_code: int = 500
    error_code: int = CODE_INTERNAL
    public_message: str = "internal server error"

    def __init__(
        self, message: str, request_id: str | None = None, details: dict[str, Any] | None = None
    ):
        self.message = message
        self.request_id = request_id
        self.details = (details or {}).copy()  # Create a copy to prevent external modification
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for logging.

        Returns:
            Dict with error_type, message, request_id, and details
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "request_id": self.request_id,
            "details": self.details,
        }

    def to_envelope(self) -> dict[str, Any]:
        """Public JSON body. Never includes internal details."""
        return {"code": self.error_code, "message": self.public_message}

    def with_suggestion(self, suggestion: str) -> "AppBaseError":
        """
        Add a suggestion to help users fix the error.

        Returns:
            Self (for method chaining)
        """
        self.details["suggestion"] = suggestion
        return self

    def with_context(self, **context) -> "AppBaseError":
        """
        Add additional context to the error details.

        Returns:
            Self (for method chaining)
        """
        self.details.update(context)
        return self

    def __repr__(self) -> str:
        """
        Return detailed string representation for debugging.

        Example:
            >>> error = CacheTimeoutError("Timeout", request_id="abc-123", details={"timeout": 1})
            >>> repr(error)
            "CacheTimeoutError(message='Timeout', request_id='abc-123', details={'timeout': 1})"
        """
        details_str = f", details={self.details}" if self.details else ""
        request_id_str = f", request_id='{self.request_id}'" if self.request_id else ""
        return f"{self.__class__.__name__}(message='{self.message}'{request_id_str}{details_str})"

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        message: str | None = None,
        request_id: str | None = None,
        **details
    ) -> "AppBaseError":
        """
        Create an application error from another exception.

        Useful for wrapping third-party exceptions with additional context.

        Example:
            >>> try:
            ...     await redis.ping()
            ... except redis.ConnectionError as e:
            ...     raise CacheConnectionError.from_exception(e, host="localhost", port=6379)
        """
        error_message = message or str(exc)
        error_details = {
            "original_error": exc.__class__.__name__,
            "original_message": str(exc),
            **details
        }
        return cls(error_message, request_id=request_id, details=error_details)


class ConfigurationError(AppBaseError):
    """Raised when configuration is invalid or missing."""
    pass


class InternalError(AppBaseError):
    """Unexpected failure rendered as a generic 500."""
    pass
