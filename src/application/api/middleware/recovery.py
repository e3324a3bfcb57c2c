"""
Recovery Middleware
===================

The outermost stage of the pipeline. Anything that escapes the inner stages
(an unhandled exception in a handler or a middleware) is logged with the
request's full context and stack trace, and the client receives a generic
500 envelope ``{"code": 5000, "message": "internal server error"}``.

Internal details never reach the client. The stack trace only goes to the
log.

LIMITATION:
-----------
A 500 can only be sent while the response has not started. Once a handler
has begun streaming a body the status line is already on the wire; the
failure is then logged and the connection is closed by the server.
"""

import traceback
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.application.api.responses import error_response
from src.core.config.constants import HEADER_REQUEST_ID, Stage
from src.core.exceptions import InternalError
from src.core.logging.logger import get_logger

logger = get_logger(__name__)


class RecoveryMiddleware(BaseHTTPMiddleware):
    """Turn unhandled exceptions into a logged, generic 500 response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            ctx = getattr(request.state, "ctx", None)
            request_id = ctx.request_id if ctx is not None else request.headers.get(HEADER_REQUEST_ID)
            logger.error(
                "panic recovered",
                stage=Stage.REQUEST.value,
                error=f"{type(e).__name__}: {e}",
                method=request.method,
                path=request.url.path,
                query=request.url.query,
                client=request.client.host if request.client else None,
                user_agent=request.headers.get("user-agent"),
                request_id=request_id,
                stack=traceback.format_exc(),
            )
            return error_response(InternalError(str(e)), request_id=request_id)


def add_recovery_middleware(app) -> None:
    """
    Register the recovery middleware.

    Must be registered LAST so that it wraps every other stage.
    """
    app.add_middleware(RecoveryMiddleware)
    logger.info("Recovery middleware registered")
