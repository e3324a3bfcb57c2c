"""
Request ID Middleware
=====================

Adopts the caller's ``X-Request-ID`` or mints a UUID4, then:

1. creates the RequestContext for the request (``request.state.ctx``),
   whose logger is bound to the ID
2. stamps the ID into the logging context variable, so records emitted by
   code without access to the context still carry it
3. echoes the ID in the ``X-Request-ID`` response header

Every stage after this one can rely on ``request.state.ctx`` existing.
"""

from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.core.clock import SYSTEM_CLOCK, Clock
from src.core.config.constants import HEADER_REQUEST_ID
from src.core.context import RequestContext, new_request_id
from src.core.logging.logger import clear_request_id, get_logger, set_request_id

logger = get_logger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, clock: Clock = SYSTEM_CLOCK):
        super().__init__(app)
        self.clock = clock

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(HEADER_REQUEST_ID, "").strip() or new_request_id()
        request.state.ctx = RequestContext(request_id=request_id, clock=self.clock)
        set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_id()
        response.headers[HEADER_REQUEST_ID] = request_id
        return response


def add_request_id_middleware(app, clock: Clock = SYSTEM_CLOCK) -> None:
    app.add_middleware(RequestIDMiddleware, clock=clock)
    logger.info("Request ID middleware registered")
