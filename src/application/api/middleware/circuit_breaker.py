"""
Circuit Breaker Middleware
==========================

One breaker per route template (``/api/v1/users/{user_id}``), created on
first use from the service's breaker registry.

- open breaker: the request is rejected before the handler runs with
  ``503 {"code": 5003, "message": "service temporarily unavailable (circuit open)"}``
- any 5xx response, or an exception escaping the handler, counts as a failure
- everything else counts as a success

Health, metrics and debug routes are exempt so that probes keep working
while business routes are tripped.
"""

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.application.api.middleware.metrics import UNMATCHED_PATH, route_template
from src.application.api.responses import error_response
from src.core.config.constants import Stage
from src.core.exceptions import CircuitBreakerError
from src.core.logging.logger import get_logger

if TYPE_CHECKING:
    from src.application.lifecycle import ServiceContainer

logger = get_logger(__name__)

BREAKER_PREFIX = "route:"


class CircuitBreakerMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, container: "ServiceContainer", exempt_prefixes: tuple[str, ...] = ()):
        super().__init__(app)
        self.container = container
        self.exempt_prefixes = exempt_prefixes

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if self.exempt_prefixes and path.startswith(self.exempt_prefixes):
            return await call_next(request)
        template = route_template(request)
        if template == UNMATCHED_PATH:
            return await call_next(request)

        breaker = self.container.breakers.get(f"{BREAKER_PREFIX}{template}")
        ctx = getattr(request.state, "ctx", None)
        request_id = ctx.request_id if ctx is not None else None
        try:
            generation = breaker.before_request()
        except CircuitBreakerError as e:
            (ctx.logger if ctx is not None else logger).warning(
                "Circuit breaker rejected request", stage=Stage.CIRCUIT_BREAKER.value,
                breaker=breaker.name, state=breaker.state.value,
            )
            e.request_id = request_id
            return error_response(e, request_id=request_id)

        try:
            response = await call_next(request)
        except asyncio.CancelledError:
            breaker.after_request(generation, success=True)
            raise
        except Exception:
            breaker.after_request(generation, success=False)
            raise
        breaker.after_request(generation, success=response.status_code < 500)
        return response


def add_circuit_breaker_middleware(
    app, container: "ServiceContainer", exempt_prefixes: tuple[str, ...] = ()
) -> None:
    app.add_middleware(CircuitBreakerMiddleware, container=container, exempt_prefixes=exempt_prefixes)
    logger.info("Circuit breaker middleware registered")
