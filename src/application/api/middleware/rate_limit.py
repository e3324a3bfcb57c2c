"""
Rate Limit Middleware
=====================

Admits or rejects each request by client IP before any handler runs.

Two limiters are consulted by path:
- ``/api/v1/auth/*``: a strict limiter (10 per minute, burst 5) that blunts
  credential stuffing; a Redis token bucket shared by every replica when
  Redis is available, the local token bucket otherwise
- everything else: the service limiter, which is the distributed sliding
  window when Redis is available and the local token bucket otherwise

A rejected request gets ``429 {"code": 4029, "message": "too many requests"}``
and ``Retry-After``, whichever limiter rejected it.
"""

import inspect
from collections.abc import Callable
from typing import TYPE_CHECKING

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.application.api.responses import error_response
from src.core.config.constants import Stage
from src.core.exceptions import RateLimitExceededError
from src.core.logging.logger import get_logger
from src.core.resilience.rate_limiter import LocalRateLimiter

if TYPE_CHECKING:
    from src.application.lifecycle import ServiceContainer

logger = get_logger(__name__)


def client_identity(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, container: "ServiceContainer", exempt_paths: tuple[str, ...] = ()):
        super().__init__(app)
        self.container = container
        self.auth_prefix = container.settings.rate_limit.AUTH_RATE_LIMIT_PREFIX
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in self.exempt_paths:
            return await call_next(request)

        identity = client_identity(request)
        if path.startswith(self.auth_prefix):
            limiter = self.container.auth_limiter
        else:
            limiter = self.container.rate_limiter
        name = getattr(limiter, "name", "general")

        allowed = limiter.allow(identity)
        if inspect.isawaitable(allowed):
            allowed = await allowed

        if allowed:
            return await call_next(request)

        # Distributed limiters record their own rejections
        if isinstance(limiter, LocalRateLimiter):
            self.container.metrics.record_rate_limit_exceeded(name)
        ctx = getattr(request.state, "ctx", None)
        request_id = ctx.request_id if ctx is not None else None
        (ctx.logger if ctx is not None else logger).info(
            "Rate limit exceeded", stage=Stage.RATE_LIMITING.value, limiter=name, identity=identity, path=path
        )
        return error_response(
            RateLimitExceededError("rate limit exceeded", request_id=request_id),
            request_id=request_id,
            retry_after=limiter.retry_after(identity),
        )


def add_rate_limit_middleware(app, container: "ServiceContainer", exempt_paths: tuple[str, ...] = ()) -> None:
    app.add_middleware(RateLimitMiddleware, container=container, exempt_paths=exempt_paths)
    logger.info("Rate limit middleware registered", auth_prefix=container.settings.rate_limit.AUTH_RATE_LIMIT_PREFIX)
