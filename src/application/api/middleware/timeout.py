"""
Timeout Middleware
==================

Attaches a deadline to the request context and races the inner stages
against it.

HOW IT WORKS:
-------------
1. ``ctx.with_timeout(seconds)`` tightens the request deadline. Everything
   downstream that receives the context (cache reads, pings, loaders) bounds
   its own waits by ``ctx.remaining()``.
2. The inner stages run in their own task.
3. If the deadline passes first, the context is marked cancelled, the task
   is cancelled, and the client gets
   ``408 {"code": 4008, "message": "request timeout"}``.

Cancellation is cooperative: a handler that never awaits cannot be
interrupted, it can only have its late response discarded.
"""

import asyncio
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.application.api.responses import error_response
from src.core.config.constants import Stage
from src.core.context import RequestContext
from src.core.exceptions import RequestTimeoutError
from src.core.logging.logger import get_logger

logger = get_logger(__name__)


def _discard_result(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


class TimeoutMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, timeout: float = 30.0, exempt_prefixes: tuple[str, ...] = ()):
        super().__init__(app)
        self.timeout = timeout
        self.exempt_prefixes = exempt_prefixes

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if self.timeout <= 0 or (self.exempt_prefixes and request.url.path.startswith(self.exempt_prefixes)):
            return await call_next(request)

        ctx: RequestContext | None = getattr(request.state, "ctx", None)
        if ctx is None:
            ctx = RequestContext()
            request.state.ctx = ctx
        ctx.with_timeout(self.timeout)

        task = asyncio.ensure_future(call_next(request))
        done, _ = await asyncio.wait({task}, timeout=ctx.remaining())
        if task in done:
            return task.result()

        ctx.cancel()
        task.cancel()
        task.add_done_callback(_discard_result)
        ctx.logger.warning(
            "Request timed out",
            stage=Stage.REQUEST.value,
            method=request.method,
            path=request.url.path,
            timeout=self.timeout,
        )
        return error_response(
            RequestTimeoutError("request deadline exceeded", request_id=ctx.request_id),
            request_id=ctx.request_id,
        )


def add_timeout_middleware(app, timeout: float, exempt_prefixes: tuple[str, ...] = ()) -> None:
    app.add_middleware(TimeoutMiddleware, timeout=timeout, exempt_prefixes=exempt_prefixes)
    logger.info("Timeout middleware registered", timeout=timeout)
