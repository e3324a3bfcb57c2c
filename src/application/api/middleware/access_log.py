"""
Access Log Middleware
=====================

One structured record per request, written after the inner stages return:

    {"event": "access", "status": 200, "method": "GET", "path": "/api/v1/users/42",
     "latency_ms": 3.1, "ip": "10.0.0.7", "slow": false, "request_id": "..."}

Level follows the status: info below 400, warning for 4xx, error for 5xx.

Volume control:
- paths in ``skip_paths`` (``/ping``, ``/health``, ``/metrics``) are never logged
- ``sample_rate`` < 1.0 keeps that fraction of the remaining records
- requests slower than ``slow_threshold`` are always logged
"""

import random
import time
from collections.abc import Callable, Iterable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.core.config.constants import DEFAULT_ACCESS_LOG_SKIP_PATHS, Stage
from src.core.logging.logger import get_logger

logger = get_logger(__name__)


class AccessLogMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        sample_rate: float = 1.0,
        slow_threshold: float = 1.0,
        skip_paths: Iterable[str] = DEFAULT_ACCESS_LOG_SKIP_PATHS,
    ):
        super().__init__(app)
        self.sample_rate = sample_rate
        self.slow_threshold = slow_threshold
        self.skip_paths = frozenset(skip_paths)

    def should_log(self, path: str, latency: float) -> bool:
        if path in self.skip_paths:
            return False
        if latency >= self.slow_threshold or self.sample_rate >= 1.0:
            return True
        return random.random() < self.sample_rate

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        latency = time.perf_counter() - start

        path = request.url.path
        if not self.should_log(path, latency):
            return response

        status = response.status_code
        if status >= 500:
            level = "error"
        elif status >= 400:
            level = "warning"
        else:
            level = "info"

        ctx = getattr(request.state, "ctx", None)
        log = ctx.logger if ctx is not None else logger
        getattr(log, level)(
            "access",
            stage=Stage.REQUEST.value,
            status=status,
            method=request.method,
            path=path,
            latency_ms=round(latency * 1000, 2),
            ip=request.client.host if request.client else None,
            slow=latency >= self.slow_threshold,
        )
        return response


def add_access_log_middleware(app, settings) -> None:
    cfg = settings.logging
    app.add_middleware(
        AccessLogMiddleware,
        sample_rate=cfg.ACCESS_LOG_SAMPLE_RATE,
        slow_threshold=cfg.ACCESS_LOG_SLOW_THRESHOLD,
        skip_paths=cfg.ACCESS_LOG_SKIP_PATHS,
    )
    logger.info("Access log middleware registered", sample_rate=cfg.ACCESS_LOG_SAMPLE_RATE)
