"""
Metrics Middleware
==================

Records, for every request:
- ``http_requests_in_flight`` (incremented on entry, decremented on exit)
- ``http_requests_total{method,path,status}``
- ``http_request_duration_seconds{method,path}``

``path`` is the route template (``/api/v1/users/{user_id}``), never the raw
URL, so label cardinality stays bounded. Unmatched requests are labelled
``not_found``.
"""

import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Match

from src.core.logging.logger import get_logger
from src.infrastructure.monitoring.metrics_collector import MetricsCollector, get_metrics_collector

logger = get_logger(__name__)

UNMATCHED_PATH = "not_found"


def route_template(request: Request) -> str:
    """The path template of the route serving ``request``."""
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", UNMATCHED_PATH)
    return UNMATCHED_PATH


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, metrics: MetricsCollector | None = None):
        super().__init__(app)
        self.metrics = metrics or get_metrics_collector()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        self.metrics.increment_in_flight()
        start = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            self.metrics.decrement_in_flight()
            self.metrics.record_http_request(
                request.method, route_template(request), status, time.perf_counter() - start
            )


def add_metrics_middleware(app, metrics: MetricsCollector | None = None) -> None:
    app.add_middleware(MetricsMiddleware, metrics=metrics)
    logger.info("Metrics middleware registered")
