"""
Middleware Package
==================

The request pipeline. Stages, outermost first:

 1. recovery          unhandled exception -> logged, generic 500
 2. request_id        adopt/mint X-Request-ID, create the RequestContext
 3. security_headers  nosniff, frame denial, CSP, no-store for APIs
 4. cors              allow-list origins; 204/403 on preflight
 5. compression       gzip, skipping already-compressed extensions
 6. metrics           in-flight gauge, request counter, latency histogram
 7. access_log        one record per request, level by status, sampled
 8. timeout           request deadline; 408 when it fires
 9. rate_limit        per-IP limiter; strict limiter on /api/v1/auth/
10. circuit_breaker   per-route breaker; 5xx counts as failure

Authentication is not a middleware: routes that need an identity declare
the ``require_identity`` dependency, which runs after every stage above.

MIDDLEWARE ORDERING:
--------------------
Starlette wraps the application in the REVERSE order of registration: the
middleware added last is the outermost. setup_middleware therefore registers
the stages from innermost (10) to outermost (1).

Request flow:  Client -> 1 -> 2 -> ... -> 10 -> Handler
Response flow: Handler -> 10 -> ... -> 2 -> 1 -> Client

USAGE EXAMPLE:
--------------
    app = FastAPI(lifespan=lifespan)
    container = ServiceContainer(settings)
    setup_middleware(app, container, settings)
"""

from typing import TYPE_CHECKING

from fastapi import FastAPI

from src.core.logging.logger import get_logger

from .access_log import add_access_log_middleware
from .circuit_breaker import add_circuit_breaker_middleware
from .compression import add_compression_middleware
from .cors import add_cors_middleware
from .metrics import add_metrics_middleware
from .rate_limit import add_rate_limit_middleware
from .recovery import add_recovery_middleware
from .request_id import add_request_id_middleware
from .security_headers import add_security_headers_middleware
from .timeout import add_timeout_middleware

if TYPE_CHECKING:
    from src.application.lifecycle import ServiceContainer

logger = get_logger(__name__)

# Probes and the debug surface bypass limiting and breaking
OPERATIONAL_PATHS = ("/ping", "/health", "/metrics")
OPERATIONAL_PREFIXES = ("/ping", "/health", "/metrics", "/debug/")
PROFILE_PATH = "/debug/pprof/profile"


def setup_middleware(app: FastAPI, container: "ServiceContainer", settings) -> None:
    """
    Register every pipeline stage in order.

    Args:
        app: FastAPI application instance
        container: Collaborators (limiters, breakers, metrics) read at request time
        settings: Application settings
    """
    logger.info("Registering middleware components...")

    if settings.circuit_breaker.CB_ENABLED:
        add_circuit_breaker_middleware(app, container, exempt_prefixes=OPERATIONAL_PREFIXES)

    if settings.rate_limit.RATE_LIMIT_ENABLED:
        add_rate_limit_middleware(app, container, exempt_paths=OPERATIONAL_PATHS)

    if settings.app.REQUEST_TIMEOUT_SECONDS > 0:
        add_timeout_middleware(
            app, timeout=settings.app.REQUEST_TIMEOUT_SECONDS, exempt_prefixes=(PROFILE_PATH,)
        )

    add_access_log_middleware(app, settings)
    add_metrics_middleware(app, container.metrics)
    add_compression_middleware(app, settings)
    add_cors_middleware(app, settings)
    add_security_headers_middleware(app)
    add_request_id_middleware(app, clock=container.clock)
    add_recovery_middleware(app)

    logger.info("All middleware components registered successfully")


__all__ = [
    "setup_middleware",
    "add_access_log_middleware",
    "add_circuit_breaker_middleware",
    "add_compression_middleware",
    "add_cors_middleware",
    "add_metrics_middleware",
    "add_rate_limit_middleware",
    "add_recovery_middleware",
    "add_request_id_middleware",
    "add_security_headers_middleware",
    "add_timeout_middleware",
]
