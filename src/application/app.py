"""
FastAPI Application Entry Point

Builds the application: service container, middleware pipeline, routes and
the exception handlers that render every error as the
``{"code", "message"}`` envelope.

Author: System Architect
Date: 2025-12-15
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.application.api.middleware import setup_middleware
from src.application.api.responses import envelope, error_response
from src.application.api.routes.debug import metrics_router
from src.application.api.routes.debug import router as debug_router
from src.application.api.routes.health import router as health_router
from src.application.lifecycle import ServiceContainer
from src.core.config.constants import CODE_INVALID_PARAMS, CODE_NOT_FOUND
from src.core.config.settings import Settings, get_settings
from src.core.exceptions import AppBaseError, RateLimitExceededError
from src.core.logging.logger import get_logger, setup_logging

logger = get_logger(__name__)


# ============================================================================
# LIFESPAN
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle (startup and shutdown).

    The container was created with the app; lifespan only opens and closes
    its resources.
    """
    container: ServiceContainer = app.state.container
    try:
        await container.startup()
        yield
    finally:
        await container.shutdown()


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================


def _request_id(request: Request) -> str | None:
    ctx = getattr(request.state, "ctx", None)
    return ctx.request_id if ctx is not None else None


async def app_error_handler(request: Request, exc: AppBaseError) -> JSONResponse:
    """Render application errors with their status and public code."""
    request_id = _request_id(request)
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "Request failed",
        error_type=type(exc).__name__,
        error=exc.message,
        status=exc.status_code,
        path=request.url.path,
        request_id=request_id,
    )
    retry_after = 1 if isinstance(exc, RateLimitExceededError) else None
    return error_response(exc, request_id=request_id, retry_after=retry_after)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=envelope(CODE_INVALID_PARAMS, "invalid parameters", {"errors": exc.errors()}),
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = CODE_NOT_FOUND if exc.status_code == 404 else exc.status_code
    message = "not found" if exc.status_code == 404 else str(exc.detail)
    return JSONResponse(status_code=exc.status_code, content=envelope(code, message), headers=exc.headers)


# ============================================================================
# APPLICATION FACTORY
# ============================================================================


def create_app(settings: Settings | None = None, container: ServiceContainer | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to use (defaults to the process settings)
        container: Pre-built container (tests inject fakes here)

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    setup_logging(log_level=settings.logging.LOG_LEVEL, log_format=settings.logging.LOG_FORMAT)
    container = container or ServiceContainer(settings)

    app = FastAPI(
        title=settings.app.APP_NAME,
        version=settings.app.APP_VERSION,
        description="HTTP JSON API with multi-level caching, rate limiting and circuit breaking",
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
    )
    app.state.container = container
    app.state.settings = settings

    setup_middleware(app, container, settings)

    app.add_exception_handler(AppBaseError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(debug_router)

    return app
