"""
Security Headers Middleware - Educational Documentation
========================================================

WHAT ARE SECURITY HEADERS?
---------------------------
Security headers are HTTP response headers that tell browsers how to behave
when handling the service's content. They protect against:

1. MIME-type sniffing (X-Content-Type-Options)
2. Clickjacking (X-Frame-Options, CSP frame-ancestors)
3. Referrer leakage (Referrer-Policy)
4. Unwanted browser features (Permissions-Policy)
5. Downgrade to plain HTTP (Strict-Transport-Security, https only)

TWO KINDS OF RESPONSES:
-----------------------
- Pages (``/``, ``/favicon.ico``, ``*.html``, ``/static*``, ``/docs*``) get a
  CSP that lets same-site scripts, styles and ``data:`` images load.
- Everything else is an API response: it must never be rendered or cached,
  so it gets ``default-src 'none'`` plus no-store caching headers.
"""

from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.core.logging.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# SECURITY HEADERS CONFIGURATION
# ============================================================================


class SecurityHeadersConfig:
    """
    Header values applied by SecurityHeadersMiddleware.

    Override attributes on an instance to customize:

        config = SecurityHeadersConfig()
        config.X_FRAME_OPTIONS = "SAMEORIGIN"
        add_security_headers_middleware(app, config)
    """

    X_CONTENT_TYPE_OPTIONS = "nosniff"

    X_FRAME_OPTIONS = "DENY"

    X_XSS_PROTECTION = "1; mode=block"

    STRICT_TRANSPORT_SECURITY = "max-age=31536000; includeSubDomains"

    PAGE_CONTENT_SECURITY_POLICY = (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data: https:; "
        "font-src 'self'; "
        "connect-src 'self'; "
        "frame-ancestors 'none'"
    )

    API_CONTENT_SECURITY_POLICY = "default-src 'none'; frame-ancestors 'none'"

    API_CACHE_CONTROL = "no-store, no-cache, must-revalidate, proxy-revalidate"

    REFERRER_POLICY = "strict-origin-when-cross-origin"

    PERMISSIONS_POLICY = "geolocation=(), microphone=(), camera=()"

    PAGE_PATHS = ("/", "/favicon.ico")

    PAGE_PREFIXES = ("/static", "/docs")


def is_page_path(path: str, config: SecurityHeadersConfig | None = None) -> bool:
    """True for paths a browser renders as a page rather than an API call."""
    config = config or SecurityHeadersConfig()
    return path in config.PAGE_PATHS or path.endswith(".html") or path.startswith(config.PAGE_PREFIXES)


# ============================================================================
# SECURITY HEADERS MIDDLEWARE
# ============================================================================


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add security headers to every response, errors included.

    The headers are set after the inner stages return, so a 429 from the
    limiter or a 503 from the breaker carries them too.
    """

    def __init__(self, app, config: SecurityHeadersConfig | None = None):
        super().__init__(app)
        self.config = config or SecurityHeadersConfig()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        headers = response.headers
        config = self.config

        headers["X-Content-Type-Options"] = config.X_CONTENT_TYPE_OPTIONS
        headers["X-Frame-Options"] = config.X_FRAME_OPTIONS
        headers["X-XSS-Protection"] = config.X_XSS_PROTECTION
        headers["Referrer-Policy"] = config.REFERRER_POLICY
        headers["Permissions-Policy"] = config.PERMISSIONS_POLICY

        if is_page_path(request.url.path, config):
            headers["Content-Security-Policy"] = config.PAGE_CONTENT_SECURITY_POLICY
        else:
            headers["Content-Security-Policy"] = config.API_CONTENT_SECURITY_POLICY
            headers["Cache-Control"] = config.API_CACHE_CONTROL
            headers["Pragma"] = "no-cache"
            headers["Expires"] = "0"

        # HSTS only over https
        if request.url.scheme == "https":
            headers["Strict-Transport-Security"] = config.STRICT_TRANSPORT_SECURITY

        return response


def add_security_headers_middleware(app, config: SecurityHeadersConfig | None = None):
    """
    Add security headers middleware to the FastAPI application.

    USAGE:
    ------
        app = FastAPI()
        add_security_headers_middleware(app)

    TESTING SECURITY HEADERS:
    -------------------------
        curl -I http://localhost:8080/ping

    Args:
        app: FastAPI application instance
        config: Custom security headers configuration (optional)
    """
    app.add_middleware(SecurityHeadersMiddleware, config=config)
    logger.info("Security headers middleware registered")
