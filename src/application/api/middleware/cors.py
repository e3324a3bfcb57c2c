"""
CORS Middleware
===============

Allow-list based cross-origin policy.

Origins are matched against patterns:
- exact:            ``https://app.example.com``
- any numeric port: ``http://localhost:*``
- any sub-domain:   ``*.example.com``

The default list is empty (no cross-origin access). Development adds
``http://localhost:*`` and ``http://127.0.0.1:*``.

Decisions:
- allowed origin, preflight (OPTIONS)       -> 204 with CORS headers
- allowed origin, actual request            -> passes, CORS headers added
- disallowed origin, preflight              -> 403
- disallowed or missing origin, otherwise   -> passes without CORS headers
"""

from collections.abc import Callable, Iterable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.core.logging.logger import get_logger

logger = get_logger(__name__)

DEFAULT_METHODS = ("GET", "POST", "PUT", "DELETE", "OPTIONS")
DEFAULT_HEADERS = ("Origin", "Content-Type", "Authorization", "X-Request-ID")
DEV_ORIGINS = ("http://localhost:*", "http://127.0.0.1:*")


def match_origin(origin: str, pattern: str) -> bool:
    if origin == pattern:
        return True
    if pattern.endswith(":*"):
        prefix = pattern[:-1]
        rest = origin[len(prefix):] if origin.startswith(prefix) else ""
        if rest.isdigit() and rest.isascii():
            return True
    if pattern.startswith("*."):
        if origin.endswith(pattern[1:]):
            return True
    return False


class CORSMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        allowed_origins: Iterable[str] = (),
        allowed_methods: Iterable[str] = DEFAULT_METHODS,
        allowed_headers: Iterable[str] = DEFAULT_HEADERS,
        allow_credentials: bool = False,
        max_age: int = 86400,
    ):
        super().__init__(app)
        self.allowed_origins = list(allowed_origins)
        self.allow_credentials = allow_credentials
        self._cors_headers = {
            "Access-Control-Allow-Methods": ", ".join(allowed_methods),
            "Access-Control-Allow-Headers": ", ".join(allowed_headers),
            "Access-Control-Max-Age": str(max_age),
        }

    def is_allowed(self, origin: str) -> bool:
        return any(match_origin(origin, pattern) for pattern in self.allowed_origins)

    def _apply(self, response: Response, origin: str) -> Response:
        response.headers["Access-Control-Allow-Origin"] = origin
        for name, value in self._cors_headers.items():
            response.headers[name] = value
        if self.allow_credentials:
            response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers.append("Vary", "Origin")
        return response

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        origin = request.headers.get("origin", "")
        is_preflight = request.method == "OPTIONS"

        if not origin:
            return await call_next(request)

        if not self.is_allowed(origin):
            if is_preflight:
                return Response(status_code=403)
            return await call_next(request)

        if is_preflight:
            return self._apply(Response(status_code=204), origin)

        response = await call_next(request)
        return self._apply(response, origin)


def add_cors_middleware(app, settings) -> None:
    origins = list(settings.app.CORS_ALLOW_ORIGINS)
    credentials = settings.app.CORS_ALLOW_CREDENTIALS
    if settings.is_development:
        origins.extend(o for o in DEV_ORIGINS if o not in origins)
        credentials = True
    app.add_middleware(
        CORSMiddleware,
        allowed_origins=origins,
        allow_credentials=credentials,
        max_age=settings.app.CORS_MAX_AGE,
    )
    logger.info("CORS middleware registered", origins=origins)
