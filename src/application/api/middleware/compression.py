"""
Compression Middleware
======================

Starlette's GZip middleware with a per-extension opt-out: already
compressed formats (``.png``, ``.jpg``, ``.jpeg``, ``.gif`` by default)
are passed through untouched.
"""

from collections.abc import Iterable

from starlette.middleware.gzip import GZipMiddleware
from starlette.types import Receive, Scope, Send

from src.core.logging.logger import get_logger

logger = get_logger(__name__)


class SelectiveGZipMiddleware(GZipMiddleware):
    def __init__(
        self,
        app,
        minimum_size: int = 500,
        compresslevel: int = 9,
        excluded_extensions: Iterable[str] = (".png", ".jpg", ".jpeg", ".gif"),
    ):
        super().__init__(app, minimum_size=minimum_size, compresslevel=compresslevel)
        self.excluded_extensions = tuple(ext.lower() for ext in excluded_extensions)

    def is_excluded(self, path: str) -> bool:
        return path.lower().endswith(self.excluded_extensions)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and self.is_excluded(scope.get("path", "")):
            await self.app(scope, receive, send)
            return
        await super().__call__(scope, receive, send)


def add_compression_middleware(app, settings) -> None:
    app.add_middleware(
        SelectiveGZipMiddleware,
        minimum_size=settings.app.GZIP_MINIMUM_SIZE,
        excluded_extensions=settings.app.GZIP_EXCLUDED_EXTENSIONS,
    )
    logger.info("Compression middleware registered", minimum_size=settings.app.GZIP_MINIMUM_SIZE)
