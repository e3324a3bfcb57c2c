"""
FastAPI Dependencies

Reusable dependencies for route handlers:

- get_container / get_request_context: collaborators and the per-request
  context created by the request-ID middleware
- require_identity: bearer-token authentication (JWT + revocation list)
- require_debug_access: the shared-secret gate in front of /metrics and
  /debug/pprof

Every authentication failure surfaces as the same 401 body; the reason is
only logged.

Usage in a route:
    @router.get("/api/v1/me")
    async def me(identity: IdentityDep):
        return {"code": 0, "message": "ok", "data": {"id": identity}}
"""

import hmac
import time
from typing import Annotated, Any, Protocol

import jwt
from fastapi import Depends, Request

from src.application.lifecycle import ServiceContainer
from src.core.config.constants import HEADER_AUTHORIZATION, KEY_PREFIX_TOKEN_BLACKLIST, Stage
from src.core.context import RequestContext
from src.core.exceptions import (
    CacheError,
    DebugAccessDeniedError,
    DebugEndpointsDisabledError,
    UnauthorizedError,
)
from src.core.logging.logger import get_logger
from src.infrastructure.cache.redis_client import RedisClient

logger = get_logger(__name__)

BEARER_PREFIX = "Bearer "


# ============================================================================
# CONTAINER AND CONTEXT
# ============================================================================


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_request_context(request: Request) -> RequestContext:
    """
    The RequestContext created by the request-ID middleware.

    Routes mounted without the middleware (some unit tests) get a fresh one.
    """
    ctx = getattr(request.state, "ctx", None)
    if ctx is None:
        ctx = RequestContext()
        request.state.ctx = ctx
    return ctx


ContainerDep = Annotated[ServiceContainer, Depends(get_container)]
RequestContextDep = Annotated[RequestContext, Depends(get_request_context)]


# ============================================================================
# TOKEN VALIDATION
# ============================================================================


class TokenValidator(Protocol):
    """Turns a bearer token into a subject, or raises UnauthorizedError."""

    def validate(self, token: str) -> str: ...


class JWTTokenValidator:
    """
    HS256 (by default) JWT validation with PyJWT.

    The subject is the ``sub`` claim, or ``user_id`` for tokens that carry
    a numeric user ID instead.
    """

    def __init__(self, security_settings):
        self._secret = security_settings.JWT_SECRET
        self._algorithm = security_settings.JWT_ALGORITHM
        self._issuer = security_settings.JWT_ISSUER

    def issue(self, subject: str, ttl: int = 3600, **claims: Any) -> str:
        now = int(time.time())
        payload: dict[str, Any] = {"sub": subject, "iat": now, "exp": now + ttl, **claims}
        if self._issuer:
            payload["iss"] = self._issuer
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode(self, token: str) -> dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise UnauthorizedError("token expired") from e
        except jwt.InvalidTokenError as e:
            raise UnauthorizedError(f"invalid token: {e}") from e

    def validate(self, token: str) -> str:
        claims = self.decode(token)
        subject = claims.get("sub") or claims.get("user_id")
        if subject in (None, ""):
            raise UnauthorizedError("token has no subject")
        return str(subject)


class TokenBlacklist:
    """Revoked tokens under ``token:blacklist:<token>`` in Redis."""

    def __init__(self, redis: RedisClient | None):
        self._redis = redis

    @staticmethod
    def key(token: str) -> str:
        return f"{KEY_PREFIX_TOKEN_BLACKLIST}{token}"

    async def revoke(self, token: str, ttl: float, timeout: float | None = None) -> None:
        """Blacklist ``token`` for ``ttl`` seconds (its remaining lifetime)."""
        if self._redis is None or not self._redis.is_connected or ttl <= 0:
            return
        await self._redis.set(self.key(token), "1", ttl=ttl, timeout=timeout)

    async def is_revoked(self, token: str, timeout: float | None = None) -> bool:
        """
        True when the token is blacklisted.

        Without Redis, or when the lookup fails, the token counts as not
        revoked; the signature and expiry checks still apply.
        """
        if self._redis is None or not self._redis.is_connected:
            return False
        try:
            return await self._redis.exists(self.key(token), timeout=timeout) > 0
        except CacheError as e:
            logger.warning("Token blacklist lookup failed", stage=Stage.AUTH.value, error=e.message)
            return False


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get(HEADER_AUTHORIZATION, "")
    if not header.startswith(BEARER_PREFIX):
        return None
    token = header[len(BEARER_PREFIX):].strip()
    return token or None


async def require_identity(
    request: Request,
    container: ContainerDep,
    ctx: RequestContextDep,
) -> str:
    """
    Authenticate the caller and record the subject on the request context.

    Raises:
        UnauthorizedError: Missing, malformed, invalid, expired or revoked token
    """
    token = _bearer_token(request)
    if token is None:
        ctx.logger.info("Authentication failed", stage=Stage.AUTH.value, reason="missing bearer token")
        raise UnauthorizedError("missing bearer token", request_id=ctx.request_id)

    validator: TokenValidator | None = container.token_validator
    if validator is None:
        ctx.logger.warning("Authentication failed", stage=Stage.AUTH.value, reason="no token validator configured")
        raise UnauthorizedError("no token validator configured", request_id=ctx.request_id)

    try:
        subject = validator.validate(token)
    except UnauthorizedError as e:
        ctx.logger.info("Authentication failed", stage=Stage.AUTH.value, reason=e.message)
        raise UnauthorizedError(e.message, request_id=ctx.request_id) from e

    blacklist = TokenBlacklist(container.redis)
    timeout = ctx.bounded(container.settings.redis.REDIS_READ_TIMEOUT)
    if await blacklist.is_revoked(token, timeout=timeout):
        ctx.logger.info("Authentication failed", stage=Stage.AUTH.value, reason="token revoked")
        raise UnauthorizedError("token revoked", request_id=ctx.request_id)

    ctx.identity = subject
    return subject


IdentityDep = Annotated[str, Depends(require_identity)]


# ============================================================================
# DEBUG ENDPOINT GATE
# ============================================================================


def debug_token_matches(presented: str, expected: str) -> bool:
    """Constant-time comparison of the presented and configured debug tokens."""
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


async def require_debug_access(request: Request, container: ContainerDep) -> None:
    """
    Gate for /metrics and /debug/pprof.

    Outside production the endpoints are open. In production:
    - DEBUG_AUTH_TOKEN unset          -> 403 (endpoints disabled)
    - bearer missing or not matching  -> 401
    Only the Authorization header is read; query-string tokens are ignored.
    """
    settings = container.settings
    if not settings.is_production:
        return

    expected = settings.security.DEBUG_AUTH_TOKEN
    if not expected:
        raise DebugEndpointsDisabledError("DEBUG_AUTH_TOKEN not configured")

    presented = _bearer_token(request) or ""
    if not debug_token_matches(presented, expected):
        logger.warning(
            "Debug endpoint access denied",
            stage=Stage.DEBUG.value,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )
        raise DebugAccessDeniedError("invalid or missing debug token")


DebugAccessDep = Depends(require_debug_access)
