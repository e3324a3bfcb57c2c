"""
Pytest Configuration and Shared Test Fixtures

This module provides pytest configuration and reusable fixtures for all tests.
All fixtures defined here are automatically available to all test files.
"""

import os
import sys
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
import pytest_asyncio

# Add project root to sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from src.core.clock import ManualClock  # noqa: E402
from src.core.config.settings import Settings  # noqa: E402
from src.core.context import RequestContext  # noqa: E402
from src.infrastructure.cache.local_cache import LocalCache  # noqa: E402
from src.infrastructure.cache.redis_client import RedisClient  # noqa: E402
from src.infrastructure.monitoring.metrics_collector import get_metrics_collector  # noqa: E402

TEST_JWT_SECRET = "test-secret-that-is-at-least-32-characters-long"
TEST_DEBUG_TOKEN = "debug-token-for-tests"


# ============================================================================
# Settings
# ============================================================================


def make_settings(**overrides) -> Settings:
    """
    Settings for tests: no env file, no Redis, fast retries.

    Any field can be overridden by keyword.
    """
    values = {
        "ENVIRONMENT": "development",
        "REDIS_ENABLED": False,
        "REDIS_POOL_SIZE": 10,
        "REDIS_MIN_IDLE_CONNS": 0,
        "REDIS_MAX_RETRIES": 0,
        "LOG_FORMAT": "console",
        "ACCESS_LOG_SAMPLE_RATE": 1.0,
        "POOL_METRICS_INTERVAL": 3600.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def production_settings():
    return make_settings(ENVIRONMENT="production", DEBUG_AUTH_TOKEN=TEST_DEBUG_TOKEN)


# ============================================================================
# Time and context
# ============================================================================


@pytest.fixture
def clock():
    """A clock that only moves when the test advances it."""
    return ManualClock()


@pytest.fixture
def ctx(clock):
    return RequestContext(request_id="test-request", clock=clock)


# ============================================================================
# Metrics
# ============================================================================


@pytest.fixture
def metrics():
    """The process-wide collector (Prometheus metrics are global)."""
    return get_metrics_collector()


@pytest.fixture
def mock_metrics():
    """A recorder that lets tests assert what was reported."""
    return MagicMock()


# ============================================================================
# Redis
# ============================================================================


@pytest.fixture
def fake_redis_server():
    """One isolated in-memory Redis server per test."""
    return fakeredis.FakeServer()


@pytest_asyncio.fixture
async def redis_client(settings, fake_redis_server):
    """RedisClient wrapping fakeredis (Lua scripting included)."""
    client = RedisClient(
        settings,
        client=fakeredis.aioredis.FakeRedis(server=fake_redis_server, decode_responses=True),
    )
    yield client
    await client.disconnect()


@pytest.fixture
def make_redis_client(settings, fake_redis_server):
    """Factory for extra clients on the same server (simulated replicas)."""

    def _make() -> RedisClient:
        return RedisClient(
            settings,
            client=fakeredis.aioredis.FakeRedis(server=fake_redis_server, decode_responses=True),
        )

    return _make


@pytest.fixture
def failing_redis_client(settings):
    """RedisClient whose every command fails with a connection error."""
    server = fakeredis.FakeServer()
    server.connected = False
    return RedisClient(
        settings,
        client=fakeredis.aioredis.FakeRedis(server=server, connected=False, decode_responses=True),
    )


# ============================================================================
# Cache
# ============================================================================


@pytest.fixture
def local_cache(clock):
    return LocalCache(max_cost=1024 * 1024, num_counters=1024, buffer_items=1, clock=clock)


# ============================================================================
# Backends for health and telemetry
# ============================================================================


@pytest.fixture
def mock_database():
    """DatabasePool stand-in with a healthy ping and empty stats."""
    from src.infrastructure.database.pool import DatabasePool, DBPoolStats

    database = MagicMock(spec=DatabasePool)
    database.ping = AsyncMock(return_value=None)
    database.stats = MagicMock(return_value=DBPoolStats(open_connections=3, in_use=1, idle=2))
    return database


@pytest.fixture
def mock_redis():
    """RedisClient stand-in with a healthy ping."""
    from src.infrastructure.cache.redis_client import PoolStats

    redis = MagicMock(spec=RedisClient)
    redis.ping = AsyncMock(return_value=True)
    redis.is_connected = True
    redis.pool_stats = MagicMock(return_value=PoolStats(total_conns=5, idle_conns=4))
    return redis


@pytest.fixture
def settings_factory():
    """make_settings as a fixture, for tests that need several variants."""
    return make_settings


@pytest.fixture
def restore_global_settings():
    """Put the process-wide settings singleton back after a test replaces it."""
    from src.core.config import settings as settings_module

    saved = settings_module._settings
    yield
    settings_module._settings = saved


@pytest.fixture
def jwt_settings():
    return make_settings(JWT_SECRET=TEST_JWT_SECRET)


@pytest.fixture
def debug_token():
    return TEST_DEBUG_TOKEN


# ============================================================================
# Application
# ============================================================================


def _demo_router():
    """Routes standing in for business endpoints in pipeline tests."""
    import asyncio

    from fastapi import APIRouter

    from src.application.api.dependencies import IdentityDep, RequestContextDep
    from src.application.api.responses import success
    from src.core.exceptions import BackendUnavailableError
    from src.core.logging.logger import get_request_id

    router = APIRouter(prefix="/api/v1")

    @router.get("/items/{item_id}")
    async def get_item(item_id: int, ctx: RequestContextDep):
        return success({"id": item_id, "request_id": ctx.request_id, "log_request_id": get_request_id()})

    @router.get("/search")
    async def search(limit: int):
        return success({"limit": limit})

    @router.get("/large")
    async def large():
        return success({"blob": "x" * 4096})

    @router.get("/slow")
    async def slow():
        await asyncio.sleep(0.5)
        return success()

    @router.get("/flaky")
    async def flaky():
        raise BackendUnavailableError("mysql timed out", details={"backend": "mysql"})

    @router.get("/boom")
    async def boom():
        raise RuntimeError("secret internal detail")

    @router.get("/me")
    async def me(identity: IdentityDep):
        return success({"id": identity})

    @router.post("/auth/login")
    async def login():
        return success({"token": "t"})

    return router


@pytest.fixture
def make_app():
    """
    Factory for a full application (every middleware stage) plus demo routes.

    The lifespan is not entered unless the test uses ``with TestClient(app)``.
    """
    from src.application.app import create_app
    from src.application.lifecycle import ServiceContainer

    def _make(settings: Settings | None = None, container=None, **overrides):
        settings = settings or make_settings(**overrides)
        container = container or ServiceContainer(settings)
        app = create_app(settings, container)
        app.include_router(_demo_router())
        return app

    return _make
