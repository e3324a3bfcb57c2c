"""
End-to-End Scenario Tests

Each test drives one documented resilience scenario with its literal
parameters: stampede, negative caching, local and distributed limiting,
breaker trip/recovery, request correlation and the debug token compare.
"""

import asyncio
import re

import pytest
from fastapi.testclient import TestClient
from structlog.testing import capture_logs

from src.application.api import dependencies
from src.core.config.constants import CircuitState
from src.core.exceptions import CircuitBreakerOpenError, NotFoundError
from src.core.resilience.circuit_breaker import BreakerConfig, CircuitBreaker
from src.core.resilience.rate_limiter import LocalRateLimiter
from src.infrastructure.cache.multi_level import MultiLevelCache
from src.infrastructure.rate_limiting import SlidingWindowLimiter

UUID_PATTERN = re.compile(r"^[0-9a-f-]{36}$")


@pytest.fixture
def cache(local_cache, redis_client, settings, mock_metrics, clock):
    return MultiLevelCache(local_cache, redis_client, settings=settings, metrics=mock_metrics, clock=clock)


@pytest.mark.unit
class TestCacheScenarios:
    @pytest.mark.asyncio
    async def test_stampede(self, cache, local_cache, ctx):
        calls = 0

        async def load_user(_ctx):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return {"id": 42}

        results = await asyncio.gather(*(cache.get(ctx, "user:42", load_user) for _ in range(200)))

        assert calls == 1
        assert all(r == {"id": 42} for r in results)
        assert "user:42" in local_cache

    @pytest.mark.asyncio
    async def test_negative_cache(self, cache, redis_client, ctx, clock):
        calls = 0

        async def load_missing(_ctx):
            nonlocal calls
            calls += 1
            raise NotFoundError("user 99 not found")

        with pytest.raises(NotFoundError):
            await cache.get(ctx, "user:99", load_missing)
        clock.advance(0.01)
        with pytest.raises(NotFoundError):
            await cache.get(ctx, "user:99", load_missing)

        assert calls == 1
        assert 0 < await redis_client.ttl("null:user:99") <= 60


@pytest.mark.unit
class TestLimiterScenarios:
    def test_local_limiter(self, clock):
        limiter = LocalRateLimiter(rate=5, burst=10, clock=clock)

        decisions = []
        for _ in range(15):
            decisions.append(limiter.allow("1.2.3.4"))
            clock.advance(0.006)

        assert decisions == [True] * 10 + [False] * 5
        assert limiter.size() == 1

    @pytest.mark.asyncio
    async def test_distributed_window(self, redis_client, make_redis_client, clock, mock_metrics):
        local = LocalRateLimiter(rate=1000, burst=1000, clock=clock)
        process_a = SlidingWindowLimiter(redis_client, limit=3, window=1.0, fallback=local,
                                         clock=clock, metrics=mock_metrics)
        process_b = SlidingWindowLimiter(make_redis_client(), limit=3, window=1.0, fallback=local,
                                         clock=clock, metrics=mock_metrics)

        decisions = []
        for limiter in (process_a, process_b, process_a, process_b, process_a):
            decisions.append(await limiter.allow("u"))
            clock.advance(0.04)

        assert decisions.count(True) == 3
        assert decisions.count(False) == 2


@pytest.mark.unit
class TestBreakerScenario:
    @pytest.mark.asyncio
    async def test_trip_and_recover(self, clock, mock_metrics):
        config = BreakerConfig(min_requests=10, failure_ratio=0.5, timeout=0.1, max_requests=2)
        breaker = CircuitBreaker("downstream", config, clock=clock, metrics=mock_metrics)

        async def fail():
            raise ConnectionError("refused")

        async def succeed():
            return "ok"

        for _ in range(6):
            with pytest.raises(ConnectionError):
                await breaker.call(fail)
        for _ in range(3):
            await breaker.call(succeed)
        assert breaker.state == CircuitState.CLOSED

        await breaker.call(succeed)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitBreakerOpenError):
            await breaker.call(succeed)

        clock.advance(0.15)
        assert breaker.state == CircuitState.HALF_OPEN

        await breaker.call(succeed)
        await breaker.call(succeed)
        assert breaker.state == CircuitState.CLOSED


@pytest.mark.unit
class TestPipelineScenarios:
    def _access_records(self, logs):
        return [entry for entry in logs if entry.get("event") == "access"]

    def test_generated_request_id_reaches_access_log(self, make_app):
        client = TestClient(make_app())

        with capture_logs() as logs:
            response = client.get("/api/v1/items/1")

        request_id = response.headers["X-Request-ID"]
        assert UUID_PATTERN.match(request_id)
        assert [r["request_id"] for r in self._access_records(logs)] == [request_id]

    def test_supplied_request_id_reaches_access_log(self, make_app):
        client = TestClient(make_app())

        with capture_logs() as logs:
            response = client.get("/api/v1/items/1", headers={"X-Request-ID": "abc-123"})

        assert response.headers["X-Request-ID"] == "abc-123"
        assert [r["request_id"] for r in self._access_records(logs)] == ["abc-123"]

    def test_debug_token_uses_constant_time_compare(self, make_app, production_settings, debug_token, monkeypatch):
        compared = []
        real_compare = dependencies.hmac.compare_digest

        def recording_compare(a, b):
            compared.append((a, b))
            return real_compare(a, b)

        monkeypatch.setattr(dependencies.hmac, "compare_digest", recording_compare)
        client = TestClient(make_app(production_settings))
        wrong_first = "X" + debug_token[1:]
        wrong_last = debug_token[:-1] + "X"

        for token in (wrong_first, wrong_last):
            response = client.get("/metrics", headers={"Authorization": f"Bearer {token}"})
            assert response.status_code == 401

        assert client.get("/metrics", headers={"Authorization": f"Bearer {debug_token}"}).status_code == 200
        assert [a for a, _ in compared] == [t.encode() for t in (wrong_first, wrong_last, debug_token)]
