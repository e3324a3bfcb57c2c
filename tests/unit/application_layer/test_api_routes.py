"""
Unit Tests for API Routes

Health, metrics and debug endpoints, plus the error envelope for unknown
routes and invalid parameters.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from src.application.lifecycle import ServiceContainer
from src.core.exceptions import CacheConnectionError, DatabaseError
from src.infrastructure.monitoring.health_checker import HealthChecker


@pytest.fixture
def client(make_app):
    return TestClient(make_app())


def container_with_backends(settings, mock_database, mock_redis) -> ServiceContainer:
    container = ServiceContainer(settings)
    container.health = HealthChecker(mock_database, mock_redis, settings)
    return container


@pytest.mark.unit
class TestPing:
    def test_stateless_mode_is_healthy(self, client):
        response = client.get("/ping")

        assert response.status_code == 200
        body = response.json()
        assert body["code"] == 0
        assert body["message"] == "pong"
        assert body["data"]["status"] == "healthy"
        assert body["data"]["mysql"] == "disconnected"
        assert isinstance(body["data"]["timestamp"], int)
        assert "details" not in body["data"]

    def test_degraded(self, make_app, settings, mock_database, mock_redis):
        mock_redis.ping = AsyncMock(side_effect=CacheConnectionError("refused"))
        app = make_app(settings, container_with_backends(settings, mock_database, mock_redis))

        response = TestClient(app).get("/ping")

        assert response.status_code == 200
        assert response.json()["message"] == "pong (degraded)"
        assert response.json()["data"]["redis"] == "disconnected"

    def test_unhealthy_returns_503(self, make_app, settings, mock_database, mock_redis):
        mock_redis.ping = AsyncMock(side_effect=CacheConnectionError("refused"))
        mock_database.ping = AsyncMock(side_effect=DatabaseError("timeout"))
        app = make_app(settings, container_with_backends(settings, mock_database, mock_redis))

        response = TestClient(app).get("/ping")

        assert response.status_code == 503
        assert response.json()["code"] == 5003
        assert response.json()["message"] == "service unhealthy"

    def test_production_requires_both_backends(self, make_app, production_settings, mock_database, mock_redis):
        mock_redis.ping = AsyncMock(side_effect=CacheConnectionError("refused"))
        container = container_with_backends(production_settings, mock_database, mock_redis)

        response = TestClient(make_app(production_settings, container)).get("/ping")

        assert response.status_code == 503


@pytest.mark.unit
class TestHealth:
    def test_includes_pool_details(self, make_app, settings, mock_database, mock_redis):
        app = make_app(settings, container_with_backends(settings, mock_database, mock_redis))

        response = TestClient(app).get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "healthy"
        assert body["data"]["details"]["mysql_in_use"] == "1"
        assert body["data"]["details"]["redis_idle_conns"] == "4"

    def test_unhealthy_message(self, make_app, settings, mock_database, mock_redis):
        mock_redis.ping = AsyncMock(side_effect=CacheConnectionError("refused"))
        mock_database.ping = AsyncMock(side_effect=DatabaseError("timeout"))
        app = make_app(settings, container_with_backends(settings, mock_database, mock_redis))

        response = TestClient(app).get("/health")

        assert response.status_code == 503
        assert response.json()["message"] == "unhealthy"


@pytest.mark.unit
class TestDebugGate:
    def test_open_outside_production(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_staging_is_open(self, make_app):
        assert TestClient(make_app(ENVIRONMENT="staging")).get("/debug/pprof/cmdline").status_code == 200

    def test_production_without_token_configured(self, make_app):
        client = TestClient(make_app(ENVIRONMENT="production"))

        response = client.get("/metrics")

        assert response.status_code == 403
        assert response.json()["code"] == 4003

    def test_production_missing_bearer(self, make_app, production_settings):
        response = TestClient(make_app(production_settings)).get("/debug/pprof/")

        assert response.status_code == 401
        assert response.json() == {"code": 4001, "message": "unauthorized: invalid or missing debug token"}

    def test_production_wrong_bearer(self, make_app, production_settings):
        client = TestClient(make_app(production_settings))
        response = client.get("/metrics", headers={"Authorization": "Bearer wrong"})
        assert response.status_code == 401

    def test_production_token_in_query_is_ignored(self, make_app, production_settings, debug_token):
        client = TestClient(make_app(production_settings))
        assert client.get(f"/metrics?token={debug_token}").status_code == 401

    def test_production_correct_bearer(self, make_app, production_settings, debug_token):
        client = TestClient(make_app(production_settings))
        response = client.get("/metrics", headers={"Authorization": f"Bearer {debug_token}"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")


@pytest.mark.unit
class TestDebugEndpoints:
    @pytest.mark.parametrize("path", ["/debug/pprof/", "/debug/pprof/cmdline", "/debug/pprof/threads"])
    def test_text_endpoints(self, client, path):
        response = client.get(path)
        assert response.status_code == 200
        assert response.text

    def test_tasks(self, client):
        response = client.get("/debug/pprof/tasks")
        assert response.status_code == 200
        assert "tasks" in response.text

    def test_heap(self, client):
        response = client.get("/debug/pprof/heap?limit=5")
        assert response.status_code == 200
        assert response.text.startswith("traced current=")

    def test_profile(self, client):
        response = client.get("/debug/pprof/profile?seconds=1")
        assert response.status_code == 200
        assert "function calls" in response.text

    def test_profile_seconds_bounded(self, client):
        assert client.get("/debug/pprof/profile?seconds=61").status_code == 400


@pytest.mark.unit
class TestErrorEnvelope:
    def test_unknown_route(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json() == {"code": 1004, "message": "not found"}

    def test_invalid_parameters(self, client):
        response = client.get("/api/v1/search?limit=abc")
        assert response.status_code == 400
        assert response.json()["code"] == 1001
        assert response.json()["message"] == "invalid parameters"

    def test_backend_error_hides_details(self, client):
        response = client.get("/api/v1/flaky")
        assert response.status_code == 503
        assert response.json() == {"code": 5002, "message": "backend unavailable"}
