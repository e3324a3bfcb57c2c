"""
Health Check Routes - Educational Documentation
================================================

WHAT ARE HEALTH CHECKS?
-----------------------
Health checks report the status of the service and its backing stores.
Load balancers and orchestrators use them to decide where traffic goes.

ENDPOINTS:
----------
- ``GET /ping``:   fast check for load balancers
- ``GET /health``: the same check plus pool gauges

Both ping MySQL and Redis with a 2 s budget each and answer:

    healthy    200  {"code": 0,    "message": "pong" | "healthy", ...}
    degraded   200  {"code": 0,    "message": "pong (degraded)" | "degraded", ...}
    unhealthy  503  {"code": 5003, "message": "service unhealthy" | "unhealthy", ...}
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from src.application.api.dependencies import ContainerDep, RequestContextDep
from src.application.api.models.health import HealthData, HealthEnvelope
from src.core.config.constants import CODE_OK, CODE_SERVICE_UNAVAILABLE, HealthStatus
from src.infrastructure.monitoring.health_checker import HealthReport

router = APIRouter(tags=["Health"])

PING_MESSAGES = {
    HealthStatus.HEALTHY: "pong",
    HealthStatus.DEGRADED: "pong (degraded)",
    HealthStatus.UNHEALTHY: "service unhealthy",
}

HEALTH_MESSAGES = {
    HealthStatus.HEALTHY: "healthy",
    HealthStatus.DEGRADED: "degraded",
    HealthStatus.UNHEALTHY: "unhealthy",
}


def _render(report: HealthReport, messages: dict[HealthStatus, str]) -> JSONResponse:
    unhealthy = report.status == HealthStatus.UNHEALTHY
    body = HealthEnvelope(
        code=CODE_SERVICE_UNAVAILABLE if unhealthy else CODE_OK,
        message=messages[report.status],
        data=HealthData(**report.to_dict()),
    )
    return JSONResponse(
        status_code=503 if unhealthy else 200,
        content=body.model_dump(exclude_none=True),
    )


@router.get("/ping", response_model=HealthEnvelope)
async def ping(container: ContainerDep, ctx: RequestContextDep):
    """Quick dependency check for load balancers."""
    report = await container.health.check(ctx)
    return _render(report, PING_MESSAGES)


@router.get("/health", response_model=HealthEnvelope)
async def health(container: ContainerDep, ctx: RequestContextDep):
    """Dependency check with MySQL and Redis pool gauges."""
    report = await container.health.detailed(ctx)
    return _render(report, HEALTH_MESSAGES)
