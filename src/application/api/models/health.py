"""
Health Response Models

The envelope every health response uses:

    {"code": 0, "message": "pong", "data": {"status": "healthy",
     "mysql": "connected", "redis": "connected", "timestamp": 1735689600}}
"""

from typing import Literal

from pydantic import BaseModel, Field


class HealthData(BaseModel):
    status: Literal["healthy", "degraded", "unhealthy"] = Field(..., description="Overall classification")
    mysql: Literal["connected", "disconnected"] = Field(..., description="MySQL ping result")
    redis: Literal["connected", "disconnected"] = Field(..., description="Redis ping result")
    timestamp: int = Field(..., description="Unix seconds when the check ran")
    details: dict[str, str] | None = Field(default=None, description="Pool gauges (/health only)")


class HealthEnvelope(BaseModel):
    code: int = Field(..., description="0 when usable, 5003 when unhealthy")
    message: str
    data: HealthData
