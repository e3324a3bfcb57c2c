#!/usr/bin/env python3
"""
Health Checker Module

STAGE-K: Dependency health classification

Pings MySQL and Redis, each under its own deadline (2 s by default, never
longer than what is left of the request), and folds the results into one
status:

Production:
    any backend ping failing (or a backend missing)  -> unhealthy

Otherwise:
    both backends absent (stateless mode)            -> healthy
    both reachable                                   -> healthy
    exactly one reachable                            -> degraded
    none reachable, at least one configured          -> unhealthy

The detailed variant adds pool gauges for both backends.

Author: System Architect
Date: 2025-12-14
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

from src.core.clock import SYSTEM_CLOCK, Clock
from src.core.config.constants import HealthStatus, Stage
from src.core.context import RequestContext
from src.core.exceptions import CacheError, DatabaseError
from src.core.logging.logger import get_logger
from src.infrastructure.cache.redis_client import RedisClient
from src.infrastructure.database.pool import DatabasePool

logger = get_logger(__name__)

CONNECTED = "connected"
DISCONNECTED = "disconnected"


@dataclass
class HealthReport:
    status: HealthStatus
    mysql: str
    redis: str
    timestamp: int
    details: dict[str, str] | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status.value,
            "mysql": self.mysql,
            "redis": self.redis,
            "timestamp": self.timestamp,
        }
        if self.details is not None:
            data["details"] = self.details
        return data


class HealthChecker:
    """
    Health checker for the service's backing stores.

    Usage:
        checker = HealthChecker(database=pool, redis=redis_client, settings=settings)
        report = await checker.check(ctx)
        report.status        # HealthStatus.HEALTHY / DEGRADED / UNHEALTHY
        detailed = await checker.detailed(ctx)
    """

    def __init__(
        self,
        database: DatabasePool | None,
        redis: RedisClient | None,
        settings,
        clock: Clock = SYSTEM_CLOCK,
    ):
        self._database = database
        self._redis = redis
        self.settings = settings
        self._clock = clock
        self._ping_timeout = settings.telemetry.HEALTH_PING_TIMEOUT

    def _budget(self, ctx: RequestContext | None) -> float:
        if ctx is None:
            return self._ping_timeout
        return ctx.bounded(self._ping_timeout)

    async def _ping_database(self, timeout: float) -> bool:
        if self._database is None:
            return False
        try:
            await self._database.ping(timeout=timeout)
            return True
        except DatabaseError as e:
            logger.warning("MySQL ping failed", stage=Stage.HEALTH.value, error=e.message)
            return False

    async def _ping_redis(self, timeout: float) -> bool:
        if self._redis is None:
            return False
        try:
            return await self._redis.ping(timeout=timeout)
        except CacheError as e:
            logger.warning("Redis ping failed", stage=Stage.HEALTH.value, error=e.message)
            return False

    def classify(self, mysql_ok: bool, redis_ok: bool) -> HealthStatus:
        if self.settings.is_production:
            return HealthStatus.HEALTHY if mysql_ok and redis_ok else HealthStatus.UNHEALTHY
        if not mysql_ok and not redis_ok:
            if self._database is None and self._redis is None:
                return HealthStatus.HEALTHY
            return HealthStatus.UNHEALTHY
        if not mysql_ok or not redis_ok:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    async def check(self, ctx: RequestContext | None = None) -> HealthReport:
        """Ping both backends concurrently and classify the result."""
        timeout = self._budget(ctx)
        mysql_ok, redis_ok = await asyncio.gather(
            self._ping_database(timeout), self._ping_redis(timeout)
        )
        report = HealthReport(
            status=self.classify(mysql_ok, redis_ok),
            mysql=CONNECTED if mysql_ok else DISCONNECTED,
            redis=CONNECTED if redis_ok else DISCONNECTED,
            timestamp=int(self._clock.now()),
        )
        logger.info(
            "Health check completed",
            stage=Stage.HEALTH.value,
            status=report.status.value,
            mysql=report.mysql,
            redis=report.redis,
        )
        return report

    async def detailed(self, ctx: RequestContext | None = None) -> HealthReport:
        """check() plus pool gauges for each configured backend."""
        report = await self.check(ctx)
        details: dict[str, str] = {}
        if self._database is not None:
            stats = self._database.stats()
            details["mysql_open_connections"] = str(stats.open_connections)
            details["mysql_in_use"] = str(stats.in_use)
            details["mysql_idle"] = str(stats.idle)
        if self._redis is not None and self._redis.is_connected:
            stats = self._redis.pool_stats()
            details["redis_total_conns"] = str(stats.total_conns)
            details["redis_idle_conns"] = str(stats.idle_conns)
        report.details = details
        return report

    def liveness(self) -> dict[str, Any]:
        """Process is up; no dependency is consulted."""
        return {"status": "alive", "timestamp": int(self._clock.now())}
