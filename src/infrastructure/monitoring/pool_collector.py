"""
Pool Telemetry Collector

STAGE-K.2: Periodic pool sampling

Every ``interval`` seconds the collector reads the MySQL and Redis pool
statistics. Gauges (open / in-use / idle connections) are exported as read.
The pools report cumulative counters (waits, hits, misses, timeouts, stale
closes); the collector remembers the previous sample and adds only the
difference to the Prometheus counters.

The "previous sample" memory is owned by the collector task alone.

Author: System Architect
Date: 2025-12-14
"""

import asyncio

from src.core.config.constants import Stage
from src.core.logging.logger import get_logger
from src.infrastructure.cache.redis_client import PoolStats, RedisClient
from src.infrastructure.database.pool import DatabasePool, DBPoolStats
from src.infrastructure.monitoring.metrics_collector import MetricsCollector, get_metrics_collector

logger = get_logger(__name__)


class PoolMetricsCollector:
    """
    Usage:
        collector = PoolMetricsCollector(database, redis, interval=15)
        collector.start()
        ...
        await collector.stop()
    """

    def __init__(
        self,
        database: DatabasePool | None,
        redis: RedisClient | None,
        metrics: MetricsCollector | None = None,
        interval: float = 15.0,
    ):
        self._database = database
        self._redis = redis
        self._metrics = metrics or get_metrics_collector()
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._last_db = DBPoolStats()
        self._last_redis = PoolStats()

    def collect_once(self) -> None:
        if self._database is not None:
            stats = self._database.stats()
            self._metrics.set_mysql_pool(stats.open_connections, stats.in_use, stats.idle)
            self._metrics.add_mysql_pool_deltas(
                wait_count=stats.wait_count - self._last_db.wait_count,
                wait_duration=stats.wait_duration - self._last_db.wait_duration,
                stale=stats.stale_closed - self._last_db.stale_closed,
            )
            self._last_db = stats

        if self._redis is not None and self._redis.is_connected:
            stats = self._redis.pool_stats()
            self._metrics.set_redis_pool(stats.total_conns, stats.idle_conns)
            self._metrics.add_redis_pool_deltas(
                hits=stats.hits - self._last_redis.hits,
                misses=stats.misses - self._last_redis.misses,
                timeouts=stats.timeouts - self._last_redis.timeouts,
                stale=stats.stale_conns - self._last_redis.stale_conns,
            )
            self._last_redis = stats

    async def _run(self) -> None:
        while True:
            try:
                self.collect_once()
            except Exception as e:
                logger.error("Pool metrics collection failed", stage=Stage.TELEMETRY.value, error=str(e))
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())
            logger.info("Pool metrics collector started", stage=Stage.TELEMETRY.value, interval=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Pool metrics collector stopped", stage=Stage.SHUTDOWN.value)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
