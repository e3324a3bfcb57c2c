"""
Database Connection Pool

STAGE-K.0: MySQL pool with health probe and statistics

A thin wrapper over SQLAlchemy's async engine (aiomysql driver). The request
path only needs three things from the database layer:

- connect(): build the engine and prove the database answers (fail fast)
- ping(): a bounded ``SELECT 1`` for health checks
- stats(): cumulative pool counters for the pool telemetry collector

Pool counters come from SQLAlchemy pool events:
- wait_count / wait_duration: checkouts that found the pool exhausted, and
  how long they waited for a connection
- stale_closed: connections invalidated or recycled past DB_POOL_RECYCLE

Author: System Architect
Date: 2025-12-14
"""

import asyncio
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass

from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from src.core.config.constants import Stage
from src.core.exceptions import BackendUnavailableError, DatabaseError
from src.core.logging.logger import get_logger, log_stage

logger = get_logger(__name__)


@dataclass
class DBPoolStats:
    """Snapshot of pool state; wait and stale fields are cumulative."""

    open_connections: int = 0
    in_use: int = 0
    idle: int = 0
    wait_count: int = 0
    wait_duration: float = 0.0
    stale_closed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class DatabasePool:
    """
    Usage:
        pool = DatabasePool(settings)
        await pool.connect()
        await pool.ping(timeout=2.0)
        pool.stats().in_use
        await pool.close()
    """

    def __init__(self, settings, engine: AsyncEngine | None = None):
        self.settings = settings
        self._engine = engine
        self._lock = threading.Lock()
        self._wait_count = 0
        self._wait_duration = 0.0
        self._stale_closed = 0
        if engine is not None:
            self._install_listeners(engine)

    @property
    def configured(self) -> bool:
        return bool(self.settings.database.DATABASE_URL) or self._engine is not None

    @property
    def engine(self) -> AsyncEngine | None:
        return self._engine

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Create the engine and verify connectivity.

        Raises:
            BackendUnavailableError: DATABASE_URL is unset or the database does not answer
        """
        cfg = self.settings.database
        if self._engine is None:
            if not cfg.DATABASE_URL:
                raise BackendUnavailableError("DATABASE_URL is not configured", details={"backend": "mysql"})
            self._engine = create_async_engine(
                cfg.DATABASE_URL,
                pool_size=cfg.DB_POOL_SIZE,
                max_overflow=cfg.DB_MAX_OVERFLOW,
                pool_timeout=cfg.DB_POOL_TIMEOUT,
                pool_recycle=cfg.DB_POOL_RECYCLE,
                pool_pre_ping=True,
            )
            self._install_listeners(self._engine)

        log_stage(logger, Stage.STARTUP.value, "Connecting to database")
        try:
            await self.ping(timeout=self.settings.telemetry.HEALTH_PING_TIMEOUT)
        except DatabaseError as e:
            raise BackendUnavailableError(
                f"database unreachable: {e.message}", details={"backend": "mysql"}
            ) from e

        logger.info(
            "Database pool ready",
            stage=Stage.STARTUP.value,
            pool_size=cfg.DB_POOL_SIZE,
            max_overflow=cfg.DB_MAX_OVERFLOW,
        )

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            logger.info("Database pool closed", stage=Stage.SHUTDOWN.value)

    # -------------------------------------------------------------------------
    # Pool events
    # -------------------------------------------------------------------------

    def _install_listeners(self, engine: AsyncEngine) -> None:
        pool = engine.sync_engine.pool

        @event.listens_for(pool, "invalidate")
        def on_invalidate(dbapi_conn, connection_record, exception):
            with self._lock:
                self._stale_closed += 1

        @event.listens_for(pool, "soft_invalidate")
        def on_soft_invalidate(dbapi_conn, connection_record, exception):
            with self._lock:
                self._stale_closed += 1

    def _pool_exhausted(self) -> bool:
        pool = self._engine.sync_engine.pool
        size = pool.size() if hasattr(pool, "size") else 0
        overflow = getattr(pool, "_max_overflow", 0)
        checked_out = pool.checkedout() if hasattr(pool, "checkedout") else 0
        return size > 0 and checked_out >= size + max(0, overflow)

    @asynccontextmanager
    async def connection(self):
        """Check out a connection, recording the wait if the pool was exhausted."""
        if self._engine is None:
            raise DatabaseError("database pool is not connected")
        exhausted = self._pool_exhausted()
        started = time.perf_counter()
        async with self._engine.connect() as conn:
            if exhausted:
                with self._lock:
                    self._wait_count += 1
                    self._wait_duration += time.perf_counter() - started
            yield conn

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def ping(self, timeout: float | None = None) -> None:
        """
        Run ``SELECT 1`` within ``timeout`` seconds.

        Raises:
            DatabaseError: The query failed or timed out
        """

        async def _probe() -> None:
            async with self.connection() as conn:
                await conn.execute(text("SELECT 1"))

        try:
            if timeout is None:
                await _probe()
            else:
                await asyncio.wait_for(_probe(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise DatabaseError("database ping timed out", details={"timeout": timeout}) from e
        except (SQLAlchemyError, OSError) as e:
            raise DatabaseError(f"database ping failed: {e}") from e

    def stats(self) -> DBPoolStats:
        with self._lock:
            snapshot = DBPoolStats(
                wait_count=self._wait_count,
                wait_duration=self._wait_duration,
                stale_closed=self._stale_closed,
            )
        if self._engine is None:
            return snapshot
        pool = self._engine.sync_engine.pool
        in_use = pool.checkedout() if hasattr(pool, "checkedout") else 0
        idle = pool.checkedin() if hasattr(pool, "checkedin") else 0
        snapshot.in_use = in_use
        snapshot.idle = idle
        snapshot.open_connections = in_use + idle
        return snapshot
