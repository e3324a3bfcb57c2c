"""
Redis Client with Connection Pooling

Architecture:
    RedisClient (Public API)
        ├── ConnectionManager (pool lifecycle, startup ping, min-idle warm-up)
        │   └── InstrumentedConnectionPool (hit/miss/timeout/stale counters,
        │                                   idle-age and lifetime recycling)
        ├── OperationExecutor (command execution: retries, deadlines, error mapping)
        └── HealthMonitor (ping latency and pool utilization)

Pool policy:
    - size max(100, 10 x CPU); callers block up to POOL_TIMEOUT for a slot
    - connections idle for more than CONN_MAX_IDLE_TIME or older than
      CONN_MAX_LIFETIME are reconnected when checked out
    - MIN_IDLE_CONNS connections are opened at startup
    - transport failures are retried MAX_RETRIES times with exponential
      backoff between MIN_RETRY_BACKOFF and MAX_RETRY_BACKOFF

redis-py exposes a single socket timeout; it is set to the read timeout,
and each call is additionally bounded by the caller's request deadline.

Author: Refactored for clarity and maintainability
Date: 2025-12-13
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass
from typing import Any, TypeVar

import redis.asyncio as redis
from redis.asyncio.connection import BlockingConnectionPool
from redis.exceptions import ConnectionError, RedisError, TimeoutError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.core.config.settings import Settings, get_settings
from src.core.exceptions import CacheConnectionError, CacheKeyError, CacheTimeoutError
from src.core.logging.logger import get_logger

logger = get_logger(__name__)
_retry_logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PoolStats:
    """Snapshot of pool counters. Counters are cumulative since pool creation."""

    total_conns: int = 0
    idle_conns: int = 0
    hits: int = 0
    misses: int = 0
    timeouts: int = 0
    stale_conns: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


# =============================================================================
# LAYER 1: CONNECTION MANAGEMENT
# Handles pool lifecycle, instrumentation, and warm-up
# =============================================================================


class InstrumentedConnectionPool(BlockingConnectionPool):
    """
    Blocking pool that records checkout outcomes and recycles old connections.

    - hit: an idle connection was available
    - miss: a new connection had to be dialled
    - timeout: no connection freed up within the pool timeout
    - stale: a connection was recycled for idle age or lifetime
    """

    def __init__(self, *args, max_idle_time: float = 300.0, max_lifetime: float = 1800.0, **kwargs):
        super().__init__(*args, **kwargs)
        self._max_idle_time = max_idle_time
        self._max_lifetime = max_lifetime
        self._created_at: dict[int, float] = {}
        self._released_at: dict[int, float] = {}
        self.hits = 0
        self.misses = 0
        self.timeouts = 0
        self.stale_conns = 0

    def idle_count(self) -> int:
        return len(getattr(self, "_available_connections", ()))

    def total_count(self) -> int:
        return self.idle_count() + len(getattr(self, "_in_use_connections", ()))

    async def get_connection(self, *args, **kwargs):
        had_idle = self.idle_count() > 0
        try:
            connection = await super().get_connection(*args, **kwargs)
        except ConnectionError as e:
            if "No connection available" in str(e):
                self.timeouts += 1
            raise

        if had_idle:
            self.hits += 1
        else:
            self.misses += 1

        now = time.monotonic()
        key = id(connection)
        created = self._created_at.setdefault(key, now)
        released = self._released_at.pop(key, None)
        too_old = now - created > self._max_lifetime
        too_idle = released is not None and now - released > self._max_idle_time
        if too_old or too_idle:
            self.stale_conns += 1
            await connection.disconnect()
            self._created_at[key] = now
            try:
                await connection.connect()
            except (ConnectionError, TimeoutError, OSError):
                await self.release(connection)
                raise
        return connection

    async def release(self, connection) -> None:
        self._released_at[id(connection)] = time.monotonic()
        await super().release(connection)

    async def disconnect(self, inuse_connections: bool = True) -> None:
        await super().disconnect(inuse_connections)
        self._created_at.clear()
        self._released_at.clear()

    def stats(self) -> PoolStats:
        return PoolStats(
            total_conns=self.total_count(),
            idle_conns=self.idle_count(),
            hits=self.hits,
            misses=self.misses,
            timeouts=self.timeouts,
            stale_conns=self.stale_conns,
        )


class ConnectionManager:
    """
    Manages Redis connection lifecycle and pooling.

    Responsibility: Connection establishment, warm-up, and cleanup.
    """

    def __init__(self, settings: Settings, client: redis.Redis | None = None):
        """
        Args:
            settings: Application settings
            client: Pre-built client (tests, embedding); skips pool creation
        """
        self._settings = settings
        self._pool: InstrumentedConnectionPool | None = None
        self._client: redis.Redis | None = client
        self._is_connected = client is not None

    async def connect(self) -> redis.Redis:
        """
        Create the pool, verify it with a bounded ping and warm idle connections.

        STAGE-REDIS.2: Connection establishment

        Raises:
            CacheConnectionError: If Redis is unreachable within the startup ping timeout
        """
        if self._is_connected and self._client:
            return self._client

        cfg = self._settings.redis
        # STAGE-REDIS.2.1: Create connection pool
        self._pool = InstrumentedConnectionPool(
            host=cfg.REDIS_HOST,
            port=cfg.REDIS_PORT,
            db=cfg.REDIS_DB,
            password=cfg.REDIS_PASSWORD,
            max_connections=cfg.REDIS_POOL_SIZE,
            timeout=cfg.REDIS_POOL_TIMEOUT,
            socket_connect_timeout=cfg.REDIS_DIAL_TIMEOUT,
            socket_timeout=cfg.REDIS_READ_TIMEOUT,
            decode_responses=True,  # Return strings instead of bytes
            max_idle_time=cfg.REDIS_CONN_MAX_IDLE_TIME,
            max_lifetime=cfg.REDIS_CONN_MAX_LIFETIME,
        )
        self._client = redis.Redis(connection_pool=self._pool)

        try:
            # STAGE-REDIS.2.2: Verify connection with a bounded ping
            await asyncio.wait_for(self._client.ping(), timeout=cfg.REDIS_STARTUP_PING_TIMEOUT)
            # STAGE-REDIS.2.3: Open the minimum idle set
            await self.warm_up(cfg.REDIS_MIN_IDLE_CONNS)
        except (ConnectionError, TimeoutError, asyncio.TimeoutError, OSError) as e:
            logger.error("Failed to connect to Redis", stage="REDIS.2", error=str(e))
            await self._pool.disconnect()
            self._client = None
            self._pool = None
            raise CacheConnectionError(
                message=f"Failed to connect to Redis: {e}",
                details={"host": cfg.REDIS_HOST, "port": cfg.REDIS_PORT},
            ) from e

        self._is_connected = True
        logger.info(
            "Redis connected successfully",
            stage="REDIS.2",
            host=cfg.REDIS_HOST,
            port=cfg.REDIS_PORT,
            pool_size=cfg.REDIS_POOL_SIZE,
            min_idle=cfg.REDIS_MIN_IDLE_CONNS,
        )
        return self._client

    async def warm_up(self, count: int) -> int:
        """Open ``count`` connections and return them to the pool idle."""
        if self._pool is None or count <= 0:
            return 0
        connections = []
        try:
            for _ in range(min(count, self._pool.max_connections)):
                connections.append(await self._pool.get_connection("PING"))
        finally:
            for connection in connections:
                await self._pool.release(connection)
        return len(connections)

    async def disconnect(self) -> None:
        """
        Close the client and every pooled connection.

        STAGE-REDIS.3: Connection cleanup
        """
        if self._client:
            await self._client.aclose()
        if self._pool:
            await self._pool.disconnect()
        self._client = None
        self._is_connected = False
        logger.info("Redis disconnected", stage="REDIS.3")

    def get_client(self) -> redis.Redis | None:
        return self._client

    def get_pool(self) -> InstrumentedConnectionPool | None:
        return self._pool

    def is_connected(self) -> bool:
        return self._is_connected


# =============================================================================
# LAYER 2: OPERATION EXECUTOR
# Executes Redis commands with retries, deadlines, and error mapping
# =============================================================================


class OperationExecutor:
    """
    Executes Redis operations with consistent error handling.

    Error Handling Strategy:
    - ConnectionError / TimeoutError: retried with exponential backoff
    - deadline exceeded → CacheTimeoutError
    - exhausted retries on transport errors → CacheConnectionError
    - any other RedisError → CacheKeyError with the key in details
    """

    def __init__(self, redis_client: redis.Redis, settings: Settings):
        self._redis = redis_client
        self._settings = settings
        self._scripts: dict[str, Any] = {}

    def _retrying(self) -> AsyncRetrying:
        cfg = self._settings.redis
        return AsyncRetrying(
            stop=stop_after_attempt(cfg.REDIS_MAX_RETRIES + 1),
            wait=wait_exponential(
                multiplier=cfg.REDIS_MIN_RETRY_BACKOFF,
                min=cfg.REDIS_MIN_RETRY_BACKOFF,
                max=cfg.REDIS_MAX_RETRY_BACKOFF,
            ),
            retry=retry_if_exception_type((ConnectionError, TimeoutError)),
            before_sleep=before_sleep_log(_retry_logger, logging.WARNING),
            reraise=True,
        )

    async def _with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        async for attempt in self._retrying():
            with attempt:
                return await call()
        raise AssertionError("unreachable")  # pragma: no cover

    async def run(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        key: Any = None,
        timeout: float | None = None,
    ) -> T:
        """
        Execute ``call`` under the retry policy and an optional deadline.

        STAGE-REDIS.<OP>: Redis operation
        """
        stage = f"REDIS.{operation}"
        try:
            if timeout is None:
                return await self._with_retries(call)
            return await asyncio.wait_for(self._with_retries(call), timeout=max(timeout, 0.0))
        except asyncio.TimeoutError as e:
            logger.warning("Redis operation timed out", stage=stage, key=key, timeout=timeout)
            raise CacheTimeoutError(
                message=f"Redis {operation} timed out", details={"key": key, "timeout": timeout}
            ) from e
        except TimeoutError as e:
            logger.error("Redis operation failed", stage=stage, key=key, error=str(e))
            raise CacheTimeoutError(message=f"Redis {operation} failed: {e}", details={"key": key}) from e
        except ConnectionError as e:
            logger.error("Redis operation failed", stage=stage, key=key, error=str(e))
            raise CacheConnectionError(message=f"Redis {operation} failed: {e}", details={"key": key}) from e
        except RedisError as e:
            logger.error("Redis operation failed", stage=stage, key=key, error=str(e))
            raise CacheKeyError(message=f"Redis {operation} failed: {e}", details={"key": key}) from e

    # -------------------------------------------------------------------------
    # Basic Operations
    # -------------------------------------------------------------------------

    async def get(self, key: str, timeout: float | None = None) -> str | None:
        return await self.run("GET", lambda: self._redis.get(key), key, timeout)

    async def get_with_ttl(self, key: str, timeout: float | None = None) -> tuple[str | None, float | None]:
        """
        GET and PTTL in one round-trip.

        Returns:
            (value, remaining seconds); remaining is None when the key has no expiry
        """

        async def call() -> tuple[str | None, float | None]:
            async with self._redis.pipeline(transaction=False) as pipe:
                pipe.get(key)
                pipe.pttl(key)
                value, pttl = await pipe.execute()
            if value is None:
                return None, None
            return value, (pttl / 1000.0 if pttl is not None and pttl > 0 else None)

        return await self.run("GET", call, key, timeout)

    async def set(
        self,
        key: str,
        value: str,
        ttl: float | None = None,
        nx: bool = False,
        timeout: float | None = None,
    ) -> bool:
        px = int(ttl * 1000) if ttl else None
        result = await self.run("SET", lambda: self._redis.set(key, value, px=px, nx=nx), key, timeout)
        return bool(result)

    async def delete(self, *keys: str, timeout: float | None = None) -> int:
        if not keys:
            return 0
        return await self.run("DEL", lambda: self._redis.delete(*keys), list(keys), timeout)

    async def exists(self, *keys: str, timeout: float | None = None) -> int:
        return await self.run("EXISTS", lambda: self._redis.exists(*keys), list(keys), timeout)

    async def expire(self, key: str, ttl: int, timeout: float | None = None) -> bool:
        return await self.run("EXPIRE", lambda: self._redis.expire(key, ttl), key, timeout)

    async def ttl(self, key: str, timeout: float | None = None) -> int:
        """TTL in seconds, -1 if no TTL, -2 if key doesn't exist."""
        return await self.run("TTL", lambda: self._redis.ttl(key), key, timeout)

    async def incr(self, key: str, timeout: float | None = None) -> int:
        return await self.run("INCR", lambda: self._redis.incr(key), key, timeout)

    async def mget(self, keys: Sequence[str], timeout: float | None = None) -> list[str | None]:
        if not keys:
            return []
        return await self.run("MGET", lambda: self._redis.mget(list(keys)), list(keys), timeout)

    async def mset(self, mapping: dict[str, str], ttl: float | None = None, timeout: float | None = None) -> None:
        """Set several keys in one pipeline, each with the same TTL."""
        if not mapping:
            return

        async def call() -> None:
            px = int(ttl * 1000) if ttl else None
            async with self._redis.pipeline(transaction=False) as pipe:
                for k, v in mapping.items():
                    pipe.set(k, v, px=px)
                await pipe.execute()

        await self.run("MSET", call, list(mapping), timeout)

    async def run_script(
        self,
        script: str,
        keys: Sequence[str],
        args: Sequence[Any],
        timeout: float | None = None,
    ) -> Any:
        """Run a Lua script by SHA, loading it on first use."""
        registered = self._scripts.get(script)
        if registered is None:
            registered = self._redis.register_script(script)
            self._scripts[script] = registered
        return await self.run(
            "EVALSHA", lambda: registered(keys=list(keys), args=list(args)), list(keys), timeout
        )

    async def scan_iter(self, pattern: str, count: int = 100) -> AsyncIterator[str]:
        try:
            async for key in self._redis.scan_iter(match=pattern, count=count):
                yield key
        except RedisError as e:
            logger.error("Redis SCAN failed", stage="REDIS.SCAN", pattern=pattern, error=str(e))
            raise CacheKeyError(message=f"Redis SCAN failed: {e}", details={"pattern": pattern}) from e

    async def ping(self, timeout: float | None = None) -> bool:
        return bool(await self.run("PING", self._redis.ping, None, timeout))

    def pipeline(self, transaction: bool = False):
        """
        Create a pipeline for batch operations.

        Usage:
            async with executor.pipeline() as pipe:
                pipe.set("key1", "value1")
                results = await pipe.execute()
        """
        return self._redis.pipeline(transaction=transaction)


# =============================================================================
# LAYER 3: HEALTH MONITORING
# =============================================================================


class HealthMonitor:
    """
    Monitors Redis health and connection pool utilization.

    Warns when more than 80% of the pool is checked out.
    """

    def __init__(self, connection_manager: ConnectionManager, settings: Settings):
        self._conn_mgr = connection_manager
        self._settings = settings

    def pool_stats(self) -> PoolStats:
        pool = self._conn_mgr.get_pool()
        return pool.stats() if pool is not None else PoolStats()

    async def health_check(self, timeout: float | None = None) -> dict[str, Any]:
        """
        STAGE-REDIS.HEALTH: Redis health check

        Returns:
            Dict with health status, ping latency and pool utilization
        """
        stats = self.pool_stats()
        pool_size = self._settings.redis.REDIS_POOL_SIZE
        health: dict[str, Any] = {
            "status": "healthy",
            "connected": self._conn_mgr.is_connected(),
            "host": self._settings.redis.REDIS_HOST,
            "port": self._settings.redis.REDIS_PORT,
            "pool": stats.to_dict(),
            "pool_utilization_pct": 0.0,
            "pool_warning": False,
            "ping_latency_ms": None,
        }

        client = self._conn_mgr.get_client()
        if client is None:
            health["status"] = "unhealthy"
            health["error"] = "Client not initialized"
            return health

        try:
            start = time.perf_counter()
            await asyncio.wait_for(client.ping(), timeout=timeout or self._settings.telemetry.HEALTH_PING_TIMEOUT)
            health["ping_latency_ms"] = round((time.perf_counter() - start) * 1000, 2)
        except (RedisError, asyncio.TimeoutError, OSError) as e:
            health["status"] = "unhealthy"
            health["error"] = str(e)
            return health

        in_use = stats.total_conns - stats.idle_conns
        utilization = 100.0 * in_use / pool_size if pool_size else 0.0
        health["pool_utilization_pct"] = round(utilization, 1)
        if utilization > 80:
            health["pool_warning"] = True
            logger.warning(
                "Redis pool utilization high",
                stage="REDIS.HEALTH",
                pool_utilization=utilization,
                max_connections=pool_size,
            )
        return health


# =============================================================================
# LAYER 4: PUBLIC API
# =============================================================================


class RedisClient:
    """
    Async Redis client with connection pooling and health checks.

    Usage:
        client = RedisClient(settings)
        await client.connect()

        await client.set("user:42", payload, ttl=300)
        value, ttl = await client.get_with_ttl("user:42", timeout=ctx.bounded(1.0))

        await client.disconnect()

    Architecture:
        RedisClient (this class)
            ├── ConnectionManager (pool lifecycle)
            ├── OperationExecutor (command execution)
            └── HealthMonitor (health checks)
    """

    def __init__(self, settings: Settings | None = None, client: redis.Redis | None = None):
        """
        STAGE-REDIS.1: Client initialization

        Args:
            settings: Application settings (defaults to the global settings)
            client: Pre-built redis.asyncio client to wrap instead of creating a pool
        """
        self._settings = settings or get_settings()
        self._conn_mgr = ConnectionManager(self._settings, client)
        self._executor: OperationExecutor | None = (
            OperationExecutor(client, self._settings) if client is not None else None
        )
        self._health_monitor = HealthMonitor(self._conn_mgr, self._settings)

    async def connect(self) -> None:
        """
        STAGE-REDIS.2: Connection establishment

        Raises:
            CacheConnectionError: If connection fails
        """
        client = await self._conn_mgr.connect()
        self._executor = OperationExecutor(client, self._settings)

    async def disconnect(self) -> None:
        """STAGE-REDIS.3: Connection cleanup"""
        await self._conn_mgr.disconnect()
        self._executor = None

    @property
    def is_connected(self) -> bool:
        return self._conn_mgr.is_connected() and self._executor is not None

    def _require(self) -> OperationExecutor:
        if self._executor is None:
            raise CacheConnectionError(message="Redis client is not connected")
        return self._executor

    # -------------------------------------------------------------------------
    # Delegate to OperationExecutor
    # -------------------------------------------------------------------------

    async def get(self, key: str, timeout: float | None = None) -> str | None:
        return await self._require().get(key, timeout)

    async def get_with_ttl(self, key: str, timeout: float | None = None) -> tuple[str | None, float | None]:
        return await self._require().get_with_ttl(key, timeout)

    async def set(
        self, key: str, value: str, ttl: float | None = None, timeout: float | None = None
    ) -> bool:
        return await self._require().set(key, value, ttl, timeout=timeout)

    async def set_nx(self, key: str, value: str, ttl: float, timeout: float | None = None) -> bool:
        """SET key value NX with TTL; True if the key was created."""
        return await self._require().set(key, value, ttl, nx=True, timeout=timeout)

    async def delete(self, *keys: str, timeout: float | None = None) -> int:
        return await self._require().delete(*keys, timeout=timeout)

    async def exists(self, *keys: str, timeout: float | None = None) -> int:
        return await self._require().exists(*keys, timeout=timeout)

    async def expire(self, key: str, ttl: int, timeout: float | None = None) -> bool:
        return await self._require().expire(key, ttl, timeout)

    async def ttl(self, key: str, timeout: float | None = None) -> int:
        return await self._require().ttl(key, timeout)

    async def incr(self, key: str, timeout: float | None = None) -> int:
        return await self._require().incr(key, timeout)

    async def mget(self, keys: Sequence[str], timeout: float | None = None) -> list[str | None]:
        return await self._require().mget(keys, timeout)

    async def mset(self, mapping: dict[str, str], ttl: float | None = None, timeout: float | None = None) -> None:
        await self._require().mset(mapping, ttl, timeout)

    async def run_script(
        self, script: str, keys: Sequence[str], args: Sequence[Any], timeout: float | None = None
    ) -> Any:
        return await self._require().run_script(script, keys, args, timeout)

    def scan_iter(self, pattern: str, count: int = 100) -> AsyncIterator[str]:
        return self._require().scan_iter(pattern, count)

    def pipeline(self, transaction: bool = False):
        return self._require().pipeline(transaction)

    async def ping(self, timeout: float | None = None) -> bool:
        return await self._require().ping(timeout)

    def pool_stats(self) -> PoolStats:
        return self._health_monitor.pool_stats()

    async def health_check(self, timeout: float | None = None) -> dict[str, Any]:
        return await self._health_monitor.health_check(timeout)
