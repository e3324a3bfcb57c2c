"""
Service Lifecycle

STAGE-L: Ordered startup and shutdown

ServiceContainer owns every collaborator on the request path. Middleware and
routes receive the container (through ``app.state.container``) instead of
reaching for module globals, so tests can build one against fakes.

Startup order:
    1. MySQL pool          (required in production, optional otherwise)
    2. Redis client        (same policy)
    3. L1 cache + multi-level cache
    4. Rate limiters       (general and auth: distributed when Redis is up,
                            local otherwise)
    5. Pool telemetry collector

Shutdown runs the reverse: limiters, collector, L1, Redis, MySQL, then logs
are flushed. Every step is attempted even if an earlier one fails.

Author: System Architect
Date: 2025-12-15
"""

from src.core.clock import SYSTEM_CLOCK, Clock
from src.core.config.constants import Stage
from src.core.config.settings import Settings
from src.core.exceptions import BackendUnavailableError, CacheConnectionError
from src.core.logging.logger import flush_logging, get_logger
from src.core.resilience.circuit_breaker import BreakerConfig, CircuitBreakerRegistry
from src.core.resilience.rate_limiter import RateLimiter, RateLimiterRegistry
from src.infrastructure.cache.local_cache import LocalCache
from src.infrastructure.cache.multi_level import MultiLevelCache
from src.infrastructure.cache.redis_client import RedisClient
from src.infrastructure.database.pool import DatabasePool
from src.infrastructure.monitoring.health_checker import HealthChecker
from src.infrastructure.monitoring.metrics_collector import MetricsCollector, get_metrics_collector
from src.infrastructure.monitoring.pool_collector import PoolMetricsCollector
from src.infrastructure.rate_limiting import DistributedTokenBucket, SlidingWindowLimiter

logger = get_logger(__name__)

GENERAL_LIMITER = "general"
AUTH_LIMITER = "auth"


class ServiceContainer:
    """
    Holds the collaborators built at startup.

    Collaborators that need no I/O (registries, local limiters, the token
    validator) exist from construction; the rest are filled in by startup().

    Usage:
        container = ServiceContainer(settings)
        await container.startup()
        ...
        await container.shutdown()
    """

    def __init__(
        self,
        settings: Settings,
        clock: Clock = SYSTEM_CLOCK,
        metrics: MetricsCollector | None = None,
        database: DatabasePool | None = None,
        redis: RedisClient | None = None,
    ):
        self.settings = settings
        self.clock = clock
        self.metrics = metrics or get_metrics_collector()

        self._database_override = database
        self._redis_override = redis
        self.database: DatabasePool | None = None
        self.redis: RedisClient | None = None
        self.local_cache: LocalCache | None = None
        self.cache: MultiLevelCache | None = None
        self.health: HealthChecker = HealthChecker(None, None, settings, clock=clock)
        self.pool_collector: PoolMetricsCollector | None = None

        rl = settings.rate_limit
        self.limiters = RateLimiterRegistry(clock=clock)
        self.local_limiter = self.limiters.create(
            GENERAL_LIMITER,
            rate=rl.RATE_LIMIT_RATE,
            burst=rl.RATE_LIMIT_BURST,
            max_identities=rl.RATE_LIMIT_MAX_IDENTITIES,
            ttl=rl.RATE_LIMIT_IDENTITY_TTL,
            cleanup_interval=rl.RATE_LIMIT_CLEANUP_INTERVAL,
        )
        self.local_auth_limiter = self.limiters.create(
            AUTH_LIMITER,
            rate=rl.AUTH_RATE_LIMIT_RATE,
            burst=rl.AUTH_RATE_LIMIT_BURST,
            max_identities=rl.RATE_LIMIT_MAX_IDENTITIES,
            ttl=rl.RATE_LIMIT_IDENTITY_TTL,
            cleanup_interval=rl.RATE_LIMIT_CLEANUP_INTERVAL,
        )
        self.rate_limiter: RateLimiter = self.local_limiter
        self.auth_limiter: RateLimiter = self.local_auth_limiter

        self.breakers = CircuitBreakerRegistry(
            BreakerConfig.from_settings(settings), clock=clock, metrics=self.metrics
        )

        # Imported here: the dependencies module imports this one
        from src.application.api.dependencies import JWTTokenValidator

        self.token_validator = (
            JWTTokenValidator(settings.security) if settings.security.JWT_SECRET else None
        )
        self.started = False

    # =========================================================================
    # Startup
    # =========================================================================

    async def _open_database(self) -> None:
        database = self._database_override
        if database is None:
            if not self.settings.database.DATABASE_URL:
                if self.settings.is_production:
                    raise BackendUnavailableError(
                        "DATABASE_URL is required in production", details={"backend": "mysql"}
                    )
                logger.info("Database not configured, running without MySQL", stage=Stage.STARTUP.value)
                return
            database = DatabasePool(self.settings)
        try:
            await database.connect()
        except BackendUnavailableError as e:
            if self.settings.is_production:
                raise
            logger.warning("Database unavailable, continuing without MySQL",
                           stage=Stage.STARTUP.value, error=e.message)
            return
        self.database = database

    async def _open_redis(self) -> None:
        redis = self._redis_override
        if redis is None:
            if not self.settings.redis.REDIS_ENABLED:
                if self.settings.is_production:
                    raise BackendUnavailableError(
                        "Redis is required in production", details={"backend": "redis"}
                    )
                logger.info("Redis disabled, running with L1 cache only", stage=Stage.STARTUP.value)
                return
            redis = RedisClient(self.settings)
        try:
            await redis.connect()
        except CacheConnectionError as e:
            if self.settings.is_production:
                raise BackendUnavailableError(
                    f"redis unreachable: {e.message}", details={"backend": "redis"}
                ) from e
            logger.warning("Redis unavailable, continuing with L1 cache only",
                           stage=Stage.STARTUP.value, error=e.message)
            return
        self.redis = redis

    def _init_caches(self) -> None:
        cfg = self.settings.cache
        self.local_cache = LocalCache(
            max_cost=cfg.CACHE_L1_MAX_COST,
            num_counters=cfg.CACHE_L1_NUM_COUNTERS,
            buffer_items=cfg.CACHE_L1_BUFFER_ITEMS,
            cleanup_interval=cfg.CACHE_L1_CLEANUP_INTERVAL,
            clock=self.clock,
        )
        self.local_cache.start()
        self.cache = MultiLevelCache(
            self.local_cache, self.redis, settings=self.settings, metrics=self.metrics, clock=self.clock
        )

    def _init_limiters(self) -> None:
        self.limiters.start_all()
        rl = self.settings.rate_limit
        if self.redis is not None and rl.RATE_LIMIT_DISTRIBUTED:
            self.rate_limiter = SlidingWindowLimiter(
                self.redis,
                limit=rl.RATE_LIMIT_WINDOW_LIMIT,
                window=rl.RATE_LIMIT_WINDOW,
                fallback=self.local_limiter,
                clock=self.clock,
                metrics=self.metrics,
                op_timeout=self.settings.redis.REDIS_READ_TIMEOUT,
            )
            # Login throttling must hold across replicas too
            self.auth_limiter = DistributedTokenBucket(
                self.redis,
                rate=rl.AUTH_RATE_LIMIT_RATE,
                capacity=rl.AUTH_RATE_LIMIT_BURST,
                fallback=self.local_auth_limiter,
                clock=self.clock,
                metrics=self.metrics,
                name=AUTH_LIMITER,
                op_timeout=self.settings.redis.REDIS_READ_TIMEOUT,
            )
            mode = "distributed"
        else:
            self.rate_limiter = self.local_limiter
            self.auth_limiter = self.local_auth_limiter
            mode = "local"
        logger.info("Rate limiting ready", stage=Stage.STARTUP.value, mode=mode)

    async def startup(self) -> None:
        logger.info(
            "Starting service",
            stage=Stage.STARTUP.value,
            environment=self.settings.app.ENVIRONMENT,
            version=self.settings.app.APP_VERSION,
        )
        await self._open_database()
        await self._open_redis()
        self._init_caches()
        self._init_limiters()

        self.health = HealthChecker(self.database, self.redis, self.settings, clock=self.clock)
        self.pool_collector = PoolMetricsCollector(
            self.database,
            self.redis,
            metrics=self.metrics,
            interval=self.settings.telemetry.POOL_METRICS_INTERVAL,
        )
        self.pool_collector.start()

        self.started = True
        logger.info(
            "Service startup complete",
            stage=Stage.STARTUP.value,
            mysql=self.database is not None,
            redis=self.redis is not None,
        )

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def shutdown(self) -> None:
        logger.info("Shutting down service", stage=Stage.SHUTDOWN.value)

        await self.limiters.stop_all()

        if self.pool_collector is not None:
            await self.pool_collector.stop()

        if self.local_cache is not None:
            await self.local_cache.close()

        if self.redis is not None:
            try:
                await self.redis.disconnect()
            except Exception as e:
                logger.error("Redis close failed", stage=Stage.SHUTDOWN.value, error=str(e))

        if self.database is not None:
            try:
                await self.database.close()
            except Exception as e:
                logger.error("Database close failed", stage=Stage.SHUTDOWN.value, error=str(e))

        self.started = False
        logger.info("Service shutdown complete", stage=Stage.SHUTDOWN.value)
        flush_logging()
