#!/usr/bin/env python3
"""
Metrics Collector with Prometheus Integration

This module provides the process-wide Prometheus metrics for:
- HTTP traffic (count, latency histogram, in-flight gauge)
- Cache hit/miss rates per tier and single-flight sharing
- Rate limiter rejections and local fallbacks
- Circuit breaker states and failures
- Connection pool gauges and counters (MySQL, Redis)

Architectural Decision: prometheus-client for industry-standard metrics
- Compatible with Grafana dashboards
- Histogram buckets for latency percentiles
- Module-level metric objects; MetricsCollector is a thin recording facade

Author: Senior Solution Architect
Date: 2025-12-05
"""


from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from src.core.config.constants import CircuitState
from src.core.config.settings import Settings, get_settings
from src.core.logging.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# Metric Definitions
# ============================================================================

# HTTP metrics
HTTP_REQUESTS = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['method', 'path', 'status']
)

HTTP_REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency in seconds',
    ['method', 'path'],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

HTTP_IN_FLIGHT = Gauge(
    'http_requests_in_flight',
    'Number of HTTP requests currently being served'
)

# Cache metrics
CACHE_HITS = Counter(
    'cache_hits_total',
    'Total cache hits',
    ['tier']  # l1, l2, negative
)

CACHE_MISSES = Counter(
    'cache_misses_total',
    'Total cache misses',
    ['tier']
)

CACHE_LOADS = Counter(
    'cache_loads_total',
    'Loader invocations by outcome',
    ['result']  # success, not_found, error
)

SINGLEFLIGHT_SHARED = Counter(
    'singleflight_shared_total',
    'Callers that joined an in-flight load instead of starting one'
)

# Rate limiting metrics
RATE_LIMIT_EXCEEDED = Counter(
    'rate_limit_exceeded_total',
    'Total rate limit rejections',
    ['limiter']
)

RATE_LIMIT_FALLBACK = Counter(
    'rate_limit_fallback_total',
    'Distributed limiter decisions served by the local fallback',
    ['limiter']
)

# Circuit breaker metrics
CIRCUIT_BREAKER_STATE = Gauge(
    'circuit_breaker_state',
    'Circuit breaker state (0=closed, 1=half_open, 2=open)',
    ['name']
)

CIRCUIT_BREAKER_FAILURES = Counter(
    'circuit_breaker_failures_total',
    'Total circuit breaker recorded failures',
    ['name']
)

# MySQL pool metrics
MYSQL_POOL_OPEN = Gauge('mysql_pool_open_connections', 'Open MySQL connections')
MYSQL_POOL_IN_USE = Gauge('mysql_pool_in_use_connections', 'MySQL connections checked out')
MYSQL_POOL_IDLE = Gauge('mysql_pool_idle_connections', 'Idle MySQL connections')
MYSQL_POOL_WAIT_COUNT = Counter('mysql_pool_wait_count', 'Checkouts that had to wait')
MYSQL_POOL_WAIT_DURATION = Counter('mysql_pool_wait_duration_seconds', 'Time spent waiting for a connection')
MYSQL_POOL_STALE = Counter('mysql_pool_stale_connections', 'MySQL connections invalidated or recycled')

# Redis pool metrics
REDIS_POOL_TOTAL = Gauge('redis_pool_total_connections', 'Redis connections owned by the pool')
REDIS_POOL_IDLE = Gauge('redis_pool_idle_connections', 'Idle Redis connections')
REDIS_POOL_HITS = Counter('redis_pool_hits', 'Checkouts served by an idle connection')
REDIS_POOL_MISSES = Counter('redis_pool_misses', 'Checkouts that had to dial')
REDIS_POOL_TIMEOUTS = Counter('redis_pool_timeouts', 'Checkouts that timed out waiting')
REDIS_POOL_STALE = Counter('redis_pool_stale_connections', 'Redis connections recycled for age')

# App info
APP_INFO = Info(
    'app',
    'Application information'
)

_CIRCUIT_STATE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


class MetricsCollector:
    """
    Centralized metrics collector.

    STAGE-M: Metrics collection

    Usage:
        metrics = get_metrics_collector()
        metrics.record_http_request("GET", "/users/{id}", 200, 0.004)
        output = metrics.get_prometheus_metrics()
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

        APP_INFO.info({
            'version': self.settings.app.APP_VERSION,
            'environment': self.settings.app.ENVIRONMENT,
            'app_name': self.settings.app.APP_NAME
        })

        logger.info("Metrics collector initialized", stage="M.0")

    # =========================================================================
    # HTTP Metrics
    # =========================================================================

    def record_http_request(self, method: str, path: str, status: int, duration_seconds: float) -> None:
        HTTP_REQUESTS.labels(method=method, path=path, status=str(status)).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=path).observe(duration_seconds)

    def increment_in_flight(self) -> None:
        HTTP_IN_FLIGHT.inc()

    def decrement_in_flight(self) -> None:
        HTTP_IN_FLIGHT.dec()

    # =========================================================================
    # Cache Metrics
    # =========================================================================

    def record_cache_hit(self, tier: str) -> None:
        """Record cache hit."""
        CACHE_HITS.labels(tier=tier).inc()

    def record_cache_miss(self, tier: str) -> None:
        """Record cache miss."""
        CACHE_MISSES.labels(tier=tier).inc()

    def record_cache_load(self, result: str) -> None:
        CACHE_LOADS.labels(result=result).inc()

    def record_singleflight_shared(self) -> None:
        SINGLEFLIGHT_SHARED.inc()

    # =========================================================================
    # Rate Limiting Metrics
    # =========================================================================

    def record_rate_limit_exceeded(self, limiter: str) -> None:
        """Record rate limit exceeded event."""
        RATE_LIMIT_EXCEEDED.labels(limiter=limiter).inc()

    def record_rate_limit_fallback(self, limiter: str) -> None:
        RATE_LIMIT_FALLBACK.labels(limiter=limiter).inc()

    # =========================================================================
    # Circuit Breaker Metrics
    # =========================================================================

    def set_circuit_state(self, name: str, state: CircuitState) -> None:
        """Set circuit breaker state."""
        CIRCUIT_BREAKER_STATE.labels(name=name).set(_CIRCUIT_STATE_VALUES.get(state, 0))

    def record_circuit_failure(self, name: str) -> None:
        """Record circuit breaker failure."""
        CIRCUIT_BREAKER_FAILURES.labels(name=name).inc()

    # =========================================================================
    # Pool Metrics
    # =========================================================================

    def set_mysql_pool(self, open_conns: int, in_use: int, idle: int) -> None:
        MYSQL_POOL_OPEN.set(open_conns)
        MYSQL_POOL_IN_USE.set(in_use)
        MYSQL_POOL_IDLE.set(idle)

    def add_mysql_pool_deltas(self, wait_count: int, wait_duration: float, stale: int) -> None:
        # Counters only move forward; negative deltas mean the pool was rebuilt
        if wait_count > 0:
            MYSQL_POOL_WAIT_COUNT.inc(wait_count)
        if wait_duration > 0:
            MYSQL_POOL_WAIT_DURATION.inc(wait_duration)
        if stale > 0:
            MYSQL_POOL_STALE.inc(stale)

    def set_redis_pool(self, total: int, idle: int) -> None:
        REDIS_POOL_TOTAL.set(total)
        REDIS_POOL_IDLE.set(idle)

    def add_redis_pool_deltas(self, hits: int, misses: int, timeouts: int, stale: int) -> None:
        for counter, delta in (
            (REDIS_POOL_HITS, hits),
            (REDIS_POOL_MISSES, misses),
            (REDIS_POOL_TIMEOUTS, timeouts),
            (REDIS_POOL_STALE, stale),
        ):
            if delta > 0:
                counter.inc(delta)

    # =========================================================================
    # Export
    # =========================================================================

    def get_prometheus_metrics(self) -> bytes:
        """
        Get Prometheus metrics output.

        Returns:
            bytes: Prometheus text format metrics
        """
        return generate_latest(REGISTRY)

    def get_content_type(self) -> str:
        """Get Prometheus content type."""
        return CONTENT_TYPE_LATEST


# Global metrics collector
_metrics: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
