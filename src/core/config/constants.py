"""
System Constants and Enumerations

This module defines system-wide constants and enumerations used across
the resilient API core: header names, cache key prefixes, public error
codes and the fixed protocol values shared between processes.

Architectural Decision: Centralized constants for maintainability
- Single source of truth for magic numbers
- Key prefixes are a cross-process contract (every replica must agree)
- Type-safe enums for state management

Author: System Architect
Date: 2025-12-05
"""

from enum import Enum

# ============================================================================
# Stage Identifiers (for structured logging)
# ============================================================================


class Stage(str, Enum):
    """
    Request processing stages used as the ``stage`` field of log records.

    Format: {PREFIX}.{STEP}_{DESCRIPTIVE_NAME}
    """

    STARTUP = "L.1_STARTUP"
    SHUTDOWN = "L.2_SHUTDOWN"
    REQUEST = "J.1_REQUEST"
    AUTH = "J.2_AUTH"
    DEBUG = "J.3_DEBUG"
    CACHE_LOOKUP = "F.1_CACHE_LOOKUP"
    CACHE_LOAD = "F.2_CACHE_LOAD"
    CACHE_INVALIDATE = "F.3_CACHE_INVALIDATE"
    RATE_LIMITING = "G.1_RATE_LIMITING"
    DISTRIBUTED_RATE_LIMITING = "H.1_DISTRIBUTED_RATE_LIMITING"
    CIRCUIT_BREAKER = "I.1_CIRCUIT_BREAKER"
    HEALTH = "K.1_HEALTH"
    TELEMETRY = "K.2_TELEMETRY"


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    HALF_OPEN = "half-open"
    OPEN = "open"


class CacheTier(str, Enum):
    """Cache tier labels used in metrics."""

    L1 = "l1"
    L2 = "l2"
    NEGATIVE = "negative"
    BLOOM = "bloom"


class HealthStatus(str, Enum):
    """Overall service health classification."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


# ============================================================================
# HTTP Headers
# ============================================================================

HEADER_REQUEST_ID = "X-Request-ID"
HEADER_RETRY_AFTER = "Retry-After"
HEADER_AUTHORIZATION = "Authorization"

# ============================================================================
# Cache / Redis Key Prefixes
# ============================================================================

KEY_PREFIX_NULL = "null:"
KEY_PREFIX_LOCK = "lock:"
KEY_PREFIX_RATE_LIMIT = "ratelimit:"
KEY_PREFIX_TOKEN_BUCKET = "tokenbucket:"
KEY_PREFIX_TOKEN_BLACKLIST = "token:blacklist:"
KEY_PREFIX_NAMESPACE = "ns:"

KEY_USER = "user:{id}"
KEY_USERS_PAGE = "users:page:{page}:{size}"

# Payload stored under a negative-cache key
NULL_SENTINEL = "1"

# ============================================================================
# Fixed protocol values
# ============================================================================

NEGATIVE_CACHE_TTL = 60  # seconds
LOCK_TTL = 10  # seconds
TOKEN_BUCKET_KEY_TTL = 60  # seconds
SCAN_BATCH_SIZE = 100
L1_SAMPLE_SIZE = 5
SKETCH_DEPTH = 4
SKETCH_COUNTER_MAX = 15

# Paths the access log never records
DEFAULT_ACCESS_LOG_SKIP_PATHS = ("/ping", "/health", "/metrics")

# ============================================================================
# Public Error Codes (JSON envelope "code" field)
# ============================================================================

CODE_OK = 0
CODE_INVALID_PARAMS = 1001
CODE_UNAUTHORIZED = 1002
CODE_NOT_FOUND = 1004
CODE_DEBUG_UNAUTHORIZED = 4001
CODE_DEBUG_DISABLED = 4003
CODE_REQUEST_TIMEOUT = 4008
CODE_TOO_MANY_REQUESTS = 4029
CODE_INTERNAL = 5000
CODE_BACKEND_UNAVAILABLE = 5002
CODE_SERVICE_UNAVAILABLE = 5003
