"""
Cache Module

Multi-tier caching: L1 in-process (frequency-admitted, cost-bounded) and
L2 Redis, with single-flight loading and penetration protection.
"""

from .codec import Codec, JsonCodec, PydanticCodec
from .local_cache import LocalCache
from .multi_level import MultiLevelCache
from .protection import BloomFilter, DistributedLock, NegativeCache
from .redis_client import PoolStats, RedisClient
from .single_flight import SingleFlight

__all__ = [
    "BloomFilter",
    "Codec",
    "DistributedLock",
    "JsonCodec",
    "LocalCache",
    "MultiLevelCache",
    "NegativeCache",
    "PoolStats",
    "PydanticCodec",
    "RedisClient",
    "SingleFlight",
]
