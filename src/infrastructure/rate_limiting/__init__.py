"""
Distributed Rate Limiting

Redis-backed limiters shared by every replica, each with a local fallback
used while Redis is unreachable.
"""

from .distributed_limiter import DistributedTokenBucket, SlidingWindowLimiter

__all__ = ["DistributedTokenBucket", "SlidingWindowLimiter"]
