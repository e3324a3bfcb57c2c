"""
Database Infrastructure

Async MySQL connection pool used by health checks and pool telemetry.
"""

from .pool import DatabasePool, DBPoolStats

__all__ = ["DatabasePool", "DBPoolStats"]
