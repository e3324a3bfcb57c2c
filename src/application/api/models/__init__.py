"""
API Models Package
==================

Pydantic models for API responses.

ORGANIZATION:
-------------
- health.py: /ping and /health response models
"""

from src.application.api.models.health import HealthData, HealthEnvelope

__all__ = ["HealthData", "HealthEnvelope"]
