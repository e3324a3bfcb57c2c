"""
Configuration Module

Centralized, type-safe configuration management for the resilient API core.

Components:
-----------
- **settings.py**: Pydantic-based configuration with environment variable loading
- **constants.py**: Key prefixes, header names, error codes and enums

Usage:
------
```python
from src.core.config import get_settings
from src.core.config.constants import CircuitState, KEY_PREFIX_NULL

settings = get_settings()
redis_host = settings.redis.REDIS_HOST
```

Environment Variables:
---------------------
Configuration is loaded from environment variables, a `.env` file, or the
env file named by `--config` on the command line:

```bash
ENVIRONMENT=production
REDIS_HOST=localhost
DATABASE_URL=mysql+aiomysql://app:secret@db/app
RATE_LIMIT_RATE=100
DEBUG_AUTH_TOKEN=...
```

Author: System Architect
Date: 2025-12-05
"""

from src.core.config.constants import (
    CacheTier,
    CircuitState,
    Environment,
    HealthStatus,
    Stage,
)
from src.core.config.settings import Settings, get_settings, load_settings, reload_settings

__all__ = [
    "Settings",
    "get_settings",
    "load_settings",
    "reload_settings",
    "Stage",
    "CircuitState",
    "CacheTier",
    "Environment",
    "HealthStatus",
]
