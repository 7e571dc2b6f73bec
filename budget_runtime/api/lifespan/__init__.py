"""
Lifecycle and health tracking for the API process.

The lifespan context itself lives in .manager; it is not re-exported here
because the database manager reports into the health registry.
"""

from .health_registry import HealthRegistry, ComponentHealth, HealthStatus, get_health_registry


__all__ = [
    "HealthRegistry",
    "ComponentHealth",
    "HealthStatus",
    "get_health_registry",
]
