"""Health monitoring and status tracking for API process components."""
from typing import Dict, Optional, Any
from datetime import datetime, timezone
from enum import Enum
from dataclasses import dataclass, field
from threading import RLock
import structlog

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthStatus(Enum):
    """Component health status levels."""
    HEALTHY = "healthy"          # Fully operational
    DEGRADED = "degraded"        # Partially functional
    UNHEALTHY = "unhealthy"      # Not functional
    UNKNOWN = "unknown"          # Status not yet determined


@dataclass
class ComponentHealth:
    """Health information for a single component."""
    name: str
    status: HealthStatus
    last_check: datetime = field(default_factory=_utcnow)
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    consecutive_failures: int = 0
    total_checks: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary for API responses."""
        return {
            "name": self.name,
            "status": self.status.value,
            "last_check": self.last_check.isoformat(),
            "error_message": self.error_message,
            "metadata": self.metadata,
            "consecutive_failures": self.consecutive_failures,
            "total_checks": self.total_checks,
        }


class HealthRegistry:
    """
    Thread-safe registry for component health tracking.

    The database lifecycle manager reports every state transition here;
    /api/v1/health renders the summary.
    """

    def __init__(self):
        self._components: Dict[str, ComponentHealth] = {}
        self._component_lock = RLock()

    def _update(
        self,
        name: str,
        status: HealthStatus,
        error: Optional[str],
        metadata: Dict[str, Any],
    ) -> None:
        with self._component_lock:
            component = self._components.get(name)
            if component is None:
                component = ComponentHealth(name=name, status=status)
                self._components[name] = component
            component.status = status
            component.error_message = error
            component.last_check = _utcnow()
            component.metadata.update(metadata)
            component.total_checks += 1
            if status in (HealthStatus.UNHEALTHY, HealthStatus.DEGRADED):
                component.consecutive_failures += 1
            elif status == HealthStatus.HEALTHY:
                component.consecutive_failures = 0

    def register_component(
        self,
        name: str,
        status: HealthStatus = HealthStatus.UNKNOWN,
        **metadata
    ) -> None:
        """Register or update a component's health status."""
        self._update(name, status, None, metadata)
        logger.debug(
            "health_status_updated",
            component=name,
            status=status.value,
            metadata=metadata
        )

    def mark_healthy(self, name: str, **metadata) -> None:
        """Mark a component as healthy."""
        self.register_component(name, HealthStatus.HEALTHY, **metadata)

    def mark_degraded(self, name: str, reason: str, **metadata) -> None:
        """Mark a component as degraded (partially functional)."""
        self._update(name, HealthStatus.DEGRADED, reason, metadata)
        logger.warning("component_degraded", component=name, reason=reason)

    def mark_failed(self, name: str, error: str, **metadata) -> None:
        """Mark a component as completely failed."""
        self._update(name, HealthStatus.UNHEALTHY, error, metadata)
        logger.error("component_failed", component=name, error=error)

    def get_component_health(self, name: str) -> Optional[ComponentHealth]:
        """Get health info for a specific component."""
        with self._component_lock:
            return self._components.get(name)

    def get_overall_status(self) -> HealthStatus:
        """
        Calculate overall health based on component statuses.

        - UNHEALTHY: Any component is unhealthy
        - DEGRADED: Any component is degraded
        - HEALTHY: All components healthy
        - UNKNOWN: No components or some not yet determined
        """
        with self._component_lock:
            if not self._components:
                return HealthStatus.UNKNOWN

            statuses = [c.status for c in self._components.values()]

            if any(s == HealthStatus.UNHEALTHY for s in statuses):
                return HealthStatus.UNHEALTHY

            if any(s == HealthStatus.DEGRADED for s in statuses):
                return HealthStatus.DEGRADED

            if all(s == HealthStatus.HEALTHY for s in statuses):
                return HealthStatus.HEALTHY

            return HealthStatus.UNKNOWN

    def get_health_summary(self) -> Dict[str, Any]:
        """Health summary for API responses."""
        with self._component_lock:
            overall = self.get_overall_status()
            components = {
                name: health.to_dict()
                for name, health in self._components.items()
            }

            return {
                "overall_status": overall.value,
                "timestamp": _utcnow().isoformat(),
                "components": components,
            }

    def clear(self) -> None:
        """Clear all health data (testing only)."""
        with self._component_lock:
            self._components.clear()


# Process-wide instance
_health_registry = HealthRegistry()


def get_health_registry() -> HealthRegistry:
    """Get the process-wide health registry instance."""
    return _health_registry
