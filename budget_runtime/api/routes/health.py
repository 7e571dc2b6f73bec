"""Health check endpoints for the supervisor and for diagnostics."""
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from typing import Dict, Any
import structlog

from ..lifespan.health_registry import get_health_registry

router = APIRouter(tags=["health"])
logger = structlog.get_logger(__name__)


@router.get("/health", summary="Liveness probe used by the supervisor")
async def liveness():
    """
    Returns 200 as soon as the process is serving requests.

    Deliberately independent of database state: a failed database must
    still let the web client start so the user sees the error page.
    """
    return {"status": "ok"}


@router.get("/api/v1/health", response_model=Dict[str, Any], summary="Component health")
async def health_check():
    """
    Component health summary.

    Returns:
    - overall_status: healthy/degraded/unhealthy/unknown
    - timestamp: Current timestamp
    - components: Detailed status of each component

    Status Codes:
    - 200: No component degraded or unhealthy
    - 503: One or more components unhealthy or degraded
    """
    health_summary = get_health_registry().get_health_summary()

    status_code = status.HTTP_200_OK
    if health_summary["overall_status"] in ("degraded", "unhealthy"):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return JSONResponse(status_code=status_code, content=health_summary)


@router.get("/api/v1/health/components/{component_name}", summary="Component-specific health")
async def component_health(component_name: str):
    """Health details for one component, or 404 if not registered."""
    component = get_health_registry().get_component_health(component_name)

    if not component:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": "Component not found", "component": component_name},
        )

    return component.to_dict()
