"""
budget_runtime/api/main.py
FastAPI application for the API child process.

Architecture:
- Thin main.py (just app creation)
- Lifespan handles startup/shutdown of the database handle
- /health answers as soon as the process listens; the supervisor gates
  the web client on it
- Database management endpoints for the settings page
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..core.config import get_settings
from ..core.logging import get_logger
from .lifespan.manager import lifespan
from .routes import database, health, metrics

logger = get_logger("main")


# ============================================================================
# Create Application
# ============================================================================

def create_app() -> FastAPI:
    """
    Create FastAPI application.

    Returns:
        Configured FastAPI app
    """
    settings = get_settings()
    logger.info(
        "creating_app",
        name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
    )

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Local API process for the budgeting app",
        lifespan=lifespan,
        docs_url="/api/docs" if settings.DEBUG else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if settings.DEBUG else None,
    )

    # Only the local web client talks to this process
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.web_url, f"http://127.0.0.1:{settings.WEB_PORT}"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(database.router)
    app.include_router(metrics.router)

    @app.get("/", tags=["Root"])
    async def root():
        """Service info endpoint"""
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running",
            "endpoints": {
                "health": "/health",
                "health_detail": "/api/v1/health",
                "database": "/api/database",
                "metrics": "/metrics",
            },
        }

    logger.info("app_created_successfully")
    return app


__all__ = ["create_app"]
