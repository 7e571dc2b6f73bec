"""
budget_runtime/api/lifespan/manager.py
Lifespan for the API process.

Responsibilities:
1. Warm up the database handle on startup (failures are cached, not fatal)
2. Close the handle on shutdown so the engine lock is released
"""

from contextlib import asynccontextmanager

import structlog

from ...core.config import get_settings
from ...core.exceptions import DatabaseInitError
from ...database.manager import get_database_manager

logger = structlog.get_logger("lifespan")


@asynccontextmanager
async def lifespan(app):
    """
    FastAPI lifespan context manager.

    Startup:
    - Initialize the database (a failure stays visible through
      /api/database and /api/v1/health; the process keeps serving so the
      user can back up, restore or delete from the settings page)

    Shutdown:
    - Close the database handle
    """
    settings = get_settings()
    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        db_path=str(settings.DB_PATH),
    )

    manager = get_database_manager()
    app.state.database_manager = manager
    try:
        await manager.acquire()
        logger.info("database_ready", db_path=str(manager.db_path))
    except DatabaseInitError as e:
        logger.error(
            "database_unavailable_at_startup",
            error_code=e.error_code,
            category=e.category,
            backup_path=str(e.backup_path) if e.backup_path else None,
        )

    logger.info("startup_completed")

    yield

    logger.info("application_shutting_down")
    try:
        await manager.close()
        logger.info("database_closed")
    except Exception as e:
        logger.error("error_closing_database", error=str(e), exc_info=True)

    logger.info("shutdown_completed")


__all__ = ["lifespan"]
