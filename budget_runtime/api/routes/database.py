"""
Database management endpoints behind the settings page.

GET  /api/database  status + backups
POST /api/database  {action, backupPath?}
"""
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
import structlog

from ...core.exceptions import (
    BackupNotFoundError,
    DatabaseInitError,
    InvalidBackupPathError,
    RuntimeServiceException,
)
from ...database.manager import DatabaseLifecycleManager, get_database_manager
from ...schemas.database import (
    DATABASE_ACTIONS,
    BackupModel,
    DatabaseActionRequest,
    DatabaseActionResponse,
    DatabaseOverview,
    DatabaseStatusModel,
)

router = APIRouter(prefix="/api/database", tags=["database"])
logger = structlog.get_logger(__name__)


def _init_failure(error: DatabaseInitError, prefix: str = "") -> JSONResponse:
    body = DatabaseActionResponse(
        success=False,
        message=f"{prefix}{error.message}",
        backup_path=str(error.backup_path) if error.backup_path else None,
        error_code=error.error_code,
        hints=error.hints,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body.model_dump(by_alias=True),
    )


def _require_backup_path(request: DatabaseActionRequest) -> str:
    if not request.backup_path:
        raise HTTPException(status_code=400, detail="backupPath is required")
    return request.backup_path


@router.get("", response_model=DatabaseOverview, summary="Database status and backups")
async def database_overview(manager: DatabaseLifecycleManager = Depends(get_database_manager)):
    return DatabaseOverview(
        status=DatabaseStatusModel(**manager.status().to_dict()),
        backups=[BackupModel(**b.to_dict()) for b in manager.list_backups()],
    )


@router.post("", response_model=DatabaseActionResponse, summary="Database management action")
async def database_action(
    request: DatabaseActionRequest,
    manager: DatabaseLifecycleManager = Depends(get_database_manager),
):
    """
    Actions:
    - backup: manual snapshot
    - retry: clear a cached failure and initialize again
    - delete: snapshot, then delete the live database
    - restore: snapshot, then replace the live database with backupPath
    - deleteBackup: remove backupPath
    """
    action = request.action
    if action not in DATABASE_ACTIONS:
        raise HTTPException(status_code=400, detail=f"Unknown action: {action}")

    logger.info("database_action_requested", action=action, backup_path=request.backup_path)

    try:
        if action == "backup":
            backup_path = await manager.backup()
            if backup_path is None:
                raise HTTPException(status_code=400, detail="No database to backup")
            return DatabaseActionResponse(
                success=True,
                message="Backup created successfully",
                backup_path=str(backup_path),
            )

        if action == "retry":
            await manager.reset()
            try:
                await manager.acquire()
            except DatabaseInitError as e:
                return _init_failure(e)
            return DatabaseActionResponse(success=True, message="Database initialized successfully")

        if action == "delete":
            backup_path = await manager.delete_database()
            return DatabaseActionResponse(
                success=True,
                message="Database deleted successfully",
                backup_path=str(backup_path) if backup_path else None,
            )

        if action == "restore":
            safety_backup = await manager.restore_from_backup(_require_backup_path(request))
            try:
                await manager.acquire()
            except DatabaseInitError as e:
                return _init_failure(e, prefix="Database restored but failed to initialize: ")
            return DatabaseActionResponse(
                success=True,
                message="Database restored successfully",
                backup_path=str(safety_backup) if safety_backup else None,
            )

        # deleteBackup
        removed = await manager.delete_backup(_require_backup_path(request))
        return DatabaseActionResponse(
            success=True,
            message="Backup deleted successfully" if removed else "Backup was already removed",
        )

    except InvalidBackupPathError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except BackupNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except RuntimeServiceException as e:
        logger.error("database_action_failed", action=action, **e.to_dict())
        raise HTTPException(status_code=500, detail=e.message)
    except OSError as e:
        logger.error("database_action_failed", action=action, error=str(e), exc_info=True)
        raise HTTPException(status_code=500, detail=f"Filesystem error: {e}")
