"""
budget_runtime/schemas/database.py
Request/response models for the database management endpoints
"""

from pydantic import Field
from typing import List, Optional
from .base import BaseModel

DATABASE_ACTIONS = ("backup", "retry", "delete", "restore", "deleteBackup")


# ============================================================================
# Status
# ============================================================================

class DatabaseStatusModel(BaseModel):
    """Snapshot of the lifecycle manager"""
    state: str
    initialized: bool
    has_error: bool
    error_message: Optional[str] = None
    error_category: Optional[str] = None
    backup_path: Optional[str] = None
    db_path: str


class BackupModel(BaseModel):
    path: str
    timestamp: str = Field(..., description="Filesystem-safe ISO-8601 UTC timestamp")
    size_bytes: int


class DatabaseOverview(BaseModel):
    """GET /api/database"""
    status: DatabaseStatusModel
    backups: List[BackupModel] = Field(default_factory=list)


# ============================================================================
# Actions
# ============================================================================

class DatabaseActionRequest(BaseModel):
    """POST /api/database body"""
    # Validated in the route so an unknown action is a 400, not a 422
    action: str
    backup_path: Optional[str] = None


class DatabaseActionResponse(BaseModel):
    success: bool
    message: str
    backup_path: Optional[str] = None
    error_code: Optional[str] = None
    hints: Optional[List[str]] = None
