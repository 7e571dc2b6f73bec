"""
budget_runtime/core/exceptions.py
Custom exceptions for the runtime supervisor and database lifecycle
"""

from pathlib import Path
from typing import List, Optional


class RuntimeServiceException(Exception):
    """Base exception for all runtime errors"""

    def __init__(
        self,
        message: str,
        error_code: str = "UNKNOWN_ERROR",
        details: Optional[dict] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for logging/response"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


# ============================================================================
# Database Exceptions (recoverable, data preserved)
# ============================================================================

# Failure categories shown to the operator
OPERATOR_FIXABLE = "operator_fixable"
FRESH_START = "fresh_start"


class DatabaseInitError(RuntimeServiceException):
    """
    Database could not be opened or initialized.

    The on-disk data is never deleted on this path. The message names the
    data directory and, when one was taken, the backup before any hint that
    suggests deleting anything.
    """

    def __init__(
        self,
        summary: str,
        data_path: Path,
        reason: str,
        backup_path: Optional[Path] = None,
        hints: Optional[List[str]] = None,
        category: str = FRESH_START,
        error_code: str = "DATABASE_INIT_FAILED",
    ):
        self.data_path = Path(data_path)
        self.backup_path = Path(backup_path) if backup_path else None
        self.reason = reason
        self.hints = list(hints or [])
        self.category = category

        lines = [
            f"{summary} Your data has NOT been deleted.",
            f"Database location: {self.data_path}",
        ]
        if self.backup_path:
            lines.append(f"Backup created at: {self.backup_path}")
        lines.append(f"Original error: {reason}")
        if self.hints:
            lines.append("")
            lines.append("Possible solutions:")
            lines.extend(f"{i}. {hint}" for i, hint in enumerate(self.hints, start=1))

        super().__init__(
            message="\n".join(lines),
            error_code=error_code,
            details={
                "data_path": str(self.data_path),
                "backup_path": str(self.backup_path) if self.backup_path else None,
                "reason": reason,
                "hints": self.hints,
                "category": category,
            }
        )

    @property
    def operator_fixable(self) -> bool:
        return self.category == OPERATOR_FIXABLE


class DatabaseOpenError(DatabaseInitError):
    """The embedded engine refused to open the data directory"""

    def __init__(self, data_path: Path, reason: str, **kwargs):
        super().__init__(
            summary="Database initialization failed.",
            data_path=data_path,
            reason=reason,
            error_code="DATABASE_OPEN_FAILED",
            **kwargs,
        )


class SchemaInitError(DatabaseInitError):
    """Schema creation or migration failed after a successful open"""

    def __init__(self, data_path: Path, reason: str, **kwargs):
        super().__init__(
            summary="Database schema initialization failed.",
            data_path=data_path,
            reason=reason,
            error_code="SCHEMA_INIT_FAILED",
            **kwargs,
        )


class MigrationError(RuntimeServiceException):
    """An additive migration failed for a reason other than 'already applied'"""

    def __init__(self, statement: str, reason: str):
        super().__init__(
            message=f"Migration failed: {reason}",
            error_code="MIGRATION_FAILED",
            details={"statement": statement, "reason": reason}
        )


class EngineLockedError(RuntimeServiceException):
    """Data directory lock is held by a live process"""

    def __init__(self, data_path: Path, pid: int):
        super().__init__(
            message=f"Database at {data_path} is locked by running process {pid}",
            error_code="ENGINE_LOCKED",
            details={"data_path": str(data_path), "pid": pid}
        )
        self.pid = pid


# ============================================================================
# Backup Exceptions (contract violations, no side effects)
# ============================================================================

class InvalidBackupPathError(RuntimeServiceException):
    """Path does not follow the managed backup naming convention"""

    def __init__(self, path: Path, expected_prefix: str):
        super().__init__(
            message=f"Invalid backup path: {path}",
            error_code="INVALID_BACKUP_PATH",
            details={"path": str(path), "expected_prefix": expected_prefix}
        )


class BackupNotFoundError(RuntimeServiceException):
    """Backup directory does not exist"""

    def __init__(self, path: Path):
        super().__init__(
            message=f"Backup not found: {path}",
            error_code="BACKUP_NOT_FOUND",
            details={"path": str(path)}
        )


# ============================================================================
# Supervisor Exceptions (operational)
# ============================================================================

class HealthCheckTimeoutError(RuntimeServiceException):
    """Dependency never reported healthy"""

    def __init__(self, url: str, elapsed_seconds: float, attempts: int):
        super().__init__(
            message=f"Health check for {url} timed out after {elapsed_seconds:.1f}s",
            error_code="HEALTH_TIMEOUT",
            details={"url": url, "elapsed_seconds": elapsed_seconds, "attempts": attempts}
        )
        self.elapsed_seconds = elapsed_seconds


class RestartLimitExceededError(RuntimeServiceException):
    """Child crashed more often than the restart bound allows"""

    def __init__(self, role: str, max_restarts: int, exit_code: Optional[int]):
        super().__init__(
            message=f"{role} process exited (code {exit_code}) after {max_restarts} restarts; giving up",
            error_code="RESTART_LIMIT_EXCEEDED",
            details={"role": role, "max_restarts": max_restarts, "exit_code": exit_code}
        )


class ChildSpawnError(RuntimeServiceException):
    """Child process could not be started"""

    def __init__(self, role: str, command: List[str], reason: str):
        super().__init__(
            message=f"Failed to start {role} process: {reason}",
            error_code="CHILD_SPAWN_FAILED",
            details={"role": role, "command": command, "reason": reason}
        )


class AlreadyRunningError(RuntimeServiceException):
    """Another supervisor instance owns the PID file"""

    def __init__(self, pid: int, pid_file: Path):
        super().__init__(
            message=(
                f"Another instance is already running (pid {pid}). "
                f"Stop it first, or remove {pid_file} if that process is not ours."
            ),
            error_code="ALREADY_RUNNING",
            details={"pid": pid, "pid_file": str(pid_file)}
        )
        self.pid = pid


# ============================================================================
# Export
# ============================================================================

__all__ = [
    "RuntimeServiceException",
    "OPERATOR_FIXABLE",
    "FRESH_START",
    "DatabaseInitError",
    "DatabaseOpenError",
    "SchemaInitError",
    "MigrationError",
    "EngineLockedError",
    "InvalidBackupPathError",
    "BackupNotFoundError",
    "HealthCheckTimeoutError",
    "RestartLimitExceededError",
    "ChildSpawnError",
    "AlreadyRunningError",
]
