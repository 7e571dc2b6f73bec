"""
Database lifecycle manager.

Owns the single embedded-database handle of the API process:

- lazy, single-flight initialization (all concurrent callers await one task)
- stale lock detection before the engine opens
- backup before surfacing any open/schema failure; data is never deleted
  on a failure path
- a cached FAILED state that is re-raised to every caller until reset()
- backup / restore / delete management that always closes the handle first
"""
from __future__ import annotations

import asyncio
import shutil
import sqlite3
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

import structlog

from .backups import BackupInfo, BackupStore
from .engine import EngineHandle, open_engine
from .locks import clear_stale_lock
from .schema import apply_schema
from ..api.lifespan.health_registry import HealthRegistry, get_health_registry
from ..api.metrics import registry as metrics
from ..core.config import get_settings
from ..core.exceptions import (
    FRESH_START,
    OPERATOR_FIXABLE,
    BackupNotFoundError,
    DatabaseInitError,
    DatabaseOpenError,
    EngineLockedError,
    MigrationError,
    SchemaInitError,
)

logger = structlog.get_logger(__name__)

HEALTH_COMPONENT = "database"

Opener = Callable[[Path], EngineHandle]
SchemaApplier = Callable[[EngineHandle], None]


class InitState(Enum):
    """Lifecycle states of the process-wide database handle."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class DatabaseStatus:
    state: InitState
    db_path: Path
    error: Optional[DatabaseInitError] = None

    @property
    def initialized(self) -> bool:
        return self.state is InitState.READY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "initialized": self.initialized,
            "has_error": self.error is not None,
            "error_message": self.error.message if self.error else None,
            "error_category": self.error.category if self.error else None,
            "backup_path": str(self.error.backup_path) if self.error and self.error.backup_path else None,
            "db_path": str(self.db_path),
        }


def remediation_for(exc: BaseException, db_path: Path, backup_path: Optional[Path]) -> Tuple[str, List[str]]:
    """
    Map a failure to (category, hints).

    Lock contention and permissions are fixable by the operator; anything
    that looks like on-disk damage needs a fresh start. The backup is always
    named before any hint that deletes data.
    """
    keep = (
        f"Your data was copied to {backup_path} before anything else happened"
        if backup_path
        else f"Copy {db_path} somewhere safe before changing anything"
    )

    if isinstance(exc, EngineLockedError):
        return OPERATOR_FIXABLE, [
            f"Another process (pid {exc.pid}) is using the database; stop it with `budget-runtime stop` and retry",
            "Make sure only one copy of the app is running",
        ]
    if isinstance(exc, PermissionError):
        return OPERATOR_FIXABLE, [
            f"Verify the database directory has correct permissions: {db_path}",
            "Set DB_PATH in .env to use a different location",
        ]
    if isinstance(exc, (sqlite3.DatabaseError, MigrationError)):
        return FRESH_START, [
            keep,
            "Restore an earlier backup from the database settings page",
            f"If the database is corrupted, you can delete {db_path} to start fresh",
        ]
    return FRESH_START, [
        "Check if another process is using the database",
        "Verify the database directory has correct permissions",
        keep,
        f"If the database is corrupted, you can delete {db_path} to start fresh",
        "Set DB_PATH in .env to use a different location",
    ]


class DatabaseLifecycleManager:
    """
    One safely shared database handle per process.

    Usage:
        manager = get_database_manager()
        handle = await manager.acquire()
    """

    def __init__(
        self,
        db_path: Path,
        opener: Opener = open_engine,
        schema_applier: SchemaApplier = apply_schema,
        backups: Optional[BackupStore] = None,
        health_registry: Optional[HealthRegistry] = None,
    ):
        self.db_path = Path(db_path)
        self.backups = backups or BackupStore(self.db_path)
        self._opener = opener
        self._apply_schema = schema_applier
        self._health = health_registry or get_health_registry()

        self._state = InitState.UNINITIALIZED
        self._handle: Optional[EngineHandle] = None
        self._error: Optional[DatabaseInitError] = None
        self._init_task: Optional[asyncio.Task] = None
        # Held while restore/delete rewrite the directory
        self._maintenance = asyncio.Lock()
        self._publish()

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> InitState:
        return self._state

    @property
    def error(self) -> Optional[DatabaseInitError]:
        return self._error

    def status(self) -> DatabaseStatus:
        return DatabaseStatus(state=self._state, db_path=self.db_path, error=self._error)

    def _transition(self, new_state: InitState, **context) -> None:
        old_state = self._state
        self._state = new_state
        logger.info(
            "database_state_changed",
            from_state=old_state.value,
            to_state=new_state.value,
            db_path=str(self.db_path),
            **context,
        )
        self._publish()

    def _publish(self) -> None:
        metrics.set_db_state(self._state.value, [s.value for s in InitState])
        if self._state is InitState.READY:
            self._health.mark_healthy(HEALTH_COMPONENT, db_path=str(self.db_path))
        elif self._state is InitState.FAILED and self._error is not None:
            self._health.mark_failed(
                HEALTH_COMPONENT,
                self._error.reason,
                category=self._error.category,
            )
        else:
            self._health.register_component(HEALTH_COMPONENT, state=self._state.value)

    # ------------------------------------------------------------------ #
    # Acquire / initialize
    # ------------------------------------------------------------------ #

    async def acquire(self) -> EngineHandle:
        """
        Return the ready handle, initializing it on first use.

        Raises:
            DatabaseInitError: initialization failed, now or on an earlier
                call; reset() is the only way out
        """
        if self._maintenance.locked():
            async with self._maintenance:
                pass
        if self._state is InitState.READY and self._handle is not None:
            return self._handle
        if self._state is InitState.FAILED and self._error is not None:
            raise self._error

        if self._init_task is None:
            self._transition(InitState.INITIALIZING)
            self._init_task = asyncio.ensure_future(self._initialize())
            self._init_task.add_done_callback(_retrieve_exception)

        # shield: a cancelled caller must not cancel everyone else's init
        return await asyncio.shield(self._init_task)

    async def _initialize(self) -> EngineHandle:
        try:
            self.db_path.mkdir(parents=True, exist_ok=True)
            if clear_stale_lock(self.db_path):
                metrics.track_stale_lock_cleared()
            handle = await asyncio.to_thread(self._opener, self.db_path)
        except Exception as e:
            raise await self._fail(DatabaseOpenError, e, "open_failed") from e

        try:
            await asyncio.to_thread(self._apply_schema, handle)
        except Exception as e:
            _close_quietly(handle)
            raise await self._fail(SchemaInitError, e, "schema_failed") from e

        self._handle = handle
        self._error = None
        self._init_task = None
        metrics.track_db_init("ready")
        self._transition(InitState.READY)
        return handle

    async def _fail(self, error_cls: Type[DatabaseInitError], cause: Exception, outcome: str) -> DatabaseInitError:
        logger.error(
            "database_init_failed",
            outcome=outcome,
            db_path=str(self.db_path),
            error=str(cause),
            error_type=type(cause).__name__,
        )
        backup_path = await self._backup_quietly("failed_init")
        category, hints = remediation_for(cause, self.db_path, backup_path)
        error = error_cls(
            self.db_path,
            str(cause) or type(cause).__name__,
            backup_path=backup_path,
            hints=hints,
            category=category,
        )
        self._error = error
        self._handle = None
        self._init_task = None
        metrics.track_db_init(outcome)
        self._transition(InitState.FAILED, error_code=error.error_code, backup_path=str(backup_path))
        return error

    async def _backup_quietly(self, reason: str) -> Optional[Path]:
        """Failure paths still report the original error if the copy fails."""
        try:
            backup_path = await asyncio.to_thread(self.backups.create)
        except OSError as e:
            logger.error("backup_failed", reason=reason, db_path=str(self.db_path), error=str(e))
            return None
        if backup_path is not None:
            metrics.track_backup(reason)
        return backup_path

    async def _settle_in_flight(self) -> None:
        task = self._init_task
        if task is not None and not task.done():
            # Outcome lands in self._state / self._error either way
            await asyncio.wait([task])

    # ------------------------------------------------------------------ #
    # Close / reset
    # ------------------------------------------------------------------ #

    async def close(self) -> None:
        """Close the handle. A cached failure is kept until reset()."""
        await self._settle_in_flight()
        handle, self._handle = self._handle, None
        if handle is not None:
            _close_quietly(handle)
        if self._state is InitState.READY:
            self._transition(InitState.UNINITIALIZED, reason="closed")

    async def reset(self) -> None:
        """Forget handle, error and in-flight init; the next acquire() starts fresh."""
        await self._settle_in_flight()
        handle, self._handle = self._handle, None
        if handle is not None:
            _close_quietly(handle)
        self._error = None
        self._init_task = None
        if clear_stale_lock(self.db_path):
            metrics.track_stale_lock_cleared()
        self._transition(InitState.UNINITIALIZED, reason="reset")

    # ------------------------------------------------------------------ #
    # Backups
    # ------------------------------------------------------------------ #

    async def backup(self) -> Optional[Path]:
        """Manual snapshot. Returns None if there is no database yet."""
        backup_path = await asyncio.to_thread(self.backups.create)
        if backup_path is not None:
            metrics.track_backup("manual")
        return backup_path

    def list_backups(self) -> List[BackupInfo]:
        return self.backups.list()

    async def delete_backup(self, backup_path: Path) -> bool:
        return await asyncio.to_thread(self.backups.delete, backup_path)

    async def restore_from_backup(self, backup_path: Path) -> Optional[Path]:
        """
        Replace the live database with a backup.

        The target is validated before anything is closed or copied; the
        current data is snapshotted before it is overwritten. acquire()
        waits until the copy is finished.

        Returns:
            Path of the safety backup of the replaced data (None if there
            was no live database)
        """
        backup_path = self.backups.validate(backup_path)
        if not backup_path.is_dir():
            raise BackupNotFoundError(backup_path)

        async with self._maintenance:
            await self.close()
            self._health.mark_degraded(HEALTH_COMPONENT, "restore in progress")
            safety_backup = await asyncio.to_thread(self.backups.create)
            if safety_backup is not None:
                metrics.track_backup("pre_restore")
            await asyncio.to_thread(self.backups.restore, backup_path)
            await self.reset()
        return safety_backup

    async def delete_database(self) -> Optional[Path]:
        """
        Delete the live database after snapshotting it.

        Returns:
            The backup taken before deletion
        """
        async with self._maintenance:
            await self.close()
            self._health.mark_degraded(HEALTH_COMPONENT, "delete in progress")
            backup_path = await asyncio.to_thread(self.backups.create)
            if backup_path is not None:
                metrics.track_backup("pre_delete")
            if self.db_path.exists():
                await asyncio.to_thread(shutil.rmtree, self.db_path)
                logger.info("database_deleted", db_path=str(self.db_path), backup_path=str(backup_path))
            await self.reset()
        return backup_path


def _close_quietly(handle: EngineHandle) -> None:
    try:
        handle.close()
    except Exception as e:
        logger.warning("engine_close_failed", error=str(e), exc_info=True)


def _retrieve_exception(task: asyncio.Task) -> None:
    # Failure is cached in manager state; mark it observed for asyncio
    if not task.cancelled():
        task.exception()


# ============================================================================
# Process-wide context
# ============================================================================

_manager: Optional[DatabaseLifecycleManager] = None
_manager_lock = threading.Lock()


def get_database_manager() -> DatabaseLifecycleManager:
    """Get or create the process-wide manager for settings.DB_PATH."""
    global _manager
    with _manager_lock:
        if _manager is None:
            _manager = DatabaseLifecycleManager(get_settings().DB_PATH)
        return _manager


def set_database_manager(manager: Optional[DatabaseLifecycleManager]) -> None:
    """Install a specific manager (tests, embedding)."""
    global _manager
    with _manager_lock:
        _manager = manager


async def get_db() -> EngineHandle:
    """FastAPI dependency / data-access entry point."""
    return await get_database_manager().acquire()


__all__ = [
    "InitState",
    "DatabaseStatus",
    "DatabaseLifecycleManager",
    "remediation_for",
    "get_database_manager",
    "set_database_manager",
    "get_db",
]
