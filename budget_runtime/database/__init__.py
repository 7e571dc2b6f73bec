"""Embedded database: engine, schema, stale locks, backups and the lifecycle manager."""

from .backups import BackupInfo, BackupStore
from .locks import clear_stale_lock, is_lock_stale
from .manager import DatabaseLifecycleManager, InitState, get_database_manager, get_db

__all__ = [
    "BackupInfo",
    "BackupStore",
    "clear_stale_lock",
    "is_lock_stale",
    "DatabaseLifecycleManager",
    "InitState",
    "get_database_manager",
    "get_db",
]
