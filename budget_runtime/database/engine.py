"""
Embedded database engine.

The engine owns a data directory and claims it with a lock file for as long
as a handle is open. ``open_engine`` is what the lifecycle manager calls; it
is blocking and is run from a worker thread.
"""
from __future__ import annotations

import os
import sqlite3
import threading
from pathlib import Path
from typing import Any, List, Optional, Protocol, Sequence

import structlog

from .locks import lock_path_for, probe_pid, read_lock_pid
from ..core.exceptions import EngineLockedError

logger = structlog.get_logger(__name__)

DATABASE_FILE_NAME = "budget.db"


class EngineHandle(Protocol):
    """Opaque connection handed out by the lifecycle manager."""

    path: Path

    def execute(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        ...

    def executescript(self, sql: str) -> None:
        ...

    def close(self) -> None:
        ...


class SQLiteEngine:
    """
    SQLite-backed engine living in ``<dbpath>/budget.db``.

    Writes its own PID to ``<dbpath>/postmaster.pid`` on open and removes it
    on close. Opening a directory whose lock names a live process fails with
    EngineLockedError; stale locks are the lifecycle manager's job.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> "SQLiteEngine":
        lock_path = lock_path_for(self.path)
        self._claim_lock(lock_path)
        try:
            # API handlers run on different threads; access is serialized by self._lock
            conn = sqlite3.connect(
                str(self.path / DATABASE_FILE_NAME),
                check_same_thread=False,
                isolation_level=None,
            )
            conn.execute("PRAGMA foreign_keys = ON")
            # Forces a read of the header so corruption surfaces on open
            conn.execute("PRAGMA schema_version").fetchone()
        except Exception:
            self._release_lock(lock_path)
            raise
        self._conn = conn
        logger.debug("engine_opened", path=str(self.path))
        return self

    def _claim_lock(self, lock_path: Path) -> None:
        first_line = read_lock_pid(lock_path)
        if first_line is not None:
            try:
                owner = int(first_line)
            except ValueError:
                owner = -1
            if owner > 0 and owner != os.getpid() and probe_pid(owner):
                raise EngineLockedError(self.path, owner)
        lock_path.write_text(f"{os.getpid()}\n{self.path}\n", encoding="utf-8")

    def _release_lock(self, lock_path: Path) -> None:
        first_line = read_lock_pid(lock_path)
        if first_line == str(os.getpid()):
            lock_path.unlink(missing_ok=True)

    def execute(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        with self._lock:
            cursor = self._require_conn().execute(sql, tuple(params))
            return cursor.fetchall()

    def executescript(self, sql: str) -> None:
        with self._lock:
            self._require_conn().executescript(sql)

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.close()
            finally:
                self._conn = None
                self._release_lock(lock_path_for(self.path))
        logger.debug("engine_closed", path=str(self.path))

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError(f"Engine at {self.path} is closed")
        return self._conn


def open_engine(path: Path) -> SQLiteEngine:
    """Default opener used by DatabaseLifecycleManager."""
    return SQLiteEngine(path).open()


def is_already_applied_error(exc: BaseException) -> bool:
    """True if a DDL failure only says the object is already there."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    text = str(exc).lower()
    return "duplicate column name" in text or "already exists" in text


__all__ = [
    "DATABASE_FILE_NAME",
    "EngineHandle",
    "SQLiteEngine",
    "open_engine",
    "is_already_applied_error",
]
