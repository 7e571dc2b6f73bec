"""
Filesystem snapshots of the database directory.

A backup is a sibling directory named ``<dbpath>-backup-<timestamp>``, where
the timestamp is UTC ISO-8601 with ``:`` and ``.`` replaced by ``-`` so it is
safe on every filesystem and still sorts chronologically. Backups are never
deleted automatically.
"""
from __future__ import annotations

import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Any, List, Optional

import structlog

from .locks import LOCK_FILE_NAME
from ..core.exceptions import BackupNotFoundError, InvalidBackupPathError

logger = structlog.get_logger(__name__)

BACKUP_MARKER = "-backup-"


def backup_timestamp(now: Optional[datetime] = None) -> str:
    """2026-10-19T17:05:03.123Z -> 2026-10-19T17-05-03-123Z"""
    now = now or datetime.now(timezone.utc)
    iso = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
    return iso.replace(":", "-").replace(".", "-")


def _tree_size(path: Path) -> int:
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())


@dataclass(frozen=True)
class BackupInfo:
    """One managed backup directory."""
    path: Path
    timestamp: str
    size_bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "timestamp": self.timestamp,
            "size_bytes": self.size_bytes,
        }


class BackupStore:
    """
    Create, list, restore and delete snapshots of one database directory.

    restore() and delete() validate the target's basename against the
    naming convention before touching disk.
    """

    def __init__(self, db_path: Path, clock: Optional[Callable[[], datetime]] = None):
        self.db_path = Path(db_path)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def prefix(self) -> str:
        return f"{self.db_path.name}{BACKUP_MARKER}"

    def _next_backup_path(self) -> Path:
        base = self.db_path.parent / f"{self.prefix}{backup_timestamp(self._clock())}"
        candidate = base
        n = 1
        # Two snapshots inside the same millisecond
        while candidate.exists():
            candidate = base.with_name(f"{base.name}-{n}")
            n += 1
        return candidate

    def create(self) -> Optional[Path]:
        """
        Copy the database directory to a new timestamped sibling.

        Returns:
            The backup path, or None if there is no database directory yet

        Raises:
            OSError: the copy failed (a partial copy is removed)
        """
        if not self.db_path.is_dir():
            logger.debug("backup_skipped_no_database", db_path=str(self.db_path))
            return None

        backup_path = self._next_backup_path()
        try:
            shutil.copytree(
                self.db_path,
                backup_path,
                ignore=shutil.ignore_patterns(LOCK_FILE_NAME),
            )
        except OSError:
            shutil.rmtree(backup_path, ignore_errors=True)
            raise

        logger.info("backup_created", backup_path=str(backup_path))
        return backup_path

    def list(self) -> List[BackupInfo]:
        """All managed backups, newest first."""
        parent = self.db_path.parent
        if not parent.is_dir():
            return []

        backups = []
        for entry in parent.iterdir():
            if entry.is_dir() and entry.name.startswith(self.prefix):
                backups.append(
                    BackupInfo(
                        path=entry,
                        timestamp=entry.name[len(self.prefix):],
                        size_bytes=_tree_size(entry),
                    )
                )
        backups.sort(key=lambda b: b.timestamp, reverse=True)
        return backups

    def validate(self, path: Path) -> Path:
        """Reject anything that does not look like one of our backups."""
        path = Path(path)
        if not path.name.startswith(self.prefix):
            raise InvalidBackupPathError(path, self.prefix)
        return path

    def restore(self, path: Path) -> None:
        """Replace the database directory with a copy of ``path``."""
        path = self.validate(path)
        if not path.is_dir():
            raise BackupNotFoundError(path)

        if self.db_path.exists():
            shutil.rmtree(self.db_path)
        shutil.copytree(path, self.db_path)
        logger.info("database_restored", backup_path=str(path), db_path=str(self.db_path))

    def delete(self, path: Path) -> bool:
        """Remove one backup. Returns False if it was already gone."""
        path = self.validate(path)
        if not path.exists():
            logger.info("backup_already_absent", backup_path=str(path))
            return False

        shutil.rmtree(path)
        logger.info("backup_deleted", backup_path=str(path))
        return True


__all__ = ["BACKUP_MARKER", "BackupInfo", "BackupStore", "backup_timestamp"]
