"""
Engine lock file (``<dbpath>/postmaster.pid``) inspection.

The first line of the lock file is the PID of the process holding the data
directory, or the engine sentinel ``-42`` when no real PID is tracked.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Optional

import psutil
import structlog

logger = structlog.get_logger(__name__)

LOCK_FILE_NAME = "postmaster.pid"
SENTINEL_PID = "-42"


def lock_path_for(db_path: Path) -> Path:
    return Path(db_path) / LOCK_FILE_NAME


def read_lock_pid(lock_path: Path) -> Optional[str]:
    """Return the raw first line of the lock file, or None if there is no file."""
    try:
        content = Path(lock_path).read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None
    lines = content.splitlines()
    return lines[0].strip() if lines else ""


def probe_pid(pid: int) -> bool:
    """
    Zero-effect liveness probe.

    Returns True if the process exists, False on "no such process". Any other
    OSError propagates so the caller can decide how to treat it.
    """
    if sys.platform == "win32":
        # os.kill(pid, 0) terminates the target on Windows
        return psutil.pid_exists(pid)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


def is_lock_stale(lock_path: Path) -> bool:
    """
    Decide whether a lock file may be removed.

    - no lock file: nothing to clear, not stale
    - sentinel placeholder PID: always stale
    - unparsable or non-positive PID: stale
    - live process: NOT stale, must never be cleared
    - dead process: stale
    - probe failed for another reason (e.g. EPERM): treated as stale so a
      leftover lock cannot wedge startup forever, but logged
    """
    pid_line = read_lock_pid(lock_path)
    if pid_line is None:
        return False

    if pid_line == SENTINEL_PID:
        logger.info("lock_file_placeholder_pid", lock_path=str(lock_path))
        return True

    try:
        pid = int(pid_line)
    except ValueError:
        logger.warning("lock_file_unparsable", lock_path=str(lock_path), first_line=pid_line[:32])
        return True

    if pid <= 0:
        return True

    try:
        alive = probe_pid(pid)
    except OSError as e:
        logger.warning(
            "lock_probe_failed_assuming_stale",
            lock_path=str(lock_path),
            pid=pid,
            error=str(e),
            error_type=type(e).__name__,
        )
        return True

    if alive:
        return False

    logger.info("lock_owner_not_running", lock_path=str(lock_path), pid=pid)
    return True


def clear_stale_lock(db_path: Path) -> bool:
    """Remove the lock file if (and only if) it is stale. Returns True if removed."""
    lock_path = lock_path_for(db_path)
    if not is_lock_stale(lock_path):
        return False
    try:
        lock_path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.error("stale_lock_removal_failed", lock_path=str(lock_path), error=str(e))
        return False
    logger.info("stale_lock_removed", lock_path=str(lock_path))
    return True


__all__ = [
    "LOCK_FILE_NAME",
    "SENTINEL_PID",
    "lock_path_for",
    "read_lock_pid",
    "probe_pid",
    "is_lock_stale",
    "clear_stale_lock",
]
