"""
Supervisor PID file (``<APP_DIR>/data/.pid``) and the stop tooling built on it.
"""
from __future__ import annotations

import os
import signal
import sys
from pathlib import Path
from typing import Optional

import psutil
import structlog

from .process_tree import kill_process_tree
from ..core.exceptions import AlreadyRunningError

logger = structlog.get_logger(__name__)

# Any supervisor command line carries one of these (module or console script)
OWNER_MARKERS = ("budget_runtime", "budget-runtime")

# psutil derives create_time from the boot time, which is whole seconds on Linux
CREATE_TIME_SLACK = 1.0


class PidFile:
    """Plain-text decimal PID of the running supervisor."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> Optional[int]:
        """PID recorded in the file, or None if missing/unreadable."""
        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            pid = int(text)
        except ValueError:
            logger.warning("pid_file_unparsable", path=str(self.path), content=text[:32])
            return None
        return pid if pid > 0 else None

    def owner(self) -> Optional[psutil.Process]:
        """
        The live supervisor process the file names, if any.

        A recorded PID only counts when the process started before the
        file was written and its command line is a budget-runtime one.
        A reused PID fails one of the two checks and the file is stale.
        """
        pid = self.read()
        if pid is None:
            return None
        if pid == os.getpid():
            return psutil.Process(pid)

        try:
            written_at = self.path.stat().st_mtime
            process = psutil.Process(pid)
            created_at = process.create_time()
            cmdline = process.cmdline()
        except (FileNotFoundError, psutil.NoSuchProcess):
            return None
        except psutil.AccessDenied:
            logger.warning("pid_owner_not_inspectable", path=str(self.path), pid=pid)
            return None

        if created_at > written_at + CREATE_TIME_SLACK:
            logger.info("pid_reused", path=str(self.path), pid=pid, reason="started_after_pid_file")
            return None
        if not any(marker in arg for arg in cmdline for marker in OWNER_MARKERS):
            logger.info("pid_reused", path=str(self.path), pid=pid, reason="foreign_command_line")
            return None
        return process

    def is_stale(self) -> bool:
        """True if the file exists but names no running supervisor."""
        if not self.path.exists():
            return False
        return self.owner() is None

    def write(self, pid: Optional[int] = None) -> int:
        """
        Record ``pid`` (default: this process).

        A stale file is overwritten; a file naming another live supervisor
        means a second instance and raises AlreadyRunningError.
        """
        pid = pid or os.getpid()
        existing = self.read()
        if existing is not None and existing != pid and self.owner() is not None:
            raise AlreadyRunningError(existing, self.path)
        if self.path.exists():
            logger.info("stale_pid_file_replaced", path=str(self.path), old_pid=existing)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(str(pid), encoding="utf-8")
        logger.debug("pid_file_written", path=str(self.path), pid=pid)
        return pid

    def remove(self) -> None:
        """Remove the file if it still names this process."""
        recorded = self.read()
        if recorded is not None and recorded != os.getpid():
            logger.warning("pid_file_owned_by_other", path=str(self.path), pid=recorded)
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        logger.debug("pid_file_removed", path=str(self.path))


def stop_running_instance(pid_file: PidFile, timeout: float = 10.0) -> bool:
    """
    Ask the supervisor recorded in ``pid_file`` to shut down.

    Returns:
        True if a running instance was signalled and exited (or was
        force-killed), False if there was nothing to stop
    """
    pid = pid_file.read()
    if pid is None:
        logger.info("nothing_to_stop", pid_file=str(pid_file.path))
        return False

    process = pid_file.owner()
    if process is None:
        logger.info("stale_pid_file_removed", pid_file=str(pid_file.path), pid=pid)
        pid_file.path.unlink(missing_ok=True)
        return False

    logger.info("stopping_instance", pid=pid)
    if sys.platform == "win32":
        # No SIGTERM delivery on Windows; take the whole tree down
        kill_process_tree(pid, force=True)
    else:
        process.send_signal(signal.SIGTERM)

    try:
        process.wait(timeout=timeout)
    except psutil.TimeoutExpired:
        logger.warning("instance_did_not_stop_forcing", pid=pid, timeout=timeout)
        try:
            process.kill()
        except psutil.NoSuchProcess:
            pass
    except psutil.NoSuchProcess:
        pass

    # A killed supervisor never got to clean up after itself
    pid_file.path.unlink(missing_ok=True)
    logger.info("instance_stopped", pid=pid)
    return True


__all__ = ["PidFile", "stop_running_instance"]
