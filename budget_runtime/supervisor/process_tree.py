"""
Platform-correct process-tree termination.

POSIX children are started in their own session, so their PID is also their
process-group id and one negative-PID signal reaches every descendant.
Windows has no group signal; ``taskkill /T`` walks the tree instead. The
implementation is picked once per process.
"""
from __future__ import annotations

import os
import signal
import subprocess
import sys
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

TASKKILL_TIMEOUT = 10  # seconds


class ProcessTreeKiller(ABC):
    """Terminate a child and everything it spawned."""

    @abstractmethod
    def kill_tree(self, pid: int, force: bool = False) -> bool:
        """
        Signal the tree rooted at ``pid``.

        Returns:
            False if the tree was already gone, True otherwise
        """

    @abstractmethod
    def spawn_kwargs(self) -> Dict[str, Any]:
        """Extra Popen kwargs that make kill_tree() able to reach descendants."""


class PosixProcessTreeKiller(ProcessTreeKiller):

    def kill_tree(self, pid: int, force: bool = False) -> bool:
        sig = signal.SIGKILL if force else signal.SIGTERM
        try:
            os.killpg(pid, sig)
        except ProcessLookupError:
            logger.debug("process_group_already_gone", pid=pid)
            return False
        except PermissionError:
            # Group leader exited and the id was reused; fall back to the pid itself
            try:
                os.kill(pid, sig)
            except ProcessLookupError:
                return False
        logger.debug("process_group_signalled", pid=pid, signal=sig.name)
        return True

    def spawn_kwargs(self) -> Dict[str, Any]:
        return {"start_new_session": True}


class WindowsProcessTreeKiller(ProcessTreeKiller):

    def kill_tree(self, pid: int, force: bool = False) -> bool:
        command = ["taskkill", "/PID", str(pid), "/T"]
        if force:
            command.append("/F")
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=TASKKILL_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("taskkill_failed", pid=pid, force=force, error=str(e))
            return True
        if result.returncode == 128:
            # "process not found"
            return False
        logger.debug("taskkill_completed", pid=pid, force=force, returncode=result.returncode)
        return True

    def spawn_kwargs(self) -> Dict[str, Any]:
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}


_killer: Optional[ProcessTreeKiller] = None


def get_process_tree_killer() -> ProcessTreeKiller:
    global _killer
    if _killer is None:
        _killer = WindowsProcessTreeKiller() if sys.platform == "win32" else PosixProcessTreeKiller()
    return _killer


def kill_process_tree(pid: int, force: bool = False) -> bool:
    return get_process_tree_killer().kill_tree(pid, force=force)


__all__ = [
    "ProcessTreeKiller",
    "PosixProcessTreeKiller",
    "WindowsProcessTreeKiller",
    "get_process_tree_killer",
    "kill_process_tree",
]
