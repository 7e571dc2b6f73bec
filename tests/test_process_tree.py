import subprocess
import sys

import pytest

from budget_runtime.supervisor import process_tree
from budget_runtime.supervisor.process_tree import PosixProcessTreeKiller, WindowsProcessTreeKiller


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")
def test_posix_kill_of_missing_group_returns_false():
    proc = subprocess.Popen([sys.executable, "-c", "pass"], start_new_session=True)
    proc.wait()
    assert PosixProcessTreeKiller().kill_tree(proc.pid) is False


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")
def test_posix_kill_terminates_group():
    killer = PosixProcessTreeKiller()
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"], **killer.spawn_kwargs())
    try:
        assert killer.kill_tree(proc.pid) is True
        assert proc.wait(timeout=5) != 0
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()


def test_windows_kill_builds_taskkill_command(monkeypatch):
    calls = []

    def fake_run(command, **kwargs):
        calls.append(command)
        return subprocess.CompletedProcess(command, 128 if len(calls) > 1 else 0)

    monkeypatch.setattr(process_tree.subprocess, "run", fake_run)
    killer = WindowsProcessTreeKiller()

    assert killer.kill_tree(1234) is True
    # 128: process not found
    assert killer.kill_tree(1234, force=True) is False
    assert calls == [
        ["taskkill", "/PID", "1234", "/T"],
        ["taskkill", "/PID", "1234", "/T", "/F"],
    ]
