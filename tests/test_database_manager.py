import asyncio
import os
import sqlite3
import threading
import time

import pytest

from budget_runtime.api.lifespan.health_registry import HealthStatus
from budget_runtime.core.exceptions import (
    FRESH_START,
    OPERATOR_FIXABLE,
    BackupNotFoundError,
    DatabaseOpenError,
    InvalidBackupPathError,
    MigrationError,
    SchemaInitError,
)
from budget_runtime.database.backups import BackupStore
from budget_runtime.database.engine import open_engine
from budget_runtime.database.locks import LOCK_FILE_NAME, SENTINEL_PID
from budget_runtime.database.manager import InitState, get_db, remediation_for, set_database_manager


def _count_budgets(handle) -> int:
    return handle.execute("SELECT COUNT(*) FROM budgets")[0][0]


@pytest.mark.asyncio
async def test_concurrent_acquire_opens_engine_once(make_manager):
    calls = []
    calls_lock = threading.Lock()

    def slow_opener(path):
        with calls_lock:
            calls.append(path)
        time.sleep(0.05)
        return open_engine(path)

    manager = make_manager(opener=slow_opener)
    handles = await asyncio.gather(*(manager.acquire() for _ in range(10)))

    assert len(calls) == 1
    assert all(h is handles[0] for h in handles)
    assert manager.state is InitState.READY
    await manager.close()


@pytest.mark.asyncio
async def test_acquire_after_ready_returns_same_handle(make_manager):
    manager = make_manager()
    first = await manager.acquire()
    second = await manager.acquire()
    assert first is second
    assert _count_budgets(first) == 0
    await manager.close()


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_init(make_manager):
    def slow_opener(path):
        time.sleep(0.1)
        return open_engine(path)

    manager = make_manager(opener=slow_opener)
    impatient = asyncio.ensure_future(manager.acquire())
    patient = asyncio.ensure_future(manager.acquire())
    await asyncio.sleep(0.02)
    impatient.cancel()

    handle = await patient
    assert manager.state is InitState.READY
    assert handle is await manager.acquire()
    await manager.close()


@pytest.mark.asyncio
async def test_open_failure_backs_up_and_caches_error(make_manager, db_path):
    db_path.mkdir(parents=True)
    (db_path / "marker.txt").write_text("keep me")
    attempts = []

    def flaky_opener(path):
        attempts.append(path)
        if len(attempts) == 1:
            raise sqlite3.DatabaseError("file is not a database")
        return open_engine(path)

    manager = make_manager(opener=flaky_opener)

    with pytest.raises(DatabaseOpenError) as exc_info:
        await manager.acquire()
    error = exc_info.value

    assert manager.state is InitState.FAILED
    assert error.category == FRESH_START
    assert error.backup_path is not None
    assert (error.backup_path / "marker.txt").read_text() == "keep me"
    assert (db_path / "marker.txt").read_text() == "keep me"

    message = error.message
    assert "NOT been deleted" in message
    assert str(db_path) in message
    assert message.index(f"Backup created at: {error.backup_path}") < message.index("start fresh")

    # Cached until reset: no second open attempt
    with pytest.raises(DatabaseOpenError) as again:
        await manager.acquire()
    assert again.value is error
    assert len(attempts) == 1

    await manager.reset()
    assert manager.state is InitState.UNINITIALIZED
    assert manager.error is None

    handle = await manager.acquire()
    assert manager.state is InitState.READY
    assert len(attempts) == 2
    assert _count_budgets(handle) == 0
    await manager.close()


@pytest.mark.asyncio
async def test_corrupted_database_file_is_preserved(make_manager, db_path):
    db_path.mkdir(parents=True)
    garbage = b"this is not a database file " * 256
    (db_path / "budget.db").write_bytes(garbage)

    manager = make_manager()
    with pytest.raises(DatabaseOpenError) as exc_info:
        await manager.acquire()

    backup_path = exc_info.value.backup_path
    assert (db_path / "budget.db").read_bytes() == garbage
    assert (backup_path / "budget.db").read_bytes() == garbage
    # The engine released the lock it claimed before failing
    assert not (db_path / LOCK_FILE_NAME).exists()


@pytest.mark.asyncio
async def test_schema_failure_closes_handle_and_raises_schema_error(make_manager, db_path):
    opened = []

    def tracking_opener(path):
        handle = open_engine(path)
        opened.append(handle)
        return handle

    def broken_schema(handle):
        raise MigrationError("ALTER TABLE x ADD COLUMN y", "disk I/O error")

    manager = make_manager(opener=tracking_opener, schema_applier=broken_schema)
    with pytest.raises(SchemaInitError) as exc_info:
        await manager.acquire()

    assert exc_info.value.backup_path is not None
    assert "disk I/O error" in exc_info.value.message
    assert not opened[0].is_open
    assert not (db_path / LOCK_FILE_NAME).exists()


@pytest.mark.asyncio
async def test_sentinel_lock_is_cleared_before_open(make_manager, db_path):
    db_path.mkdir(parents=True)
    (db_path / LOCK_FILE_NAME).write_text(f"{SENTINEL_PID}\n")

    manager = make_manager()
    await manager.acquire()
    assert manager.state is InitState.READY
    assert (db_path / LOCK_FILE_NAME).read_text().splitlines()[0] == str(os.getpid())

    await manager.close()
    assert not (db_path / LOCK_FILE_NAME).exists()


@pytest.mark.asyncio
async def test_lock_held_by_live_process_is_operator_fixable(make_manager, db_path):
    db_path.mkdir(parents=True)
    lock = db_path / LOCK_FILE_NAME
    lock.write_text(f"{os.getppid()}\n")

    manager = make_manager()
    with pytest.raises(DatabaseOpenError) as exc_info:
        await manager.acquire()

    assert exc_info.value.category == OPERATOR_FIXABLE
    assert exc_info.value.operator_fixable
    # Never removed while its owner is alive
    assert lock.read_text() == f"{os.getppid()}\n"


@pytest.mark.asyncio
async def test_reset_waits_for_in_flight_init(make_manager):
    release = threading.Event()

    def gated_opener(path):
        release.wait(timeout=5)
        return open_engine(path)

    manager = make_manager(opener=gated_opener)
    pending = asyncio.ensure_future(manager.acquire())
    await asyncio.sleep(0.02)
    assert manager.state is InitState.INITIALIZING

    reset = asyncio.ensure_future(manager.reset())
    await asyncio.sleep(0.02)
    assert not reset.done()

    release.set()
    await pending
    await reset
    assert manager.state is InitState.UNINITIALIZED

    await manager.acquire()
    assert manager.state is InitState.READY
    await manager.close()


@pytest.mark.asyncio
async def test_close_keeps_cached_failure(make_manager):
    def failing_opener(path):
        raise PermissionError(13, "Permission denied", str(path))

    manager = make_manager(opener=failing_opener)
    with pytest.raises(DatabaseOpenError):
        await manager.acquire()

    await manager.close()
    assert manager.state is InitState.FAILED
    assert manager.error.category == OPERATOR_FIXABLE


@pytest.mark.asyncio
async def test_restore_replaces_data_and_keeps_safety_backup(make_manager):
    manager = make_manager()
    handle = await manager.acquire()
    handle.execute("INSERT INTO budgets (month, year) VALUES (?, ?)", (1, 2026))
    snapshot = await manager.backup()
    handle.execute("INSERT INTO budgets (month, year) VALUES (?, ?)", (2, 2026))
    assert _count_budgets(handle) == 2

    safety = await manager.restore_from_backup(snapshot)
    assert manager.state is InitState.UNINITIALIZED

    restored = await manager.acquire()
    assert _count_budgets(restored) == 1

    # The replaced data survives in the safety backup
    conn = sqlite3.connect(str(safety / "budget.db"))
    try:
        assert conn.execute("SELECT COUNT(*) FROM budgets").fetchone()[0] == 2
    finally:
        conn.close()
    await manager.close()


class GatedBackupStore(BackupStore):
    """Restore copy that blocks until the test lets it finish."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.copying = threading.Event()
        self.release = threading.Event()

    def restore(self, path):
        self.copying.set()
        self.release.wait(timeout=5)
        super().restore(path)


@pytest.mark.asyncio
async def test_acquire_waits_for_restore_copy_without_blocking_loop(make_manager, db_path, health_registry):
    store = GatedBackupStore(db_path)
    manager = make_manager(backups=store)
    handle = await manager.acquire()
    handle.execute("INSERT INTO budgets (month, year) VALUES (?, ?)", (4, 2026))
    snapshot = await manager.backup()

    restore = asyncio.ensure_future(manager.restore_from_backup(snapshot))
    while not store.copying.is_set():
        await asyncio.sleep(0.01)

    # The event loop keeps serving while the copy runs in a worker thread
    waiter = asyncio.ensure_future(manager.acquire())
    await asyncio.sleep(0.05)
    assert not waiter.done()
    assert manager.state is InitState.UNINITIALIZED
    assert health_registry.get_component_health("database").status is HealthStatus.DEGRADED

    store.release.set()
    await restore
    restored = await asyncio.wait_for(waiter, timeout=5)
    assert _count_budgets(restored) == 1
    await manager.close()


@pytest.mark.asyncio
async def test_restore_rejects_bad_paths_without_side_effects(make_manager, db_path, tmp_path):
    manager = make_manager()
    handle = await manager.acquire()

    with pytest.raises(InvalidBackupPathError):
        await manager.restore_from_backup(tmp_path / "something-else")
    with pytest.raises(BackupNotFoundError):
        await manager.restore_from_backup(tmp_path / f"{db_path.name}-backup-2020-01-01T00-00-00-000Z")

    assert manager.state is InitState.READY
    assert handle is await manager.acquire()
    assert manager.list_backups() == []
    await manager.close()


@pytest.mark.asyncio
async def test_delete_database_backs_up_then_recreates(make_manager, db_path):
    manager = make_manager()
    handle = await manager.acquire()
    handle.execute("INSERT INTO budgets (month, year) VALUES (?, ?)", (3, 2026))

    backup_path = await manager.delete_database()
    assert backup_path is not None and (backup_path / "budget.db").exists()
    assert not db_path.exists()
    assert manager.state is InitState.UNINITIALIZED

    fresh = await manager.acquire()
    assert _count_budgets(fresh) == 0
    await manager.close()


@pytest.mark.asyncio
async def test_state_is_published_to_health_registry(make_manager, health_registry):
    def failing_opener(path):
        raise sqlite3.DatabaseError("database disk image is malformed")

    manager = make_manager(opener=failing_opener)
    with pytest.raises(DatabaseOpenError):
        await manager.acquire()

    component = health_registry.get_component_health("database")
    assert component.status is HealthStatus.UNHEALTHY
    assert "malformed" in component.error_message

    await manager.reset()
    assert health_registry.get_component_health("database").status is HealthStatus.UNKNOWN


def test_remediation_names_backup_before_deletion(db_path, tmp_path):
    backup = tmp_path / "budget-local-backup-2026-01-01T00-00-00-000Z"
    category, hints = remediation_for(sqlite3.DatabaseError("malformed"), db_path, backup)
    assert category == FRESH_START
    backup_hint = next(i for i, h in enumerate(hints) if str(backup) in h)
    delete_hint = next(i for i, h in enumerate(hints) if "delete" in h)
    assert backup_hint < delete_hint


def test_status_to_dict_reports_state(make_manager, db_path):
    manager = make_manager()
    status = manager.status().to_dict()
    assert status["state"] == "uninitialized"
    assert status["initialized"] is False
    assert status["has_error"] is False
    assert status["db_path"] == str(db_path)


@pytest.mark.asyncio
async def test_get_db_uses_process_wide_manager(make_manager):
    manager = make_manager()
    set_database_manager(manager)
    try:
        handle = await get_db()
        assert handle is await manager.acquire()
    finally:
        set_database_manager(None)
        await manager.close()
