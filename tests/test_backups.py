from datetime import datetime, timedelta, timezone

import pytest

from budget_runtime.core.exceptions import BackupNotFoundError, InvalidBackupPathError
from budget_runtime.database.backups import BackupStore, backup_timestamp
from budget_runtime.database.locks import LOCK_FILE_NAME


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(seconds=1)
        return current


@pytest.fixture
def populated_db(db_path):
    db_path.mkdir(parents=True)
    (db_path / "budget.db").write_bytes(b"data")
    (db_path / LOCK_FILE_NAME).write_text("12345\n")
    return db_path


@pytest.fixture
def store(populated_db):
    return BackupStore(populated_db, clock=FakeClock(datetime(2026, 10, 19, 17, 5, 3, 123000, tzinfo=timezone.utc)))


def test_backup_timestamp_is_filesystem_safe():
    stamp = backup_timestamp(datetime(2026, 10, 19, 17, 5, 3, 123000, tzinfo=timezone.utc))
    assert stamp == "2026-10-19T17-05-03-123Z"


def test_create_without_database_returns_none(db_path):
    assert BackupStore(db_path).create() is None


def test_create_copies_tree_without_lock_file(store, populated_db):
    backup = store.create()
    assert backup.name == "budget-local-backup-2026-10-19T17-05-03-123Z"
    assert backup.parent == populated_db.parent
    assert (backup / "budget.db").read_bytes() == b"data"
    assert not (backup / LOCK_FILE_NAME).exists()


def test_same_millisecond_backups_do_not_collide(populated_db):
    fixed = datetime(2026, 1, 1, tzinfo=timezone.utc)
    store = BackupStore(populated_db, clock=lambda: fixed)
    first = store.create()
    second = store.create()
    assert first != second
    assert first.is_dir() and second.is_dir()


def test_list_is_newest_first(store, populated_db):
    created = [store.create() for _ in range(3)]
    # Unrelated sibling directories are ignored
    (populated_db.parent / "budget-local-old").mkdir()

    listed = store.list()
    assert [b.path for b in listed] == list(reversed(created))
    assert all(b.size_bytes == 4 for b in listed)


def test_delete_rejects_foreign_path_without_side_effects(store, populated_db, tmp_path):
    victim = tmp_path / "important"
    victim.mkdir()
    with pytest.raises(InvalidBackupPathError):
        store.delete(victim)
    assert victim.is_dir()

    with pytest.raises(InvalidBackupPathError):
        store.delete(populated_db)
    assert populated_db.is_dir()


def test_delete_missing_backup_is_noop(store, populated_db):
    missing = populated_db.parent / f"{store.prefix}2020-01-01T00-00-00-000Z"
    assert store.delete(missing) is False


def test_delete_removes_backup(store):
    backup = store.create()
    assert store.delete(backup) is True
    assert not backup.exists()
    assert store.list() == []


def test_restore_replaces_database(store, populated_db):
    backup = store.create()
    (populated_db / "budget.db").write_bytes(b"changed")
    (populated_db / "extra.bin").write_bytes(b"x")

    store.restore(backup)
    assert (populated_db / "budget.db").read_bytes() == b"data"
    assert not (populated_db / "extra.bin").exists()


def test_restore_requires_existing_backup(store, populated_db):
    missing = populated_db.parent / f"{store.prefix}2020-01-01T00-00-00-000Z"
    with pytest.raises(BackupNotFoundError):
        store.restore(missing)
    assert (populated_db / "budget.db").read_bytes() == b"data"
