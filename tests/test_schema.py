import sqlite3

import pytest

from budget_runtime.core.exceptions import MigrationError
from budget_runtime.database.engine import is_already_applied_error, open_engine
from budget_runtime.database.schema import ADDITIVE_MIGRATIONS, apply_schema, run_additive_migrations


@pytest.fixture
def engine(db_path):
    db_path.mkdir(parents=True)
    handle = open_engine(db_path)
    yield handle
    handle.close()


def _columns(handle, table):
    return {row[1] for row in handle.execute(f"PRAGMA table_info({table})")}


def test_apply_schema_creates_tables(engine):
    apply_schema(engine)
    tables = {row[0] for row in engine.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"budgets", "budget_items", "transactions", "linked_accounts"} <= tables
    assert {"account_source", "csv_column_mapping"} <= _columns(engine, "linked_accounts")


def test_schema_is_idempotent(engine):
    apply_schema(engine)
    apply_schema(engine)
    applied, skipped = run_additive_migrations(engine)
    assert applied == 0
    assert skipped == len(ADDITIVE_MIGRATIONS)


class FailingHandle:
    """Engine stand-in whose DDL fails with a configurable error."""

    def __init__(self, error):
        self.error = error

    def execute(self, sql, params=()):
        raise self.error


def test_unexpected_migration_failure_raises():
    handle = FailingHandle(sqlite3.OperationalError("disk I/O error"))
    with pytest.raises(MigrationError) as exc_info:
        run_additive_migrations(handle)
    assert exc_info.value.details["statement"] == ADDITIVE_MIGRATIONS[0]


def test_already_applied_errors_are_recognised():
    assert is_already_applied_error(sqlite3.OperationalError("duplicate column name: account_source"))
    assert is_already_applied_error(sqlite3.OperationalError("table budgets already exists"))
    assert not is_already_applied_error(sqlite3.OperationalError("no such table: linked_accounts"))
    assert not is_already_applied_error(ValueError("duplicate column name"))
