"""
Idempotent schema creation and additive migrations.

Tables are created if missing, in foreign-key order. Additive migrations
bring databases created by older releases up to date; a migration that fails
only because it was already applied is skipped, anything else is raised.
"""
from __future__ import annotations

from typing import List, Tuple

import structlog

from .engine import EngineHandle, is_already_applied_error
from ..core.exceptions import MigrationError

logger = structlog.get_logger(__name__)


CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS budgets (
    id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
    user_id TEXT NOT NULL DEFAULT '',
    month INTEGER NOT NULL,
    year INTEGER NOT NULL,
    buffer NUMERIC NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS budget_categories (
    id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
    budget_id TEXT NOT NULL REFERENCES budgets(id) ON DELETE CASCADE,
    category_type TEXT NOT NULL,
    name TEXT NOT NULL,
    emoji TEXT,
    category_order INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS linked_accounts (
    id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
    user_id TEXT NOT NULL DEFAULT '',
    teller_account_id TEXT UNIQUE,
    teller_enrollment_id TEXT,
    access_token TEXT,
    institution_name TEXT NOT NULL,
    institution_id TEXT,
    account_name TEXT NOT NULL,
    account_type TEXT NOT NULL,
    account_subtype TEXT NOT NULL,
    last_four TEXT,
    status TEXT NOT NULL,
    last_synced_at TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS recurring_payments (
    id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
    user_id TEXT NOT NULL DEFAULT '',
    name TEXT NOT NULL,
    amount NUMERIC NOT NULL,
    frequency TEXT NOT NULL,
    next_due_date TEXT NOT NULL,
    funded_amount NUMERIC NOT NULL DEFAULT 0,
    category_type TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS budget_items (
    id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
    category_id TEXT NOT NULL REFERENCES budget_categories(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    planned NUMERIC NOT NULL DEFAULT 0,
    "order" INTEGER NOT NULL DEFAULT 0,
    recurring_payment_id TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS transactions (
    id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
    budget_item_id TEXT REFERENCES budget_items(id) ON DELETE SET NULL,
    linked_account_id TEXT REFERENCES linked_accounts(id),
    date TEXT NOT NULL,
    description TEXT NOT NULL,
    amount NUMERIC NOT NULL,
    type TEXT NOT NULL,
    merchant TEXT,
    check_number TEXT,
    teller_transaction_id TEXT UNIQUE,
    teller_account_id TEXT,
    status TEXT,
    deleted_at TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS split_transactions (
    id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
    parent_transaction_id TEXT NOT NULL REFERENCES transactions(id) ON DELETE CASCADE,
    budget_item_id TEXT NOT NULL REFERENCES budget_items(id) ON DELETE CASCADE,
    amount NUMERIC NOT NULL,
    description TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS user_onboarding (
    id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
    user_id TEXT NOT NULL UNIQUE,
    current_step INTEGER NOT NULL DEFAULT 1,
    completed_at TEXT,
    skipped_at TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS csv_import_hashes (
    id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
    linked_account_id TEXT NOT NULL REFERENCES linked_accounts(id) ON DELETE CASCADE,
    hash TEXT NOT NULL,
    transaction_id TEXT REFERENCES transactions(id) ON DELETE SET NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS income_allocations (
    id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
    user_id TEXT NOT NULL DEFAULT '',
    income_item_name TEXT NOT NULL,
    target_category_type TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""

# Columns added after the first release; order matters
ADDITIVE_MIGRATIONS: List[str] = [
    "ALTER TABLE linked_accounts ADD COLUMN account_source TEXT NOT NULL DEFAULT 'teller'",
    "ALTER TABLE linked_accounts ADD COLUMN csv_column_mapping TEXT",
]


def create_tables(handle: EngineHandle) -> None:
    handle.executescript(CREATE_TABLES_SQL)


def run_additive_migrations(handle: EngineHandle) -> Tuple[int, int]:
    """
    Apply ADDITIVE_MIGRATIONS in order.

    Returns:
        (applied, skipped) counts

    Raises:
        MigrationError: a statement failed for a reason other than
            the column/table already existing
    """
    applied = skipped = 0
    for statement in ADDITIVE_MIGRATIONS:
        try:
            handle.execute(statement)
        except Exception as e:
            if is_already_applied_error(e):
                skipped += 1
                logger.debug("migration_already_applied", statement=statement)
                continue
            logger.error("migration_failed", statement=statement, error=str(e))
            raise MigrationError(statement, str(e)) from e
        applied += 1
        logger.info("migration_applied", statement=statement)
    return applied, skipped


def apply_schema(handle: EngineHandle) -> None:
    """Create missing tables, then run additive migrations."""
    create_tables(handle)
    applied, skipped = run_additive_migrations(handle)
    logger.debug("schema_ready", migrations_applied=applied, migrations_skipped=skipped)


__all__ = [
    "CREATE_TABLES_SQL",
    "ADDITIVE_MIGRATIONS",
    "create_tables",
    "run_additive_migrations",
    "apply_schema",
]
