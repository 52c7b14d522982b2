"""
Migration 001: Core ledger tables.

- account_metadata: one row per (source_type, external_id)
- import_batches: audit log, one row per account per import
- raw_transactions: verbatim records, processed or held back
- transactions: canonical ledger
"""

import sqlite3

VERSION = 1
NAME = "core"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the core tables."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS account_metadata (
            account_id TEXT PRIMARY KEY,
            source_type TEXT NOT NULL,
            external_id TEXT NOT NULL,
            account_type TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            currency TEXT,
            fields TEXT NOT NULL DEFAULT '{}',  -- JSON object
            starting_balance TEXT NOT NULL DEFAULT '0',
            first_seen TEXT NOT NULL,
            last_seen TEXT NOT NULL,
            UNIQUE (source_type, external_id)
        )
    """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS import_batches (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL,
            source_type TEXT NOT NULL,
            source_file_name TEXT NOT NULL,
            source_hash TEXT,
            imported_at TEXT NOT NULL,
            total_raw_records INTEGER NOT NULL,
            successful_imports INTEGER NOT NULL,
            duplicate_count INTEGER NOT NULL,
            skipped_count INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY (account_id) REFERENCES account_metadata(account_id),
            CHECK (total_raw_records = successful_imports + duplicate_count + skipped_count)
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_batches_account ON import_batches(account_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_batches_imported_at ON import_batches(imported_at)"
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS raw_transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            import_batch_id TEXT NOT NULL,
            account_id TEXT NOT NULL,
            source_type TEXT NOT NULL,
            sequence INTEGER NOT NULL,
            page INTEGER,
            fingerprint TEXT,
            transaction_id TEXT UNIQUE,
            processed INTEGER NOT NULL DEFAULT 0,
            skip_reason TEXT,
            record_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (import_batch_id) REFERENCES import_batches(id)
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_raw_batch ON raw_transactions(import_batch_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_raw_retention ON raw_transactions(processed, created_at)"
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL,
            date TEXT NOT NULL,  -- YYYY-MM-DD
            amount TEXT NOT NULL,  -- exact decimal text
            merchant TEXT NOT NULL DEFAULT '',
            notes TEXT NOT NULL DEFAULT '',
            balance TEXT,
            sequence_number INTEGER NOT NULL,
            flow TEXT NOT NULL,
            category TEXT,
            currency TEXT,
            import_batch_id TEXT,
            fingerprint TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (account_id) REFERENCES account_metadata(account_id),
            UNIQUE (account_id, fingerprint)
        )
    """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_date ON transactions(date)")
