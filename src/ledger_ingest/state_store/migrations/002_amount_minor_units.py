"""
Migration 002: Integer amount column for indexed rule queries.

Adds transactions.amount_minor (amount scaled to AMOUNT_SCALE decimal
places) and backfills it from the exact decimal text. Safe to re-run: the
column is only added when missing and the backfill only touches NULLs.
"""

import sqlite3
from decimal import ROUND_HALF_EVEN, Decimal

from ...schemas.ledger import to_minor_units

VERSION = 2
NAME = "amount_minor_units"


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def upgrade(conn: sqlite3.Connection) -> None:
    """Add and backfill amount_minor, index the ordering key."""
    if "amount_minor" not in _columns(conn, "transactions"):
        conn.execute("ALTER TABLE transactions ADD COLUMN amount_minor INTEGER")

    rows = conn.execute(
        "SELECT id, amount FROM transactions WHERE amount_minor IS NULL"
    ).fetchall()
    for row in rows:
        conn.execute(
            "UPDATE transactions SET amount_minor = ? WHERE id = ?",
            (to_minor_units(Decimal(row[1]), ROUND_HALF_EVEN), row[0]),
        )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_transactions_order
        ON transactions(account_id, date, sequence_number, id)
    """
    )
