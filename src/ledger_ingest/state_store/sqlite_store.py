"""
SQLite-based ledger store implementation.

Tables:
- account_metadata: Account headers keyed by (source_type, external_id)
- import_batches: Audit log of imports, one row per account per run
- raw_transactions: Verbatim source records (processed or held back)
- transactions: Canonical ledger
- migrations: Schema version marker
"""

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from ..errors import PersistenceError
from ..schemas.ledger import (
    AccountMetadata,
    ImportBatch,
    RawTransaction,
    SourceType,
    Transaction,
    to_minor_units,
    utc_timestamp,
)

logger = logging.getLogger(__name__)

TRANSACTION_ORDER = "date ASC, sequence_number ASC, id ASC"


@dataclass
class RawRecord:
    """Stored raw record with its processing state."""

    id: int
    import_batch_id: str
    account_id: str
    sequence: int
    page: Optional[int]
    fingerprint: Optional[str]
    transaction_id: Optional[str]
    processed: bool
    skip_reason: Optional[str]
    created_at: str
    raw: RawTransaction

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "RawRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            import_batch_id=row["import_batch_id"],
            account_id=row["account_id"],
            sequence=row["sequence"],
            page=row["page"],
            fingerprint=row["fingerprint"],
            transaction_id=row["transaction_id"],
            processed=bool(row["processed"]),
            skip_reason=row["skip_reason"],
            created_at=row["created_at"],
            raw=RawTransaction.from_dict(json.loads(row["record_json"])),
        )


@dataclass
class RetentionReport:
    """Outcome of one retention sweep."""

    raw_deleted: int
    batches_deleted: int
    raw_cutoff: str
    batch_cutoff: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "raw_deleted": self.raw_deleted,
            "batches_deleted": self.batches_deleted,
            "raw_cutoff": self.raw_cutoff,
            "batch_cutoff": self.batch_cutoff,
        }


def transaction_from_row(row: sqlite3.Row) -> Transaction:
    return Transaction(
        id=row["id"],
        account_id=row["account_id"],
        date=datetime.strptime(row["date"], "%Y-%m-%d").date(),
        amount=Decimal(row["amount"]),
        merchant=row["merchant"],
        notes=row["notes"],
        balance=Decimal(row["balance"]) if row["balance"] is not None else None,
        sequence_number=row["sequence_number"],
        flow=row["flow"],
        category=row["category"],
        currency=row["currency"],
        import_batch_id=row["import_batch_id"],
        fingerprint=row["fingerprint"],
    )


def batch_from_row(row: sqlite3.Row) -> ImportBatch:
    return ImportBatch(
        id=row["id"],
        account_id=row["account_id"],
        source_type=row["source_type"],
        source_file_name=row["source_file_name"],
        imported_at=row["imported_at"],
        total_raw_records=row["total_raw_records"],
        successful_imports=row["successful_imports"],
        duplicate_count=row["duplicate_count"],
        skipped_count=row["skipped_count"],
        source_hash=row["source_hash"],
    )


def metadata_from_row(row: sqlite3.Row) -> AccountMetadata:
    return AccountMetadata(
        source_type=row["source_type"],
        external_id=row["external_id"],
        account_type=row["account_type"],
        name=row["name"],
        currency=row["currency"],
        fields=json.loads(row["fields"]) if row["fields"] else {},
        starting_balance=Decimal(row["starting_balance"]),
        account_id=row["account_id"],
        first_seen=row["first_seen"],
        last_seen=row["last_seen"],
    )


def _optional_text(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


class UnitOfWork:
    """
    Writes of one import, on one connection, committed once.

    Obtained from ``LedgerStore.unit_of_work()``; nothing written here is
    visible to other connections until the context exits cleanly.
    """

    def __init__(self, conn: sqlite3.Connection, now: str):
        self.conn = conn
        self.now = now

    def existing_fingerprints(self, account_id: str) -> set[str]:
        rows = self.conn.execute(
            "SELECT fingerprint FROM transactions WHERE account_id = ?", (account_id,)
        ).fetchall()
        return {row["fingerprint"] for row in rows}

    def max_sequence_number(self, account_id: str) -> int:
        """Highest sequence number of the account, -1 when empty."""
        row = self.conn.execute(
            "SELECT MAX(sequence_number) AS seq FROM transactions WHERE account_id = ?",
            (account_id,),
        ).fetchone()
        return row["seq"] if row["seq"] is not None else -1

    def get_account_metadata(
        self, source_type: SourceType, external_id: str
    ) -> Optional[AccountMetadata]:
        row = self.conn.execute(
            "SELECT * FROM account_metadata WHERE source_type = ? AND external_id = ?",
            (SourceType(source_type).value, external_id),
        ).fetchone()
        return metadata_from_row(row) if row else None

    def upsert_account_metadata(self, metadata: AccountMetadata) -> tuple[AccountMetadata, bool]:
        """
        Insert new metadata or merge into the stored row.

        Returns:
            Tuple of (stored metadata, created)
        """
        existing = self.get_account_metadata(metadata.source_type, metadata.external_id)
        if existing is None:
            metadata.first_seen = metadata.first_seen or self.now
            metadata.last_seen = self.now
            self.conn.execute(
                """
                INSERT INTO account_metadata (
                    account_id, source_type, external_id, account_type, name,
                    currency, fields, starting_balance, first_seen, last_seen
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    metadata.account_id,
                    metadata.source_type.value,
                    metadata.external_id,
                    metadata.account_type.value,
                    metadata.name,
                    metadata.currency,
                    json.dumps(metadata.fields, sort_keys=True),
                    str(metadata.starting_balance),
                    metadata.first_seen,
                    metadata.last_seen,
                ),
            )
            return metadata, True

        metadata.last_seen = self.now
        merged = existing.merged_with(metadata)
        self.conn.execute(
            """
            UPDATE account_metadata
            SET name = ?, currency = ?, fields = ?, last_seen = ?
            WHERE account_id = ?
            """,
            (
                merged.name,
                merged.currency,
                json.dumps(merged.fields, sort_keys=True),
                merged.last_seen,
                merged.account_id,
            ),
        )
        return merged, False

    def insert_batch(self, batch: ImportBatch) -> None:
        if not batch.conservation_holds:
            raise PersistenceError(f"Refusing to persist non-conserving batch {batch.id}")
        self.conn.execute(
            """
            INSERT INTO import_batches (
                id, account_id, source_type, source_file_name, source_hash, imported_at,
                total_raw_records, successful_imports, duplicate_count, skipped_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                batch.id,
                batch.account_id,
                batch.source_type.value,
                batch.source_file_name,
                batch.source_hash,
                batch.imported_at,
                batch.total_raw_records,
                batch.successful_imports,
                batch.duplicate_count,
                batch.skipped_count,
            ),
        )

    def insert_raw_transaction(
        self,
        raw: RawTransaction,
        fingerprint: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> int:
        """Persist a raw record; it counts as processed when it produced a transaction."""
        cursor = self.conn.execute(
            """
            INSERT INTO raw_transactions (
                import_batch_id, account_id, source_type, sequence, page, fingerprint,
                transaction_id, processed, skip_reason, record_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                raw.import_batch_id,
                raw.account_id,
                raw.source_type.value,
                raw.sequence,
                raw.page,
                fingerprint,
                transaction_id,
                1 if transaction_id else 0,
                raw.skip_reason,
                json.dumps(raw.to_dict(), sort_keys=True, default=str),
                self.now,
            ),
        )
        return cursor.lastrowid

    def insert_transaction(self, transaction: Transaction) -> None:
        self.conn.execute(
            """
            INSERT INTO transactions (
                id, account_id, date, amount, amount_minor, merchant, notes, balance,
                sequence_number, flow, category, currency, import_batch_id,
                fingerprint, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                transaction.id,
                transaction.account_id,
                transaction.date.isoformat(),
                str(transaction.amount),
                to_minor_units(transaction.amount),
                transaction.merchant,
                transaction.notes,
                _optional_text(transaction.balance),
                transaction.sequence_number,
                transaction.flow.value,
                transaction.category,
                transaction.currency,
                transaction.import_batch_id,
                transaction.fingerprint,
                self.now,
            ),
        )


class LedgerStore:
    """
    SQLite-based store for the canonical ledger.

    Provides persistent tracking of:
    - Account metadata
    - Import batches (audit log)
    - Raw records and canonical transactions

    Every call opens its own connection. WAL journaling lets readers see
    either the pre-import or the fully committed state of a unit of work.
    """

    def __init__(
        self,
        db_path: Path | str,
        run_migrations: bool = True,
        busy_timeout: float = 30.0,
    ):
        """
        Initialize ledger store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
            busy_timeout: Seconds to wait for SQLite's write lock
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self._enable_wal()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions; storage errors become PersistenceError."""
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open ledger database {self.db_path}: {e}") from e
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Ledger storage failure: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _enable_wal(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
        finally:
            conn.close()

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    @property
    def schema_version(self) -> int:
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            return MigrationRunner(conn).get_current_version()
        finally:
            conn.close()

    @contextmanager
    def unit_of_work(self, now: Optional[str] = None) -> Iterator[UnitOfWork]:
        """
        Open a write transaction that commits once on clean exit.

        Any exception inside the block rolls back every write.
        """
        with self._transaction(immediate=True) as conn:
            yield UnitOfWork(conn, now or utc_timestamp())

    # Transaction reads

    def query_transactions(
        self, where: str = "1", params: Iterable[Any] = ()
    ) -> list[Transaction]:
        """Run a compiled filter against the transactions table, in ledger order."""
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM transactions WHERE {where} ORDER BY {TRANSACTION_ORDER}",
                tuple(params),
            ).fetchall()
            return [transaction_from_row(row) for row in rows]

    def get_transactions(self, account_ids: Optional[Iterable[str]] = None) -> list[Transaction]:
        if account_ids is None:
            return self.query_transactions()
        ids = sorted(set(account_ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        return self.query_transactions(f"account_id IN ({placeholders})", ids)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            return transaction_from_row(row) if row else None

    def existing_fingerprints(self, account_id: str) -> set[str]:
        with self._transaction() as conn:
            return UnitOfWork(conn, utc_timestamp()).existing_fingerprints(account_id)

    # Batch reads

    def get_batches(self, account_id: Optional[str] = None) -> list[ImportBatch]:
        with self._transaction() as conn:
            if account_id:
                rows = conn.execute(
                    "SELECT * FROM import_batches WHERE account_id = ? ORDER BY imported_at, id",
                    (account_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM import_batches ORDER BY imported_at, id"
                ).fetchall()
            return [batch_from_row(row) for row in rows]

    def get_batch(self, batch_id: str) -> Optional[ImportBatch]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM import_batches WHERE id = ?", (batch_id,)).fetchone()
            return batch_from_row(row) if row else None

    # Raw record reads

    def get_raw_transactions(self, batch_id: str) -> list[RawRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM raw_transactions WHERE import_batch_id = ? ORDER BY sequence, id",
                (batch_id,),
            ).fetchall()
            return [RawRecord.from_row(row) for row in rows]

    def get_unprocessed_raw(self, account_id: Optional[str] = None) -> list[RawRecord]:
        """Raw records held back (skipped rows); these survive retention sweeps."""
        with self._transaction() as conn:
            query = "SELECT * FROM raw_transactions WHERE processed = 0"
            params: tuple[Any, ...] = ()
            if account_id:
                query += " AND account_id = ?"
                params = (account_id,)
            rows = conn.execute(query + " ORDER BY created_at, id", params).fetchall()
            return [RawRecord.from_row(row) for row in rows]

    # Account metadata reads

    def get_account_metadata(
        self,
        account_id: Optional[str] = None,
        source_type: Optional[SourceType] = None,
        external_id: Optional[str] = None,
    ) -> Optional[AccountMetadata]:
        """Look up metadata by canonical id, or by (source_type, external_id)."""
        with self._transaction() as conn:
            if account_id:
                row = conn.execute(
                    "SELECT * FROM account_metadata WHERE account_id = ?", (account_id,)
                ).fetchone()
                return metadata_from_row(row) if row else None
            if source_type is None or external_id is None:
                raise ValueError("Pass account_id or both source_type and external_id")
            return UnitOfWork(conn, utc_timestamp()).get_account_metadata(source_type, external_id)

    def list_account_metadata(self) -> list[AccountMetadata]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM account_metadata ORDER BY source_type, external_id"
            ).fetchall()
            return [metadata_from_row(row) for row in rows]

    # Retention

    def sweep_retention(
        self,
        raw_retention_days: int = 90,
        batch_retention_days: int = 365,
        now: Optional[datetime] = None,
    ) -> RetentionReport:
        """
        Delete aged records.

        - Processed raw records older than raw_retention_days
        - Import batches older than batch_retention_days with no raw records left

        Unprocessed raw records are kept indefinitely.
        """
        now = now or datetime.now(timezone.utc)
        raw_cutoff = utc_timestamp(now - timedelta(days=raw_retention_days))
        batch_cutoff = utc_timestamp(now - timedelta(days=batch_retention_days))

        with self._transaction(immediate=True) as conn:
            raw_deleted = conn.execute(
                "DELETE FROM raw_transactions WHERE processed = 1 AND created_at < ?",
                (raw_cutoff,),
            ).rowcount
            batches_deleted = conn.execute(
                """
                DELETE FROM import_batches
                WHERE imported_at < ?
                  AND NOT EXISTS (
                      SELECT 1 FROM raw_transactions r WHERE r.import_batch_id = import_batches.id
                  )
                """,
                (batch_cutoff,),
            ).rowcount

        logger.info(
            f"Retention sweep: deleted {raw_deleted} processed raw records "
            f"(before {raw_cutoff}), {batches_deleted} batches (before {batch_cutoff})"
        )
        return RetentionReport(
            raw_deleted=raw_deleted,
            batches_deleted=batches_deleted,
            raw_cutoff=raw_cutoff,
            batch_cutoff=batch_cutoff,
        )

    def get_stats(self) -> dict[str, Any]:
        """Get ledger statistics."""
        with self._transaction() as conn:

            def count(query: str) -> int:
                return conn.execute(query).fetchone()[0]

            return {
                "accounts": count("SELECT COUNT(*) FROM account_metadata"),
                "transactions": count("SELECT COUNT(*) FROM transactions"),
                "import_batches": count("SELECT COUNT(*) FROM import_batches"),
                "raw_processed": count("SELECT COUNT(*) FROM raw_transactions WHERE processed = 1"),
                "raw_unprocessed": count(
                    "SELECT COUNT(*) FROM raw_transactions WHERE processed = 0"
                ),
                "schema_version": count("SELECT COALESCE(MAX(version), 0) FROM migrations"),
            }
