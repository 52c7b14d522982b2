"""Tests for the ledger store."""

import sqlite3
import threading
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from ledger_ingest.errors import AccountBusyError, PersistenceError
from ledger_ingest.schemas.ledger import (
    AccountMetadata,
    AccountType,
    Flow,
    ImportBatch,
    RawTransaction,
    SourceType,
    Transaction,
)
from ledger_ingest.state_store import AccountLocks, LedgerStore
from ledger_ingest.state_store.migrations import Migration, MigrationRunner, get_all_migrations

OLD = "2023-01-01T00:00:00.000000Z"


def make_metadata(external_id="4321", **kwargs) -> AccountMetadata:
    return AccountMetadata(
        source_type=SourceType.CARD_STATEMENT_CSV,
        external_id=external_id,
        account_type=AccountType.CREDIT_CARD,
        **kwargs,
    )


def make_transaction(account_id, tx_id, day=date(2024, 1, 5), amount="-4.50", **kwargs):
    kwargs.setdefault("fingerprint", f"fp-{tx_id}")
    return Transaction(
        id=tx_id,
        account_id=account_id,
        date=day,
        amount=Decimal(amount),
        flow=Flow.EXPENSE,
        **kwargs,
    )


def make_batch(account_id, batch_id="batch-1", imported_at=OLD, total=0, imported=0, skipped=0):
    return ImportBatch(
        id=batch_id,
        account_id=account_id,
        source_type=SourceType.CARD_STATEMENT_CSV,
        source_file_name="card.csv",
        imported_at=imported_at,
        total_raw_records=total,
        successful_imports=imported,
        duplicate_count=0,
        skipped_count=skipped,
    )


def make_raw(account_id, batch_id, sequence=0, amount="4.50") -> RawTransaction:
    return RawTransaction(
        source_type=SourceType.CARD_STATEMENT_CSV,
        date=date(2024, 1, 5) if amount is not None else None,
        amount=Decimal(amount) if amount is not None else None,
        sequence=sequence,
        account_id=account_id,
        import_batch_id=batch_id,
        kind="charge",
    )


class TestLedgerStore:
    """Tests for store setup."""

    @pytest.fixture
    def store(self, temp_db):
        """Create a fresh ledger store."""
        return LedgerStore(temp_db)

    def test_init_creates_db(self, temp_db):
        """Initializing creates database file."""
        LedgerStore(temp_db)
        assert temp_db.exists()

    def test_init_creates_tables(self, store):
        """All required tables are created."""
        conn = store._get_connection()
        try:
            tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            table_names = [t[0] for t in tables]

            assert "account_metadata" in table_names
            assert "import_batches" in table_names
            assert "raw_transactions" in table_names
            assert "transactions" in table_names
            assert "migrations" in table_names
        finally:
            conn.close()

    def test_wal_journal(self, store):
        """Readers never see a half-written unit of work."""
        conn = store._get_connection()
        try:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        finally:
            conn.close()

    def test_schema_version(self, store):
        assert store.schema_version == 2
        assert store.get_stats()["schema_version"] == 2

    def test_reopen_runs_nothing(self, temp_db):
        """Migrations are applied once."""
        LedgerStore(temp_db)
        store = LedgerStore(temp_db)
        conn = store._get_connection()
        try:
            assert MigrationRunner(conn).run_pending() == []
        finally:
            conn.close()


class TestMigrations:
    """Tests for versioned schema migrations."""

    def test_registered_in_order(self):
        migrations = get_all_migrations()
        assert [m.version for m in migrations] == [1, 2]
        assert migrations[0].name == "core"

    def test_backfills_amount_minor(self, temp_db):
        """Rows written before migration 2 get their integer amount."""
        conn = sqlite3.connect(str(temp_db))
        core = [m for m in get_all_migrations() if m.version == 1]
        MigrationRunner(conn, migrations=core).run_pending()
        conn.execute(
            "INSERT INTO account_metadata (account_id, source_type, external_id, account_type,"
            " first_seen, last_seen) VALUES ('a', 'card_statement_csv', '4321', 'credit_card',"
            f" '{OLD}', '{OLD}')"
        )
        conn.execute(
            "INSERT INTO transactions (id, account_id, date, amount, sequence_number, flow,"
            f" fingerprint, created_at) VALUES ('t1', 'a', '2024-01-05', '-4.50', 0, 'expense',"
            f" 'fp', '{OLD}')"
        )
        conn.commit()
        conn.close()

        store = LedgerStore(temp_db)
        assert store.schema_version == 2
        conn = store._get_connection()
        try:
            row = conn.execute("SELECT amount_minor FROM transactions WHERE id = 't1'").fetchone()
            assert row[0] == -45000
        finally:
            conn.close()
        assert store.get_transaction("t1").amount == Decimal("-4.50")

    def test_rerun_after_interruption(self, temp_db):
        """A migration whose marker is missing runs again without harm."""
        store = LedgerStore(temp_db)
        conn = store._get_connection()
        try:
            conn.execute("DELETE FROM migrations WHERE version = 2")
            conn.commit()
            runner = MigrationRunner(conn)
            assert [m.version for m in runner.pending()] == [2]
            assert runner.run_pending() == [2]
            columns = [row[1] for row in conn.execute("PRAGMA table_info(transactions)")]
            assert columns.count("amount_minor") == 1
        finally:
            conn.close()
        assert store.schema_version == 2

    def test_failed_upgrade_leaves_no_marker(self, temp_db):
        """A failing upgrade is rolled back and the version is not recorded."""

        def broken(conn):
            raise sqlite3.OperationalError("disk I/O error")

        conn = sqlite3.connect(str(temp_db))
        try:
            runner = MigrationRunner(conn, migrations=[Migration(1, "broken", broken)])
            with pytest.raises(sqlite3.OperationalError):
                runner.run_pending()
            assert runner.get_current_version() == 0
            assert [m.name for m in runner.pending()] == ["broken"]
        finally:
            conn.close()


class TestUnitOfWork:
    """Tests for atomic writes."""

    @pytest.fixture
    def store(self, temp_db):
        return LedgerStore(temp_db)

    def test_commit(self, store):
        """Writes become visible once the block exits."""
        metadata = make_metadata()
        with store.unit_of_work() as uow:
            stored, created = uow.upsert_account_metadata(metadata)
            uow.insert_transaction(make_transaction(stored.account_id, "t1"))

        assert created
        assert store.get_transaction("t1").amount == Decimal("-4.50")
        assert store.existing_fingerprints(metadata.account_id) == {"fp-t1"}

    def test_exception_rolls_back(self, store):
        """Any error inside the block discards every write."""
        with pytest.raises(RuntimeError):
            with store.unit_of_work() as uow:
                uow.upsert_account_metadata(make_metadata())
                raise RuntimeError("boom")

        assert store.get_stats()["accounts"] == 0

    def test_duplicate_fingerprint_rejected(self, store):
        """At most one transaction per (account, fingerprint)."""
        metadata = make_metadata()
        with pytest.raises(PersistenceError):
            with store.unit_of_work() as uow:
                uow.upsert_account_metadata(metadata)
                uow.insert_transaction(make_transaction(metadata.account_id, "t1", fingerprint="x"))
                uow.insert_transaction(make_transaction(metadata.account_id, "t2", fingerprint="x"))

        assert store.get_stats()["transactions"] == 0

    def test_same_fingerprint_other_account(self, store):
        """Uniqueness is scoped to the account."""
        first, second = make_metadata("1111"), make_metadata("2222")
        with store.unit_of_work() as uow:
            uow.upsert_account_metadata(first)
            uow.upsert_account_metadata(second)
            uow.insert_transaction(make_transaction(first.account_id, "t1", fingerprint="x"))
            uow.insert_transaction(make_transaction(second.account_id, "t2", fingerprint="x"))

        assert store.get_stats()["transactions"] == 2

    def test_metadata_merge(self, store):
        """A second import updates fields and keeps first_seen."""
        with store.unit_of_work(now=OLD) as uow:
            uow.upsert_account_metadata(
                make_metadata(fields={"credit_limit": "5000.00"}, starting_balance="-10")
            )
        with store.unit_of_work(now="2024-02-01T00:00:00.000000Z") as uow:
            merged, created = uow.upsert_account_metadata(
                make_metadata(fields={"statement_period": "2024-01"})
            )

        assert not created
        stored = store.get_account_metadata(merged.account_id)
        assert stored.fields == {"credit_limit": "5000.00", "statement_period": "2024-01"}
        assert stored.starting_balance == Decimal("-10")
        assert stored.first_seen == OLD
        assert stored.last_seen == "2024-02-01T00:00:00.000000Z"
        assert store.get_account_metadata(
            source_type=SourceType.CARD_STATEMENT_CSV, external_id="4321"
        ) == stored

    def test_max_sequence_number(self, store):
        metadata = make_metadata()
        with store.unit_of_work() as uow:
            uow.upsert_account_metadata(metadata)
            assert uow.max_sequence_number(metadata.account_id) == -1
            uow.insert_transaction(make_transaction(metadata.account_id, "t1", sequence_number=4))
            assert uow.max_sequence_number(metadata.account_id) == 4

    def test_raw_processing_state(self, store):
        """Raw records with a transaction are processed; skipped ones are not."""
        metadata = make_metadata()
        with store.unit_of_work() as uow:
            uow.upsert_account_metadata(metadata)
            uow.insert_batch(make_batch(metadata.account_id, total=2, imported=1, skipped=1))
            uow.insert_transaction(make_transaction(metadata.account_id, "t1"))
            uow.insert_raw_transaction(
                make_raw(metadata.account_id, "batch-1"), fingerprint="fp-t1", transaction_id="t1"
            )
            uow.insert_raw_transaction(make_raw(metadata.account_id, "batch-1", 1, amount=None))

        records = store.get_raw_transactions("batch-1")
        assert [r.processed for r in records] == [True, False]
        assert records[1].skip_reason == "missing date or amount"
        assert records[0].raw.amount == Decimal("4.50")
        [held] = store.get_unprocessed_raw(metadata.account_id)
        assert held.sequence == 1


class TestQueries:
    """Tests for ledger reads."""

    @pytest.fixture
    def store(self, temp_db):
        store = LedgerStore(temp_db)
        metadata = make_metadata()
        with store.unit_of_work() as uow:
            uow.upsert_account_metadata(metadata)
            uow.insert_transaction(
                make_transaction(metadata.account_id, "b", date(2024, 1, 5), sequence_number=2)
            )
            uow.insert_transaction(
                make_transaction(metadata.account_id, "a", date(2024, 1, 5), sequence_number=1)
            )
            uow.insert_transaction(
                make_transaction(metadata.account_id, "c", date(2024, 1, 1), sequence_number=3)
            )
        return store

    def test_ledger_order(self, store):
        """Date, then sequence number, then id."""
        assert [t.id for t in store.get_transactions()] == ["c", "a", "b"]

    def test_account_filter(self, store):
        assert store.get_transactions([]) == []
        assert store.get_transactions(["other"]) == []
        assert len(store.get_transactions([make_metadata().account_id])) == 3

    def test_compiled_filter(self, store):
        rows = store.query_transactions("date >= ?", ["2024-01-05"])
        assert [t.id for t in rows] == ["a", "b"]

    def test_round_trip_exact(self, store):
        """Amounts come back as the exact Decimal written."""
        assert store.get_transaction("a").amount == Decimal("-4.50")
        assert store.get_transaction("missing") is None


class TestRetention:
    """Tests for the retention sweep."""

    @pytest.fixture
    def store(self, temp_db):
        store = LedgerStore(temp_db)
        metadata = make_metadata()
        account_id = metadata.account_id
        with store.unit_of_work(now=OLD) as uow:
            uow.upsert_account_metadata(metadata)
            # batch-1 keeps a skipped raw record; batch-2 is fully processed
            uow.insert_batch(make_batch(account_id, "batch-1", total=2, imported=1, skipped=1))
            uow.insert_batch(make_batch(account_id, "batch-2", total=1, imported=1))
            uow.insert_transaction(make_transaction(account_id, "t1"))
            uow.insert_transaction(make_transaction(account_id, "t2", amount="-9.00"))
            uow.insert_raw_transaction(
                make_raw(account_id, "batch-1"), fingerprint="fp-t1", transaction_id="t1"
            )
            uow.insert_raw_transaction(make_raw(account_id, "batch-1", 1, amount=None))
            uow.insert_raw_transaction(
                make_raw(account_id, "batch-2", amount="9.00"),
                fingerprint="fp-t2",
                transaction_id="t2",
            )
        return store

    def test_sweep(self, store):
        """Processed raws go; unprocessed raws and transactions stay."""
        report = store.sweep_retention(90, 365, now=datetime(2024, 6, 1, tzinfo=timezone.utc))

        assert report.raw_deleted == 2
        assert report.batches_deleted == 1
        assert [b.id for b in store.get_batches()] == ["batch-1"]
        assert len(store.get_unprocessed_raw()) == 1
        assert store.get_stats()["transactions"] == 2

    def test_nothing_aged(self, store):
        """Records inside the window are untouched."""
        report = store.sweep_retention(90, 365, now=datetime(2023, 2, 1, tzinfo=timezone.utc))
        assert report.raw_deleted == 0
        assert report.batches_deleted == 0
        assert store.get_stats()["raw_processed"] == 2


class TestAccountLocks:
    """Tests for per-account writer locks."""

    def test_sorted_and_released(self):
        locks = AccountLocks()
        with locks.hold(["b", "a", "b"]) as held:
            assert held == ["a", "b"]
            assert locks.is_locked("a")
        assert not locks.is_locked("a")

    def test_busy(self):
        """A held account cannot be taken by another import."""
        locks = AccountLocks()
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold(["a"]):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            acquired.wait(5)
            with pytest.raises(AccountBusyError):
                with locks.hold(["a"], timeout=0.01):
                    pass
        finally:
            release.set()
            thread.join()

    def test_partial_acquire_released(self):
        """Locks taken before a timeout are given back."""
        locks = AccountLocks()
        with locks.hold(["c"]):
            with pytest.raises(AccountBusyError):
                with locks.hold(["b", "c"], timeout=0.01):
                    pass
            assert not locks.is_locked("b")
