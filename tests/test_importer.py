"""Tests for import orchestration and the ledger context."""

import sqlite3
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from ledger_ingest.errors import (
    AccountBusyError,
    ImportCancelled,
    ParseError,
    PersistenceError,
    SourceConfigError,
    UnsupportedSourceError,
)
from ledger_ingest.query import InMemoryEvaluator
from ledger_ingest.schemas.ledger import Flow, LedgerRule, SourceType, account_id_for
from ledger_ingest.services import CancellationToken, ImportStage, Ledger
from ledger_ingest.sources import Source
from ledger_ingest.sources.card_statement import load_statement as load_card_statement
from ledger_ingest.state_store import LedgerStore, UnitOfWork

from conftest import CARD_LAST4, LOAN_NUMBER, SHEET_ACCOUNT_NUMBER, card_csv

CARD_ID = account_id_for(SourceType.CARD_STATEMENT_CSV, CARD_LAST4)
LOAN_ID = account_id_for(SourceType.LOAN_STATEMENT_PDF, LOAN_NUMBER)
SHEET_ID = account_id_for(SourceType.BANK_SPREADSHEET, SHEET_ACCOUNT_NUMBER)

COFFEE = "2024-01-05,Coffee Shop,4.50,Purchase"
BOOKS = "2024-01-06,Books,20.00,Purchase"
LUNCH = "2024-01-07,Lunch,9.80,Purchase"


@pytest.fixture
def ledger(temp_db):
    """Ledger over a fresh store."""
    ledger = Ledger(LedgerStore(temp_db))
    yield ledger
    ledger.close()


def empty_stats(store) -> bool:
    stats = store.get_stats()
    return (
        stats["accounts"] == 0
        and stats["transactions"] == 0
        and stats["import_batches"] == 0
        and stats["raw_processed"] + stats["raw_unprocessed"] == 0
    )


class TestCardImport:
    """Tests for importing a credit card statement."""

    def test_counts(self, ledger, card_source):
        """Every row becomes a transaction on the first import."""
        result = ledger.import_from(card_source, "card_statement_csv")

        assert result.success
        assert result.total_raw_records == 5
        assert result.successful_imports == 5
        assert result.duplicate_count == 0
        assert result.skipped_count == 0
        assert len(result.batch_ids) == 1
        assert [m.account_id for m in result.new_account_metadata] == [CARD_ID]

    def test_sign_convention(self, ledger, card_source):
        """Charges and fees reduce the balance; payments and refunds raise it."""
        ledger.import_from(card_source, "card_statement_csv")
        transactions = ledger.query(LedgerRule(include_accounts=[CARD_ID]))

        assert [t.amount for t in transactions] == [
            Decimal("-4.50"),
            Decimal("-82.10"),
            Decimal("500.00"),
            Decimal("12.00"),
            Decimal("-95.00"),
        ]
        assert [t.flow for t in transactions] == [
            Flow.EXPENSE,
            Flow.EXPENSE,
            Flow.NEUTRAL,
            Flow.INCOME,
            Flow.EXPENSE,
        ]
        assert [t.sequence_number for t in transactions] == [0, 1, 2, 3, 4]
        assert transactions[0].merchant == "Coffee Shop"
        assert transactions[0].notes == "reference: REF001; type: Purchase"
        assert transactions[0].currency == "USD"

    def test_balance(self, ledger, card_source):
        ledger.import_from(card_source, "card_statement_csv")
        rule = LedgerRule(include_accounts=[CARD_ID])
        assert ledger.balance(rule, date(2024, 1, 31)) == Decimal("330.40")
        assert ledger.balance(rule, date(2024, 1, 10)) == Decimal("-86.60")

    def test_reimport_is_idempotent(self, ledger, card_source):
        """Importing the same statement again adds nothing."""
        ledger.import_from(card_source, "card_statement_csv")
        result = ledger.import_from(card_source, "card_statement_csv")

        assert result.success
        assert result.successful_imports == 0
        assert result.duplicate_count == 5
        assert result.new_account_metadata == []
        stats = ledger.store.get_stats()
        assert stats["transactions"] == 5
        assert stats["import_batches"] == 2
        assert stats["raw_processed"] == 5

    def test_batch_audit(self, ledger, card_source):
        """The batch row records the artifact and conserving counts."""
        result = ledger.import_from(card_source, "card_statement_csv")
        [batch] = ledger.store.get_batches(CARD_ID)

        assert batch.id == result.batch_ids[0]
        assert batch.source_file_name == "card_2024_01.csv"
        assert batch.source_hash == card_source.source_hash
        assert batch.total_raw_records == 5
        assert batch.conservation_holds
        raws = ledger.store.get_raw_transactions(batch.id)
        assert all(r.processed and r.transaction_id for r in raws)

    def test_twin_rows_and_overlap(self, ledger):
        """Same-day twins stay distinct; overlapping statements only add new rows."""
        first = Source.from_bytes(card_csv([COFFEE, COFFEE, BOOKS]), "december.csv")
        second = Source.from_bytes(card_csv([COFFEE, COFFEE, BOOKS, COFFEE, LUNCH]), "january.csv")

        assert ledger.import_from(first, "card_statement_csv").successful_imports == 3
        result = ledger.import_from(second, "card_statement_csv")

        assert result.successful_imports == 2
        assert result.duplicate_count == 3
        transactions = ledger.store.get_transactions([CARD_ID])
        assert len(transactions) == 5
        assert sorted(t.sequence_number for t in transactions) == [0, 1, 2, 3, 4]
        added = [t for t in transactions if t.import_batch_id == result.batch_ids[0]]
        assert sorted(t.sequence_number for t in added) == [3, 4]

    def test_coffee_refund_is_income(self, ledger):
        """A refund from a merchant whose name contains "fee" keeps its credit sign."""
        source = Source.from_bytes(
            card_csv(["2024-01-05,Coffee Shop,4.50,", "2024-01-09,Coffee Shop,-4.50,"]),
            "coffee.csv",
        )
        assert ledger.import_from(source, "card_statement_csv").successful_imports == 2

        transactions = ledger.store.get_transactions([CARD_ID])
        assert [(t.amount, t.flow) for t in transactions] == [
            (Decimal("-4.50"), Flow.EXPENSE),
            (Decimal("4.50"), Flow.INCOME),
        ]

    def test_row_without_card_is_counted(self, ledger):
        """Rows that name no card are held back and counted as skipped."""
        source = Source.from_bytes(
            b"Date,Description,Amount,Card Number\n"
            b"2024-01-05,Coffee,4.50,**** 1111\n"
            b"2024-01-06,Books,20.00,\n"
            b"2024-01-07,Lunch,9.80,**** 1111\n",
            "cards.csv",
        )
        result = ledger.import_from(source, "card_statement_csv")

        assert result.total_raw_records == 3
        assert result.successful_imports == 2
        assert result.skipped_count == 1
        assert result.total_raw_records == (
            result.successful_imports + result.duplicate_count + result.skipped_count
        )
        [held] = ledger.store.get_unprocessed_raw()
        assert held.skip_reason == "Row does not identify the card"

    def test_parsed_statement_not_retained(self, ledger, card_source):
        """Nothing parsed from the artifact outlives the import."""
        ledger.import_from(card_source, "card_statement_csv")
        assert load_card_statement.cache_info().currsize == 0
        ledger.accounts(card_source, "card_statement_csv")
        assert load_card_statement.cache_info().currsize == 0

    def test_default_currency(self, temp_db):
        """Accounts without a currency take the configured default."""
        ledger = Ledger(LedgerStore(temp_db), default_currency="EUR")
        source = Source.from_bytes(b"Date,Description,Amount\n2024-01-05,Coffee,4.50\n", "x.csv")
        result = ledger.import_from(source, "card_statement_csv", {"card_number": "1234"})

        assert result.success
        [transaction] = ledger.store.get_transactions()
        assert transaction.currency == "EUR"
        assert ledger.list_accounts()[0].currency == "EUR"


class TestLoanImport:
    """Tests for importing a loan repayment statement."""

    def test_repayments(self, ledger, loan_source):
        """Principal repayments move the negative debt toward zero."""
        result = ledger.import_from(loan_source, SourceType.LOAN_STATEMENT_PDF)

        assert result.success
        assert result.successful_imports == 3
        transactions = ledger.store.get_transactions([LOAN_ID])
        assert [t.amount for t in transactions] == [
            Decimal("1000.00"),
            Decimal("1020.00"),
            Decimal("1040.00"),
        ]
        assert all(t.flow == Flow.NEUTRAL for t in transactions)
        assert transactions[0].balance == Decimal("-179000.00")
        assert transactions[0].notes == "period: 1; payment: 1735.00; interest: 735.00"
        assert transactions[0].currency == "CNY"

    def test_balance_matches_statement(self, ledger, loan_source):
        """Opening debt plus repayments equals the printed remaining principal."""
        ledger.import_from(loan_source, "loan_statement_pdf")
        opening = ledger.opening_balance([LOAN_ID])
        rule = LedgerRule(include_accounts=[LOAN_ID], starting_balance=opening)

        assert opening == Decimal("-180000.00")
        assert ledger.balance(rule, date(2020, 4, 30)) == Decimal("-176940.00")
        series = ledger.running_balances(rule)
        assert [balance for _, balance in series] == [t.balance for t, _ in series]

    def test_raw_pages(self, ledger, loan_source):
        """Raw records keep the page they were printed on."""
        result = ledger.import_from(loan_source, "loan_statement_pdf")
        raws = ledger.store.get_raw_transactions(result.batch_ids[0])
        assert [r.page for r in raws] == [1, 1, 2]

    def test_metadata(self, ledger, loan_source):
        ledger.import_from(loan_source, "loan_statement_pdf")
        [account] = ledger.list_accounts()
        assert account.account_id == LOAN_ID
        assert account.fields["borrower"] == "Zhang Wei"


class TestSpreadsheetImport:
    """Tests for importing a bank spreadsheet."""

    def test_skipped_rows_are_held(self, ledger, sheet_source):
        """Unparseable rows are counted and kept unprocessed, never imported."""
        result = ledger.import_from(sheet_source, "bank_spreadsheet")

        assert result.total_raw_records == 4
        assert result.successful_imports == 3
        assert result.skipped_count == 1
        [held] = ledger.store.get_unprocessed_raw(SHEET_ID)
        assert "Unparseable date" in held.skip_reason
        assert held.fingerprint is None
        assert held.raw.counterparty == "Broken row"

    def test_reimport_skips_again(self, ledger, sheet_source):
        ledger.import_from(sheet_source, "bank_spreadsheet")
        result = ledger.import_from(sheet_source, "bank_spreadsheet")
        assert result.duplicate_count == 3
        assert result.skipped_count == 1
        assert len(ledger.store.get_unprocessed_raw(SHEET_ID)) == 2

    def test_balance(self, ledger, sheet_source):
        ledger.import_from(sheet_source, "bank_spreadsheet")
        rule = LedgerRule(
            include_accounts=[SHEET_ID], starting_balance=ledger.opening_balance([SHEET_ID])
        )
        assert ledger.balance(rule, date(2024, 1, 31)) == Decimal("2745.70")


class TestApiImport:
    """Tests for importing aggregation API pages."""

    def test_accounts_and_counts(self, ledger, api_source):
        """Each provider account gets its own batch."""
        result = ledger.import_from(api_source, "aggregator_api")

        assert result.success
        assert result.total_raw_records == 6
        assert result.successful_imports == 5
        assert result.skipped_count == 1
        assert len(result.batch_ids) == 2
        assert len(result.new_account_metadata) == 2

    def test_card_account_signs(self, ledger, api_source):
        ledger.import_from(api_source, "aggregator_api")
        card_id = account_id_for(SourceType.AGGREGATOR_API, "acc-card")
        transactions = ledger.store.get_transactions([card_id])

        assert [(t.amount, t.flow) for t in transactions] == [
            (Decimal("-19.99"), Flow.EXPENSE),
            (Decimal("300.00"), Flow.NEUTRAL),
        ]

    def test_amount_finer_than_stored_precision(self, ledger):
        """Sub-precision amounts are stored rounded, so both evaluators agree."""
        record = {
            "id": "tx-9",
            "account_id": "acc-x",
            "date": "2024-03-01",
            "amount": Decimal("-10.00001"),
        }
        page = {"transactions": [record], "next_cursor": None}
        assert ledger.import_from(Source.from_api_pages([page]), "aggregator_api").success

        [transaction] = ledger.store.get_transactions()
        assert transaction.amount == Decimal("-10.0000")
        memory = InMemoryEvaluator(ledger.store.get_transactions())
        for bound in ("10.00004", "10", "9.99996"):
            rule = LedgerRule(min_amount=Decimal(bound))
            assert [t.id for t in ledger.query(rule)] == [t.id for t in memory.evaluate(rule)]
        assert ledger.query(LedgerRule(min_amount=Decimal("10.00004"))) == []

    def test_provider_ids_dedupe(self, ledger, api_pages):
        """A later fetch with an edited amount does not re-import the record."""
        ledger.import_from(Source.from_api_pages(api_pages), "aggregator_api")
        edited = [dict(api_pages[0])]
        edited[0]["transactions"] = [dict(api_pages[0]["transactions"][0], amount="2500.01")]
        result = ledger.import_from(Source.from_api_pages(edited), "aggregator_api")

        assert result.successful_imports == 0
        assert result.duplicate_count == 1


class TestImportFailures:
    """Tests for failures: typed errors, nothing committed."""

    def test_unsupported_source(self, ledger, card_source):
        result = ledger.import_from(card_source, "fax")
        assert not result.success
        assert isinstance(result.error, UnsupportedSourceError)

    def test_bad_params(self, ledger, card_source):
        result = ledger.import_from(card_source, "card_statement_csv", {"sheet": "1"})
        assert isinstance(result.error, SourceConfigError)
        assert empty_stats(ledger.store)

    def test_parse_error(self, ledger):
        source = Source.from_bytes(b"just some text\n", "notes.csv")
        result = ledger.import_from(source, "card_statement_csv")
        assert isinstance(result.error, ParseError)
        assert result.successful_imports == 0

    @pytest.mark.parametrize(
        "page",
        [
            {"accounts": [{"id": ""}], "transactions": []},
            {"transactions": [{"account_id": "", "date": "2024-01-05", "amount": "1.00"}]},
            {"transactions": ["tx-1"]},
        ],
    )
    def test_malformed_api_page(self, ledger, page):
        """Records without a usable account come back as a typed result."""
        result = ledger.import_from(Source.from_api_pages([page]), "aggregator_api")

        assert isinstance(result.error, ParseError)
        assert result.total_raw_records == 0
        assert empty_stats(ledger.store)

    def test_storage_failure_rolls_back(self, ledger, card_source, monkeypatch):
        """A failure on the fourth insert leaves no trace of the import."""
        original = UnitOfWork.insert_transaction
        calls = {"count": 0}

        def failing_insert(self, transaction):
            calls["count"] += 1
            if calls["count"] == 4:
                raise sqlite3.OperationalError("disk I/O error")
            original(self, transaction)

        monkeypatch.setattr(UnitOfWork, "insert_transaction", failing_insert)
        result = ledger.import_from(card_source, "card_statement_csv")

        assert isinstance(result.error, PersistenceError)
        assert result.to_dict()["successful_imports"] == 0
        assert empty_stats(ledger.store)

        monkeypatch.undo()
        retry = ledger.import_from(card_source, "card_statement_csv")
        assert retry.successful_imports == 5

    def test_cancellation(self, temp_db, card_source):
        """Cancelling mid-import discards the partial batch."""
        ledger = Ledger(LedgerStore(temp_db), progress_interval=1)
        token = CancellationToken()
        reports = []

        def on_progress(report):
            reports.append(report)
            token.cancel()

        result = ledger.import_from(
            card_source, "card_statement_csv", cancel_token=token, progress=on_progress
        )

        assert isinstance(result.error, ImportCancelled)
        assert reports[0].stage == ImportStage.FINGERPRINT
        assert reports[0].processed == 1
        assert empty_stats(ledger.store)

    def test_account_busy(self, temp_db, card_source):
        """An account held by another import times out with a retryable error."""
        ledger = Ledger(LedgerStore(temp_db), lock_timeout=0.01)
        with ledger.locks.hold([CARD_ID]):
            result = ledger.import_from(card_source, "card_statement_csv")

        assert isinstance(result.error, AccountBusyError)
        assert result.error.retryable
        assert empty_stats(ledger.store)

    def test_errors_raise_from_orchestrator(self, ledger, card_source):
        """The orchestrator itself raises; only the ledger folds errors into results."""
        with pytest.raises(UnsupportedSourceError):
            ledger.importer.run(card_source, "fax")


class TestProgress:
    """Tests for advisory progress reports."""

    def test_interval(self, temp_db, card_source):
        ledger = Ledger(LedgerStore(temp_db), progress_interval=2)
        reports = []
        ledger.import_from(card_source, "card_statement_csv", progress=reports.append)

        fingerprint = [r.processed for r in reports if r.stage == ImportStage.FINGERPRINT]
        assert fingerprint == [2, 4, 5]
        assert all(r.total == 5 for r in reports)


class TestLedger:
    """Tests for the ledger context."""

    def test_accounts_without_import(self, ledger, card_source):
        """Inspecting accounts writes nothing."""
        [account] = ledger.accounts(card_source, "card_statement_csv")
        assert account.external_id == CARD_LAST4
        assert empty_stats(ledger.store)

    def test_concurrent_imports_same_account(self, ledger, card_source):
        """Two imports of one statement serialize; each row lands once."""
        futures = [ledger.import_async(card_source, "card_statement_csv") for _ in range(2)]
        results = [future.result(timeout=30) for future in futures]

        assert all(r.success for r in results)
        assert sum(r.successful_imports for r in results) == 5
        assert sum(r.duplicate_count for r in results) == 5
        assert ledger.store.get_stats()["transactions"] == 5

    def test_accounts_are_independent(self, ledger, card_source, sheet_source):
        ledger.import_from(card_source, "card_statement_csv")
        ledger.import_from(sheet_source, "bank_spreadsheet")
        assert len(ledger.list_accounts()) == 2
        rule = LedgerRule(exclude_accounts=[CARD_ID])
        assert {t.account_id for t in ledger.query(rule)} == {SHEET_ID}

    def test_monthly_statistics(self, ledger, card_source):
        ledger.import_from(card_source, "card_statement_csv")
        [stat] = ledger.monthly_statistics(LedgerRule(include_accounts=[CARD_ID]))

        assert stat.period == "2024-01"
        assert stat.income == Decimal("512.00")
        assert stat.expenses == Decimal("181.60")
        assert stat.net == Decimal("330.40")
        assert stat.count == 5

    def test_retention(self, temp_db, card_source, sheet_source):
        """Aged processed raws and emptied batches are swept; held raws stay."""
        ledger = Ledger(
            LedgerStore(temp_db), clock=lambda: datetime(2023, 1, 1, tzinfo=timezone.utc)
        )
        ledger.import_from(card_source, "card_statement_csv")
        ledger.import_from(sheet_source, "bank_spreadsheet")

        report = ledger.sweep_retention(now=datetime(2024, 6, 1, tzinfo=timezone.utc))

        assert report.raw_deleted == 8
        assert report.batches_deleted == 1
        assert [b.account_id for b in ledger.store.get_batches()] == [SHEET_ID]
        assert len(ledger.store.get_unprocessed_raw()) == 1
        assert ledger.store.get_stats()["transactions"] == 8

    def test_open(self, temp_db):
        with Ledger.open(temp_db, default_currency="USD") as ledger:
            assert ledger.importer.default_currency == "USD"
            assert ledger.list_accounts() == []
