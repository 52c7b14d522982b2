"""Ledger context.

The explicit handle callers hold instead of any process-wide state. It owns
the store, the source registry, the account locks and the importer, and
answers rule queries through a pluggable evaluator.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from ..errors import LedgerIngestError
from ..query.aggregation import balance_at, monthly_statistics, running_balances
from ..query.rules import RuleEvaluator, SqlEvaluator
from ..schemas.ledger import (
    AccountMetadata,
    ImportResult,
    LedgerRule,
    MonthlyStat,
    SourceType,
    Transaction,
)
from ..sources import clear_parse_caches
from ..sources.registry import SourceRegistry, default_registry
from ..state_store import AccountLocks, LedgerStore, RetentionReport
from .importer import CancellationToken, ImportOrchestrator, ProgressCallback

if TYPE_CHECKING:
    from ..config import Config
    from ..sources.base import Source

logger = logging.getLogger(__name__)


class Ledger:
    """Caller-facing entry point: import, inspect accounts, query and aggregate."""

    def __init__(
        self,
        store: LedgerStore,
        registry: Optional[SourceRegistry] = None,
        evaluator: Optional[RuleEvaluator] = None,
        raw_retention_days: int = 90,
        batch_retention_days: int = 365,
        progress_interval: int = 100,
        lock_timeout: Optional[float] = None,
        default_currency: Optional[str] = None,
        max_workers: int = 2,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize the ledger context.

        Args:
            store: Ledger store (owned by this context).
            registry: Source registry; defaults to every built-in adapter.
            evaluator: Rule evaluator; defaults to SQL against the store.
            raw_retention_days: Age after which processed raw records are swept.
            batch_retention_days: Age after which empty import batches are swept.
            progress_interval: Rows between progress callbacks.
            lock_timeout: Seconds to wait for an account lock (None = wait).
            default_currency: Currency for records and accounts without one.
            max_workers: Threads available to ``import_async``.
            clock: Time source for batch timestamps.
        """
        self.store = store
        self.registry = registry or default_registry()
        self.evaluator: RuleEvaluator = evaluator or SqlEvaluator(store)
        self.raw_retention_days = raw_retention_days
        self.batch_retention_days = batch_retention_days
        self.locks = AccountLocks()
        self.importer = ImportOrchestrator(
            store=store,
            registry=self.registry,
            locks=self.locks,
            progress_interval=progress_interval,
            lock_timeout=lock_timeout,
            default_currency=default_currency,
            clock=clock,
        )
        self._max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None

    @classmethod
    def open(cls, db_path: Path | str, **kwargs: Any) -> Ledger:
        return cls(LedgerStore(db_path), **kwargs)

    @classmethod
    def from_config(cls, config: Config) -> Ledger:
        return cls(
            LedgerStore(config.store.db_path),
            raw_retention_days=config.retention.raw_retention_days,
            batch_retention_days=config.retention.batch_retention_days,
            progress_interval=config.imports.progress_interval,
            lock_timeout=config.imports.lock_timeout_seconds,
            default_currency=config.imports.default_currency,
        )

    # Import

    def import_from(
        self,
        source: Source,
        source_type: SourceType | str,
        params: Optional[dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> ImportResult:
        """Import an artifact; typed failures come back on the result, never raised.

        Returns:
            ImportResult with counts, or zero counts plus ``error`` on failure.
        """
        try:
            return self.importer.run(source, source_type, params, cancel_token, progress)
        except LedgerIngestError as e:
            return ImportResult.failed(e)

    def import_async(
        self,
        source: Source,
        source_type: SourceType | str,
        params: Optional[dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Future[ImportResult]:
        """Run ``import_from`` on a worker thread, off the caller's thread."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="ledger-import"
            )
        return self._executor.submit(
            self.import_from, source, source_type, params, cancel_token, progress
        )

    def accounts(
        self,
        source: Source,
        source_type: SourceType | str,
        params: Optional[dict[str, Any]] = None,
    ) -> list[AccountMetadata]:
        """Account headers found in an artifact, without importing anything.

        Raises:
            LedgerIngestError: Unsupported source, bad params, or unreadable artifact.
        """
        binding = self.registry.get(source_type)
        try:
            return binding.adapter.extract_accounts(source, params)
        finally:
            clear_parse_caches()

    # Queries

    def query(self, rule: LedgerRule) -> list[Transaction]:
        return self.evaluator.evaluate(rule)

    def monthly_statistics(self, rule: LedgerRule) -> list[MonthlyStat]:
        return monthly_statistics(self.query(rule))

    def balance(self, rule: LedgerRule, at_date: date) -> Decimal:
        """Rule's starting balance plus matching transactions dated on or before ``at_date``."""
        return balance_at(self.query(rule), at_date, rule.starting_balance)

    def running_balances(
        self, rule: LedgerRule, until: Optional[date] = None
    ) -> list[tuple[Transaction, Decimal]]:
        return running_balances(self.query(rule), rule.starting_balance, until)

    def opening_balance(self, account_ids: Iterable[str]) -> Decimal:
        """Sum of the stored starting balances of the given accounts."""
        total = Decimal("0")
        for account_id in set(account_ids):
            metadata = self.store.get_account_metadata(account_id=account_id)
            if metadata is not None:
                total += metadata.starting_balance
        return total

    def list_accounts(self) -> list[AccountMetadata]:
        return self.store.list_account_metadata()

    # Maintenance

    def sweep_retention(self, now: Optional[datetime] = None) -> RetentionReport:
        return self.store.sweep_retention(
            raw_retention_days=self.raw_retention_days,
            batch_retention_days=self.batch_retention_days,
            now=now,
        )

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> Ledger:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
