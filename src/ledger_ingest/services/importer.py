"""Import orchestration.

Drives one import invocation through its stages as a single unit of work:

    EXTRACT -> FINGERPRINT -> CANONICALIZE -> PERSIST -> COMMIT

Nothing is written before PERSIST and everything is committed at once in
COMMIT. Any failure (storage, cancellation, parse) rolls the whole
invocation back: no raw records, no transactions, no batch rows.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from ..errors import ImportCancelled, LedgerIngestError
from ..schemas.dedupe import assign_fingerprints, is_duplicate
from ..schemas.ledger import (
    AccountMetadata,
    ImportBatch,
    ImportResult,
    RawTransaction,
    SourceType,
    Transaction,
    transaction_id_for,
    utc_timestamp,
)
from ..sources import clear_parse_caches

if TYPE_CHECKING:
    from ..sources.base import Source
    from ..sources.registry import SourceBinding, SourceRegistry
    from ..sources.traits import AccountTrait
    from ..state_store import AccountLocks, LedgerStore, UnitOfWork

logger = logging.getLogger(__name__)


class ImportStage(str, Enum):
    """Stages of one import invocation."""

    EXTRACT = "extract"
    FINGERPRINT = "fingerprint"
    CANONICALIZE = "canonicalize"
    PERSIST = "persist"
    COMMIT = "commit"


class CancellationToken:
    """Cooperative cancellation flag shared with a running import."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ImportCancelled("Import cancelled; partial batch discarded")


@dataclass
class ImportProgress:
    """Advisory progress report. Never used for correctness."""

    stage: ImportStage
    account_id: str
    processed: int
    total: int


ProgressCallback = Callable[[ImportProgress], None]


@dataclass
class _AccountPlan:
    """Everything extracted for one account before anything is written."""

    metadata: AccountMetadata
    trait: AccountTrait
    batch_id: str
    raws: list[RawTransaction]
    fingerprints: list[Optional[str]] = field(default_factory=list)
    new_indexes: list[int] = field(default_factory=list)
    duplicate_count: int = 0
    skipped_count: int = 0
    transactions: dict[int, Transaction] = field(default_factory=dict)


class ImportOrchestrator:
    """Runs imports against a ledger store.

    The orchestrator is the only component that commits. Adapters and the
    duplicate detector only compute; the store only executes what the
    orchestrator hands it inside one unit of work.
    """

    def __init__(
        self,
        store: LedgerStore,
        registry: SourceRegistry,
        locks: AccountLocks,
        progress_interval: int = 100,
        lock_timeout: Optional[float] = None,
        default_currency: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Ledger store receiving the unit of work.
            registry: Closed source registry.
            locks: Per-account writer locks shared by every importer of the store.
            progress_interval: Rows between progress callbacks.
            lock_timeout: Seconds to wait for an account lock (None = wait).
            default_currency: Currency for records and accounts without one.
            clock: Time source for batch timestamps.
        """
        self.store = store
        self.registry = registry
        self.locks = locks
        self.progress_interval = max(1, progress_interval)
        self.lock_timeout = lock_timeout
        self.default_currency = default_currency
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _enter(self, stage: ImportStage, detail: str = "") -> None:
        logger.info(f"[{stage.value}] {detail}".rstrip())

    def _report(
        self,
        progress: Optional[ProgressCallback],
        stage: ImportStage,
        account_id: str,
        processed: int,
        total: int,
    ) -> None:
        if progress is None:
            return
        if processed % self.progress_interval == 0 or processed == total:
            progress(ImportProgress(stage, account_id, processed, total))

    def run(
        self,
        source: Source,
        source_type: SourceType | str,
        params: Optional[dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> ImportResult:
        """Import one artifact.

        Args:
            source: Artifact to import.
            source_type: Registered source type tag.
            params: Adapter parameters.
            cancel_token: Checked between rows; cancelling discards everything.
            progress: Called every ``progress_interval`` rows.

        Returns:
            ImportResult with summed counts across the artifact's accounts.

        Raises:
            LedgerIngestError: Any typed failure; nothing was committed.
        """
        token = cancel_token or CancellationToken()
        binding = self.registry.get(source_type)

        try:
            plans = self._extract(binding, source, params, token)
            if not plans:
                logger.info(f"No accounts found in {source.file_name}, nothing to import")
                return ImportResult()

            account_ids = [plan.metadata.account_id for plan in plans]
            with self.locks.hold(account_ids, timeout=self.lock_timeout):
                imported_at = utc_timestamp(self.clock())
                with self.store.unit_of_work(now=imported_at) as uow:
                    for plan in plans:
                        self._fingerprint(plan, binding, uow, token, progress)
                        self._canonicalize(plan, uow, token, progress)
                    result = self._persist(plans, binding, source, uow, imported_at, token)
                    self._enter(ImportStage.COMMIT, f"{len(plans)} batch(es)")
        except LedgerIngestError as e:
            logger.warning(f"Import of {source.file_name} rolled back: {e}")
            raise

        logger.info(
            f"Imported {source.file_name}: total={result.total_raw_records}, "
            f"new={result.successful_imports}, duplicates={result.duplicate_count}, "
            f"skipped={result.skipped_count}"
        )
        return result

    def _extract(
        self,
        binding: SourceBinding,
        source: Source,
        params: Optional[dict[str, Any]],
        token: CancellationToken,
    ) -> list[_AccountPlan]:
        adapter = binding.adapter
        params = adapter.validate_params(params)
        self._enter(ImportStage.EXTRACT, f"{binding.source_type.value}: {source.file_name}")

        plans = []
        try:
            for metadata in adapter.extract_accounts(source, params):
                token.raise_if_cancelled()
                if metadata.currency is None:
                    metadata.currency = self.default_currency
                batch_id = uuid.uuid4().hex
                raws = adapter.extract_transactions(
                    metadata.external_id, source, metadata.account_id, batch_id, params
                )
                plans.append(
                    _AccountPlan(
                        metadata=metadata,
                        trait=binding.trait_for(metadata.account_type),
                        batch_id=batch_id,
                        raws=raws,
                    )
                )
                logger.debug(f"Extracted {len(raws)} raw records for {metadata.external_id}")
        finally:
            # Parsed artifacts are only shared between the calls above
            clear_parse_caches()
        return plans

    def _fingerprint(
        self,
        plan: _AccountPlan,
        binding: SourceBinding,
        uow: UnitOfWork,
        token: CancellationToken,
        progress: Optional[ProgressCallback],
    ) -> None:
        account_id = plan.metadata.account_id
        self._enter(
            ImportStage.FINGERPRINT, f"{binding.strategy.name} for {plan.metadata.external_id}"
        )
        plan.fingerprints = assign_fingerprints(plan.raws, binding.strategy)
        existing = uow.existing_fingerprints(account_id)

        total = len(plan.raws)
        for index, fingerprint in enumerate(plan.fingerprints):
            token.raise_if_cancelled()
            if fingerprint is None:
                plan.skipped_count += 1
            elif is_duplicate(fingerprint, existing):
                plan.duplicate_count += 1
            else:
                plan.new_indexes.append(index)
            self._report(progress, ImportStage.FINGERPRINT, account_id, index + 1, total)

    def _canonicalize(
        self,
        plan: _AccountPlan,
        uow: UnitOfWork,
        token: CancellationToken,
        progress: Optional[ProgressCallback],
    ) -> None:
        account_id = plan.metadata.account_id
        self._enter(ImportStage.CANONICALIZE, f"{len(plan.new_indexes)} new record(s)")
        next_sequence = uow.max_sequence_number(account_id) + 1

        total = len(plan.new_indexes)
        for position, index in enumerate(plan.new_indexes):
            token.raise_if_cancelled()
            raw = plan.raws[index]
            fingerprint = plan.fingerprints[index]
            amount, flow = plan.trait.canonical_amount(raw)
            plan.transactions[index] = Transaction(
                id=transaction_id_for(account_id, fingerprint),
                account_id=account_id,
                date=raw.date,
                amount=amount,
                merchant=raw.counterparty,
                notes=plan.trait.notes(raw),
                balance=plan.trait.canonical_balance(raw),
                sequence_number=next_sequence + position,
                flow=flow,
                category=raw.category,
                currency=raw.currency or plan.metadata.currency or self.default_currency,
                import_batch_id=plan.batch_id,
                fingerprint=fingerprint,
            )
            self._report(progress, ImportStage.CANONICALIZE, account_id, position + 1, total)

    def _persist(
        self,
        plans: list[_AccountPlan],
        binding: SourceBinding,
        source: Source,
        uow: UnitOfWork,
        imported_at: str,
        token: CancellationToken,
    ) -> ImportResult:
        self._enter(ImportStage.PERSIST, f"{len(plans)} account(s)")
        result = ImportResult()
        source_hash = source.source_hash

        for plan in plans:
            stored, created = uow.upsert_account_metadata(plan.metadata)
            if created:
                result.new_account_metadata.append(stored)

            batch = ImportBatch(
                id=plan.batch_id,
                account_id=stored.account_id,
                source_type=binding.source_type,
                source_file_name=source.file_name,
                imported_at=imported_at,
                total_raw_records=len(plan.raws),
                successful_imports=len(plan.transactions),
                duplicate_count=plan.duplicate_count,
                skipped_count=plan.skipped_count,
                source_hash=source_hash,
            )
            uow.insert_batch(batch)

            # Duplicates are counted on the batch only; skipped rows are kept unprocessed
            for index, raw in enumerate(plan.raws):
                token.raise_if_cancelled()
                transaction = plan.transactions.get(index)
                if transaction is None and not raw.is_skipped:
                    continue
                uow.insert_raw_transaction(
                    raw,
                    fingerprint=plan.fingerprints[index],
                    transaction_id=transaction.id if transaction else None,
                )
                if transaction is not None:
                    uow.insert_transaction(transaction)

            result.total_raw_records += batch.total_raw_records
            result.successful_imports += batch.successful_imports
            result.duplicate_count += batch.duplicate_count
            result.skipped_count += batch.skipped_count
            result.batch_ids.append(batch.id)

        return result
