"""
Aggregation API adapter.

Consumes a batch of API response pages (as fetched by ``AggregatorClient``)
and exposes its accounts and transactions through the adapter contract.
"""

import logging
from typing import Any, Optional

from ..errors import SourceConfigError
from ..parsers.api_json import ApiAccount, ApiBatch, ApiRecord, parse_api_pages
from ..parsers.common import contains_word
from ..schemas.ledger import (
    AccountMetadata,
    AccountType,
    RawTransaction,
    SourceType,
    optional_date,
)
from .base import DataSource, Source

logger = logging.getLogger(__name__)

# Provider account type -> canonical account type
ACCOUNT_TYPE_MAP: dict[str, AccountType] = {
    "depository": AccountType.CHECKING,
    "checking": AccountType.CHECKING,
    "savings": AccountType.CHECKING,
    "credit": AccountType.CREDIT_CARD,
    "credit_card": AccountType.CREDIT_CARD,
    "loan": AccountType.LOAN,
    "mortgage": AccountType.LOAN,
}

PAYMENT_HINTS = ("payment", "autopay")


def map_account_type(provider_type: str) -> AccountType:
    return ACCOUNT_TYPE_MAP.get(provider_type.lower(), AccountType.CHECKING)


def record_kind(account_type: AccountType, record: ApiRecord) -> str:
    """
    Record kind in terms of the account's sign table.

    API amounts are signed from the holder's perspective (negative = out).
    """
    if record.amount is None:
        return ""
    if account_type == AccountType.CREDIT_CARD:
        if record.amount < 0:
            return "charge"
        text = f"{record.merchant} {record.category or ''}"
        return "payment" if contains_word(text, PAYMENT_HINTS) else "refund"
    if account_type == AccountType.LOAN:
        return "repayment" if record.amount > 0 else "disbursement"
    return "credit" if record.amount > 0 else "debit"


class AggregatorApiSource(DataSource):
    """Accounts and transactions from concatenated API pages."""

    allowed_params = frozenset({"start_date", "end_date"})

    @property
    def source_type(self) -> SourceType:
        return SourceType.AGGREGATOR_API

    def _check_params(self, params: dict[str, Any]) -> dict[str, Any]:
        for name in ("start_date", "end_date"):
            try:
                params[name] = optional_date(params.get(name))
            except (TypeError, ValueError) as e:
                raise SourceConfigError(f"Invalid {name}: {params.get(name)!r}") from e
        start, end = params["start_date"], params["end_date"]
        if start and end and start > end:
            raise SourceConfigError(f"start_date {start} is after end_date {end}")
        return params

    def _batch(self, source: Source) -> ApiBatch:
        if source.data is not None and not source.pages:
            raise SourceConfigError("aggregator_api requires API pages, got file bytes")
        return parse_api_pages(source.pages)

    def _metadata(self, account: ApiAccount) -> AccountMetadata:
        fields: dict[str, Any] = {"provider_type": account.type}
        if account.mask:
            fields["mask"] = account.mask
        if account.balance is not None:
            fields["current_balance"] = str(account.balance)
        return AccountMetadata(
            source_type=self.source_type,
            external_id=account.id,
            account_type=map_account_type(account.type),
            name=account.name or f"Account {account.mask or account.id}",
            currency=account.currency,
            fields=fields,
            starting_balance=account.opening_balance or 0,
        )

    def extract_accounts(
        self, source: Source, params: Optional[dict[str, Any]] = None
    ) -> list[AccountMetadata]:
        self.validate_params(params)
        return [self._metadata(account) for account in self._batch(source).accounts]

    def extract_transactions(
        self,
        account_identifier: str,
        source: Source,
        account_id: str,
        import_batch_id: str,
        params: Optional[dict[str, Any]] = None,
    ) -> list[RawTransaction]:
        params = self.validate_params(params)
        batch = self._batch(source)
        accounts = {account.id: account for account in batch.accounts}
        if account_identifier not in accounts:
            raise self._unknown_account(account_identifier, sorted(accounts))

        account_type = map_account_type(accounts[account_identifier].type)
        start, end = params["start_date"], params["end_date"]

        raws = []
        for record in batch.records_for(account_identifier):
            if record.date is not None:
                if (start and record.date < start) or (end and record.date > end):
                    continue
            raws.append(
                RawTransaction(
                    source_type=self.source_type,
                    date=record.date,
                    amount=record.amount,
                    counterparty=record.merchant,
                    sequence=len(raws),
                    account_identifier=account_identifier,
                    account_id=account_id,
                    import_batch_id=import_batch_id,
                    currency=record.currency or accounts[account_identifier].currency,
                    category=record.category,
                    external_id=record.id,
                    kind=record_kind(account_type, record),
                    skip_reason=record.skip_reason,
                    source_fields={"position": record.position, **record.payload},
                )
            )
        return raws
