"""
Credit card statement adapter (CSV, optionally inside a password-protected ZIP).

Each distinct card number (last four digits) in the statement is one account.
"""

import logging
from functools import lru_cache
from typing import Any, Optional

from ..errors import ParseError, SourceConfigError
from ..parsers.archive import unwrap
from ..parsers.csv_statement import CardStatement, parse_card_csv
from ..parsers.common import parse_optional_amount
from ..schemas.ledger import AccountMetadata, AccountType, RawTransaction, SourceType
from .base import DataSource, Source

logger = logging.getLogger(__name__)


@lru_cache(maxsize=4)
def load_statement(
    data: bytes, file_name: str, password: Optional[str], card_number: Optional[str]
) -> CardStatement:
    _, csv_bytes = unwrap(data, file_name, (".csv", ".txt"), password)
    return parse_card_csv(csv_bytes, default_card=card_number)


class CardStatementSource(DataSource):
    """Card statement rows become raw records keyed by card last4."""

    allowed_params = frozenset({"password", "card_number", "currency"})

    @property
    def source_type(self) -> SourceType:
        return SourceType.CARD_STATEMENT_CSV

    def _check_params(self, params: dict[str, Any]) -> dict[str, Any]:
        card_number = params.get("card_number")
        if card_number is not None:
            digits = "".join(ch for ch in str(card_number) if ch.isdigit())
            if len(digits) < 4:
                raise SourceConfigError(f"card_number needs at least 4 digits: {card_number!r}")
            params["card_number"] = digits
        currency = params.get("currency")
        if currency is not None:
            if not isinstance(currency, str) or len(currency) != 3:
                raise SourceConfigError(f"currency must be a 3-letter code: {currency!r}")
            params["currency"] = currency.upper()
        return params

    def _statement(self, source: Source, params: dict[str, Any]) -> CardStatement:
        statement = load_statement(
            self.require_bytes(source),
            source.file_name,
            params.get("password"),
            params.get("card_number"),
        )
        if not statement.card_numbers:
            raise ParseError(
                "Card statement does not identify the card (pass card_number)",
                source_type=self.source_type.value,
                detail={"preamble": statement.preamble},
            )
        return statement

    def extract_accounts(
        self, source: Source, params: Optional[dict[str, Any]] = None
    ) -> list[AccountMetadata]:
        params = self.validate_params(params)
        statement = self._statement(source, params)
        preamble = statement.preamble
        currency = params.get("currency") or preamble.get("currency")

        fields: dict[str, Any] = {}
        if "statement_period" in preamble:
            fields["statement_period"] = preamble["statement_period"]
        if "credit_limit" in preamble:
            limit = parse_optional_amount(preamble["credit_limit"])
            fields["credit_limit"] = str(limit) if limit is not None else None

        accounts = []
        for last4 in statement.card_numbers:
            accounts.append(
                AccountMetadata(
                    source_type=self.source_type,
                    external_id=last4,
                    account_type=AccountType.CREDIT_CARD,
                    name=f"Card ****{last4}",
                    currency=currency,
                    fields={"card_last4": last4, **fields},
                )
            )
        return accounts

    def extract_transactions(
        self,
        account_identifier: str,
        source: Source,
        account_id: str,
        import_batch_id: str,
        params: Optional[dict[str, Any]] = None,
    ) -> list[RawTransaction]:
        params = self.validate_params(params)
        statement = self._statement(source, params)
        if account_identifier not in statement.card_numbers:
            raise self._unknown_account(account_identifier, statement.card_numbers)

        default_currency = params.get("currency")
        # Rows that name no card are held back under the first card
        holder = statement.card_numbers[0]
        raws = []
        for row in statement.rows:
            skip_reason = row.skip_reason
            if row.card_last4 is None:
                if account_identifier != holder:
                    continue
                skip_reason = skip_reason or "Row does not identify the card"
            elif row.card_last4 != account_identifier:
                continue
            raws.append(
                RawTransaction(
                    source_type=self.source_type,
                    date=row.date,
                    amount=row.amount,
                    counterparty=row.description,
                    sequence=len(raws),
                    account_identifier=account_identifier,
                    account_id=account_id,
                    import_batch_id=import_batch_id,
                    currency=row.currency or default_currency,
                    category=row.category,
                    external_id=row.reference,
                    kind=row.kind,
                    skip_reason=skip_reason,
                    source_fields={"line_number": row.line_number, **row.cells},
                )
            )
        return raws
