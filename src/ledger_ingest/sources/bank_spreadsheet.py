"""
Bank account spreadsheet adapter (.xlsx export, one account per workbook).
"""

import logging
from functools import lru_cache
from typing import Any, Optional

from ..errors import ParseError, SourceConfigError
from ..parsers.spreadsheet import BankSheet, parse_bank_workbook
from ..schemas.ledger import AccountMetadata, AccountType, RawTransaction, SourceType
from .base import DataSource, Source

logger = logging.getLogger(__name__)


@lru_cache(maxsize=4)
def load_sheet(data: bytes) -> BankSheet:
    return parse_bank_workbook(data)


class BankSpreadsheetSource(DataSource):
    """Spreadsheet rows become raw records of a single bank account."""

    allowed_params = frozenset({"account_type", "account_number", "currency"})

    @property
    def source_type(self) -> SourceType:
        return SourceType.BANK_SPREADSHEET

    def _check_params(self, params: dict[str, Any]) -> dict[str, Any]:
        account_type = params.get("account_type", AccountType.CHECKING)
        try:
            params["account_type"] = AccountType(account_type)
        except ValueError as e:
            valid = ", ".join(t.value for t in AccountType)
            raise SourceConfigError(
                f"Invalid account_type {account_type!r} (expected one of: {valid})"
            ) from e
        if params.get("account_number") is not None:
            params["account_number"] = str(params["account_number"]).strip()
        return params

    def _account_number(self, sheet: BankSheet, params: dict[str, Any]) -> str:
        number = params.get("account_number") or sheet.header.get("account_number")
        if not number:
            raise ParseError(
                "Spreadsheet has no account number (pass account_number)",
                source_type=self.source_type.value,
                detail={"header_fields": sorted(sheet.header)},
            )
        return number

    def extract_accounts(
        self, source: Source, params: Optional[dict[str, Any]] = None
    ) -> list[AccountMetadata]:
        params = self.validate_params(params)
        sheet = load_sheet(self.require_bytes(source))
        number = self._account_number(sheet, params)

        opening = sheet.opening_balance
        fields: dict[str, Any] = {"account_number": number}
        if opening is not None:
            fields["opening_balance"] = str(opening)

        return [
            AccountMetadata(
                source_type=self.source_type,
                external_id=number,
                account_type=params["account_type"],
                name=sheet.header.get("account_name") or f"Account {number}",
                currency=params.get("currency") or sheet.header.get("currency"),
                fields=fields,
                starting_balance=opening if opening is not None else 0,
            )
        ]

    def extract_transactions(
        self,
        account_identifier: str,
        source: Source,
        account_id: str,
        import_batch_id: str,
        params: Optional[dict[str, Any]] = None,
    ) -> list[RawTransaction]:
        params = self.validate_params(params)
        sheet = load_sheet(self.require_bytes(source))
        number = self._account_number(sheet, params)
        if account_identifier != number:
            raise self._unknown_account(account_identifier, [number])

        currency = params.get("currency") or sheet.header.get("currency")
        return [
            RawTransaction(
                source_type=self.source_type,
                date=row.date,
                amount=row.amount,
                counterparty=row.description,
                sequence=sequence,
                account_identifier=account_identifier,
                account_id=account_id,
                import_batch_id=import_batch_id,
                currency=currency,
                category=row.category,
                external_id=row.reference,
                kind=row.kind,
                balance=row.balance,
                skip_reason=row.skip_reason,
                source_fields={"row_number": row.row_number, **row.cells},
            )
            for sequence, row in enumerate(sheet.rows)
        ]
