"""
Loan repayment statement adapter (PDF, optionally inside a password-protected ZIP).
"""

import logging
from functools import lru_cache
from typing import Any, Optional

from ..parsers.archive import unwrap
from ..parsers.common import parse_date
from ..parsers.pdf_statement import LoanStatement, extract_pdf_text, parse_loan_statement
from ..schemas.ledger import AccountMetadata, AccountType, RawTransaction, SourceType
from .base import DataSource, Source

logger = logging.getLogger(__name__)

# Header fields stored on the account metadata, in display order
METADATA_FIELDS = (
    "principal",
    "annual_rate",
    "term_months",
    "disbursement_date",
    "maturity_date",
    "borrower",
)


@lru_cache(maxsize=4)
def load_statement(data: bytes, file_name: str, password: Optional[str]) -> LoanStatement:
    """Unwrap, extract and parse once per artifact (accounts + transactions share it)."""
    _, pdf_bytes = unwrap(data, file_name, (".pdf",), password)
    return parse_loan_statement(extract_pdf_text(pdf_bytes, password))


class LoanStatementSource(DataSource):
    """One loan account per statement; one raw record per repayment period."""

    allowed_params = frozenset({"password"})

    @property
    def source_type(self) -> SourceType:
        return SourceType.LOAN_STATEMENT_PDF

    def _statement(self, source: Source, params: dict[str, Any]) -> LoanStatement:
        return load_statement(self.require_bytes(source), source.file_name, params.get("password"))

    def extract_accounts(
        self, source: Source, params: Optional[dict[str, Any]] = None
    ) -> list[AccountMetadata]:
        params = self.validate_params(params)
        statement = self._statement(source, params)
        header = statement.header

        fields: dict[str, Any] = {}
        for name in METADATA_FIELDS:
            if name in header:
                fields[name] = header[name]
        for name in ("disbursement_date", "maturity_date"):
            if name in fields:
                try:
                    fields[name] = parse_date(fields[name]).isoformat()
                except ValueError:
                    logger.warning(f"Unparseable {name} in loan header: {fields[name]!r}")

        principal = statement.principal
        if principal is not None:
            fields["principal"] = str(principal)

        return [
            AccountMetadata(
                source_type=self.source_type,
                external_id=statement.loan_number,
                account_type=AccountType.LOAN,
                name=f"Loan {statement.loan_number}",
                currency=header.get("currency"),
                fields=fields,
                starting_balance=-principal if principal is not None else 0,
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
        statement = self._statement(source, params)
        if account_identifier != statement.loan_number:
            raise self._unknown_account(account_identifier, [statement.loan_number])

        currency = statement.header.get("currency")
        raws = []
        for sequence, row in enumerate(statement.rows):
            raws.append(
                RawTransaction(
                    source_type=self.source_type,
                    date=row.date,
                    amount=row.principal,
                    counterparty=f"Loan {statement.loan_number} repayment",
                    sequence=sequence,
                    page=row.page,
                    account_identifier=account_identifier,
                    account_id=account_id,
                    import_batch_id=import_batch_id,
                    currency=currency,
                    kind="repayment",
                    balance=row.remaining,
                    skip_reason=row.skip_reason,
                    source_fields={
                        "period": row.period,
                        "line": row.line,
                        "payment": str(row.payment) if row.payment is not None else None,
                        "principal": str(row.principal) if row.principal is not None else None,
                        "interest": str(row.interest) if row.interest is not None else None,
                        "remaining": str(row.remaining) if row.remaining is not None else None,
                    },
                )
            )
        return raws
