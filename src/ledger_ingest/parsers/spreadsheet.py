"""
Bank account spreadsheet (.xlsx) parser.

The first worksheet holds a key/value header block (account number, name,
currency) followed by a table with date, description, debit, credit and
balance columns. A single signed ``amount`` column is accepted in place of
debit/credit.
"""

import io
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from ..errors import ParseError, SourceAccessError
from .common import clean_text, parse_amount, parse_date, parse_optional_amount

logger = logging.getLogger(__name__)

SOURCE_LABEL = "bank_spreadsheet"

COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "date": ("date", "transaction date", "value date", "booking date"),
    "description": ("description", "details", "narrative", "counterparty", "payee"),
    "debit": ("debit", "withdrawal", "withdrawals", "money out", "paid out"),
    "credit": ("credit", "deposit", "deposits", "money in", "paid in"),
    "amount": ("amount", "signed amount"),
    "balance": ("balance", "running balance"),
    "category": ("category",),
    "reference": ("reference", "ref"),
}

HEADER_KEYS: dict[str, tuple[str, ...]] = {
    "account_number": ("account number", "account no", "account no.", "iban"),
    "account_name": ("account name", "account"),
    "currency": ("currency",),
}


@dataclass
class SheetRow:
    """One table row as printed."""

    row_number: int
    cells: dict[str, Any]
    date: Optional[date] = None
    amount: Optional[Decimal] = None
    description: str = ""
    balance: Optional[Decimal] = None
    category: Optional[str] = None
    reference: Optional[str] = None
    kind: str = ""
    skip_reason: Optional[str] = None


@dataclass
class BankSheet:
    """Parsed spreadsheet: header block plus table rows."""

    header: dict[str, str]
    rows: list[SheetRow] = field(default_factory=list)

    @property
    def opening_balance(self) -> Optional[Decimal]:
        """Balance before the first row, derived from the first printed balance."""
        for row in self.rows:
            if row.balance is not None and row.amount is not None:
                return row.balance - row.amount
        return None


def _label(value: Any) -> str:
    return clean_text(value).lower().strip(" :") if isinstance(value, str) else ""


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return clean_text(value)


def _map_columns(values: tuple[Any, ...]) -> dict[str, int]:
    labels = [_label(v) for v in values]
    mapping: dict[str, int] = {}
    for column, aliases in COLUMN_ALIASES.items():
        for index, label in enumerate(labels):
            if label in aliases and index not in mapping.values():
                mapping[column] = index
                break
    return mapping


def _has_table_header(mapping: dict[str, int]) -> bool:
    has_amounts = "amount" in mapping or ("debit" in mapping and "credit" in mapping)
    return "date" in mapping and "description" in mapping and has_amounts


def load_rows(data: bytes) -> list[tuple[Any, ...]]:
    """Read all rows of the first worksheet as cell values."""
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise SourceAccessError(f"Unreadable spreadsheet: {e}") from e

    try:
        sheet = workbook.worksheets[0]
        return [tuple(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def _parse_row(row_number: int, values: tuple[Any, ...], mapping: dict[str, int]) -> SheetRow:
    def value(column: str) -> Any:
        index = mapping.get(column)
        if index is None or index >= len(values):
            return None
        return values[index]

    row = SheetRow(
        row_number=row_number,
        cells={column: _cell_text(value(column)) for column in mapping},
        description=clean_text(value("description")),
        category=_cell_text(value("category")) or None,
        reference=_cell_text(value("reference")) or None,
    )

    try:
        row.date = parse_date(value("date"))
    except ValueError as e:
        row.skip_reason = str(e)
        return row

    try:
        if "amount" in mapping:
            row.amount = parse_amount(value("amount"))
        else:
            debit = parse_optional_amount(value("debit"))
            credit = parse_optional_amount(value("credit"))
            if debit is None and credit is None:
                raise ValueError("Row has neither debit nor credit")
            row.amount = (credit or Decimal("0")) - abs(debit or Decimal("0"))
        row.balance = parse_optional_amount(value("balance"))
    except ValueError as e:
        row.amount = None
        row.skip_reason = str(e)
        return row

    row.kind = "credit" if row.amount > 0 else "debit"
    return row


def parse_bank_workbook(data: bytes) -> BankSheet:
    """
    Parse a bank account spreadsheet export.

    Raises:
        SourceAccessError: Bytes are not a readable workbook
        ParseError: No table header, or a table with zero data rows
    """
    rows = load_rows(data)
    if not any(any(v is not None for v in row) for row in rows):
        raise ParseError("Spreadsheet is empty", source_type=SOURCE_LABEL)

    header: dict[str, str] = {}
    mapping: Optional[dict[str, int]] = None
    sheet: Optional[BankSheet] = None

    for row_number, values in enumerate(rows, start=1):
        if mapping is None:
            candidate = _map_columns(values)
            if _has_table_header(candidate):
                mapping = candidate
                sheet = BankSheet(header=header)
                continue
            label = _label(values[0]) if values else ""
            for key, aliases in HEADER_KEYS.items():
                if label in aliases and key not in header and len(values) > 1:
                    header[key] = _cell_text(values[1])
            continue

        if not any(v is not None and _cell_text(v) for v in values):
            continue
        sheet.rows.append(_parse_row(row_number, values, mapping))

    if sheet is None:
        raise ParseError(
            "No transaction table header found in spreadsheet",
            source_type=SOURCE_LABEL,
            detail={"header_fields": sorted(header)},
        )
    if not sheet.rows:
        raise ParseError("Spreadsheet table has no rows", source_type=SOURCE_LABEL)

    logger.info(
        f"Parsed spreadsheet for account {header.get('account_number', '?')}: "
        f"{len(sheet.rows)} rows"
    )
    return sheet
