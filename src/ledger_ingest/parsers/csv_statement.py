"""
Credit card statement CSV parser.

Card exports carry a free-form preamble (card number, statement period,
credit limit) followed by a delimited table. The table header is located by
matching column aliases; the delimiter is detected per candidate line.
"""

import csv
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

from ..errors import ParseError
from .common import clean_text, contains_word, decode_text, parse_amount, parse_date

logger = logging.getLogger(__name__)

SOURCE_LABEL = "card_statement_csv"

DELIMITERS = (",", ";", "\t", "|")

COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "date": ("transaction date", "trans date", "trans. date", "date"),
    "posted": ("posting date", "post date", "posted date"),
    "description": ("description", "merchant", "details", "payee"),
    "amount": ("amount", "transaction amount", "billing amount"),
    "currency": ("currency", "ccy"),
    "card": ("card number", "card no", "card", "card last4"),
    "category": ("category",),
    "type": ("type", "transaction type"),
    "reference": ("reference", "reference number", "ref"),
}

REQUIRED_COLUMNS = ("date", "description", "amount")

PREAMBLE_PATTERNS = {
    "card_last4": r"Card\s*(?:Number|No\.?)\s*[:：]?\s*[*Xx\d\s-]*?(\d{4})\s*$",
    "statement_period": r"Statement\s+Period\s*[:：]\s*(.+)$",
    "credit_limit": r"Credit\s+Limit\s*[:：]\s*([\d,]+(?:\.\d+)?)",
    "currency": r"Currency\s*[:：]\s*([A-Z]{3})",
}

PAYMENT_WORDS = ("payment", "autopay", "thank you")
REFUND_WORDS = ("refund", "return", "credit", "reversal")
FEE_WORDS = ("fee", "fees", "interest charge", "finance charge")


@dataclass
class CardRow:
    """One statement line as printed."""

    line_number: int
    cells: dict[str, str]
    card_last4: Optional[str] = None
    date: Optional[date] = None
    amount: Optional[Decimal] = None
    description: str = ""
    currency: Optional[str] = None
    category: Optional[str] = None
    kind: str = ""
    reference: Optional[str] = None
    skip_reason: Optional[str] = None


@dataclass
class CardStatement:
    """Parsed card statement: preamble fields plus table rows."""

    preamble: dict[str, str]
    rows: list[CardRow] = field(default_factory=list)

    @property
    def card_numbers(self) -> list[str]:
        """Distinct card identifiers in first-seen order."""
        seen: list[str] = []
        for row in self.rows:
            if row.card_last4 and row.card_last4 not in seen:
                seen.append(row.card_last4)
        return seen


def _normalize_header(cell: str) -> str:
    return clean_text(cell).lower().strip(" :*")


def map_columns(cells: list[str]) -> dict[str, int]:
    """Map canonical column names to cell indexes using the alias table."""
    mapping: dict[str, int] = {}
    normalized = [_normalize_header(c) for c in cells]
    for column, aliases in COLUMN_ALIASES.items():
        for index, cell in enumerate(normalized):
            if cell in aliases and index not in mapping.values():
                mapping[column] = index
                break
    return mapping


def find_table(lines: list[str]) -> tuple[int, str, dict[str, int]]:
    """Locate the header line; returns (line index, delimiter, column mapping)."""
    for index, line in enumerate(lines):
        if not line.strip():
            continue
        for delimiter in DELIMITERS:
            if delimiter not in line:
                continue
            cells = next(csv.reader([line], delimiter=delimiter))
            mapping = map_columns(cells)
            if all(column in mapping for column in REQUIRED_COLUMNS):
                return index, delimiter, mapping
    raise ParseError(
        "No card statement table header found",
        source_type=SOURCE_LABEL,
        detail={"required_columns": list(REQUIRED_COLUMNS)},
    )


def parse_preamble(lines: list[str]) -> dict[str, str]:
    preamble: dict[str, str] = {}
    for line in lines:
        text = clean_text(line.replace(",", " ") if line.count(",") > 2 else line)
        for name, pattern in PREAMBLE_PATTERNS.items():
            if name in preamble:
                continue
            match = re.search(pattern, text, re.IGNORECASE)
            if match:
                preamble[name] = match.group(1).strip()
    return preamble


def classify_kind(type_text: str, description: str, amount: Decimal) -> str:
    """
    Classify a card line as charge, payment, refund, or fee.

    Card exports print charges as positive and credits as negative; an
    explicit type column wins over the sign. Description wording only
    refines lines whose sign already agrees with it.
    """
    if contains_word(type_text, PAYMENT_WORDS):
        return "payment"
    if contains_word(type_text, REFUND_WORDS):
        return "refund"
    if contains_word(type_text, FEE_WORDS):
        return "fee"
    if amount < 0:
        if contains_word(description, PAYMENT_WORDS):
            return "payment"
        return "refund"
    if contains_word(description, FEE_WORDS):
        return "fee"
    return "charge"


def _last4(value: str) -> Optional[str]:
    digits = re.sub(r"\D", "", value or "")
    return digits[-4:] if len(digits) >= 4 else None


def parse_card_csv(data: bytes, default_card: Optional[str] = None) -> CardStatement:
    """
    Parse a card statement export.

    Raises:
        ParseError: No table header, or a non-empty table with zero data rows
    """
    text = decode_text(data)
    lines = text.splitlines()
    if not any(line.strip() for line in lines):
        raise ParseError("Card statement is empty", source_type=SOURCE_LABEL)

    header_index, delimiter, mapping = find_table(lines)
    statement = CardStatement(preamble=parse_preamble(lines[:header_index]))
    card_default = _last4(default_card or "") or statement.preamble.get("card_last4")
    currency_default = statement.preamble.get("currency")

    reader = csv.reader(lines[header_index + 1 :], delimiter=delimiter)
    for offset, cells in enumerate(reader, start=header_index + 2):
        if not any(cell.strip() for cell in cells):
            continue

        def cell(column: str) -> str:
            index = mapping.get(column)
            if index is None or index >= len(cells):
                return ""
            return cells[index].strip()

        row = CardRow(
            line_number=offset,
            cells={column: cell(column) for column in mapping},
            card_last4=_last4(cell("card")) or card_default,
            description=clean_text(cell("description")),
            currency=cell("currency").upper() or currency_default,
            category=cell("category") or None,
            reference=cell("reference") or None,
        )

        try:
            row.date = parse_date(cell("date") or cell("posted"))
        except ValueError as e:
            row.skip_reason = str(e)
        else:
            try:
                row.amount = parse_amount(cell("amount"))
            except ValueError as e:
                row.skip_reason = str(e)

        if row.amount is not None:
            row.kind = classify_kind(cell("type"), row.description, row.amount)
        statement.rows.append(row)

    if not statement.rows:
        raise ParseError(
            "Card statement table has no rows",
            source_type=SOURCE_LABEL,
            detail={"header_line": header_index + 1},
        )

    logger.info(
        f"Parsed card statement: {len(statement.rows)} rows, "
        f"cards={statement.card_numbers or ['?']}"
    )
    return statement
