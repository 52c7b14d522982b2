"""
Shared value parsing for statement formats.

Supported formats:
- Dates: Y-m-d, Y/m/d, Ymd, d.m.Y, m/d/Y, m/d/y
- Amounts: 1,234.56 (English), 1.234,56 (German), (12.00), 12.00-, 12.00 CR/DR
- Currency prefixes/suffixes: EUR, €, USD, $, GBP, £, CNY, ¥
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%Y%m%d",
    "%d.%m.%Y",
    "%m/%d/%Y",
    "%m/%d/%y",
)

CURRENCY_TOKENS = ("EUR", "USD", "GBP", "CNY", "RMB", "CHF", "€", "$", "£", "¥")

GERMAN_AMOUNT_RE = re.compile(r"^\d{1,3}(?:\.\d{3})*,\d{1,2}$|^\d+,\d{1,2}$")


def parse_german_amount(amount_str: str) -> Decimal:
    """Parse German format amount (1.234,56) to Decimal."""
    # Remove thousands separators (dots) and convert comma to dot
    cleaned = amount_str.replace(".", "").replace(",", ".")
    return Decimal(cleaned)


def parse_english_amount(amount_str: str) -> Decimal:
    """Parse English format amount (1,234.56) to Decimal."""
    # Remove thousands separators (commas)
    cleaned = amount_str.replace(",", "")
    return Decimal(cleaned)


def parse_amount(value: Any) -> Decimal:
    """
    Parse a signed amount as printed on a statement.

    Raises:
        ValueError: If the value is empty or not a number
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Unparseable amount: {value!r}")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        # Spreadsheet/JSON numbers: shortest repr is what the source displayed
        return Decimal(repr(value))
    if value is None:
        raise ValueError("Empty amount")

    text = str(value).strip().replace("\u00a0", " ").replace("\u2212", "-")
    if not text:
        raise ValueError("Empty amount")

    negative = False
    upper = text.upper()
    if upper.endswith("CR"):
        text = text[:-2].strip()
    elif upper.endswith("DR"):
        text = text[:-2].strip()
        negative = True

    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1].strip()
    if text.endswith("-"):
        negative = True
        text = text[:-1].strip()
    if text.startswith("-"):
        negative = not negative
        text = text[1:].strip()
    elif text.startswith("+"):
        text = text[1:].strip()

    for token in CURRENCY_TOKENS:
        if text.upper().startswith(token):
            text = text[len(token):].strip()
        if text.upper().endswith(token):
            text = text[: -len(token)].strip()
    # Sign may follow the currency symbol: "$-12.00"
    if text.startswith("-"):
        negative = not negative
        text = text[1:].strip()

    text = text.replace(" ", "")
    try:
        if GERMAN_AMOUNT_RE.match(text):
            amount = parse_german_amount(text)
        else:
            amount = parse_english_amount(text)
    except InvalidOperation as e:
        raise ValueError(f"Unparseable amount: {value!r}") from e

    if not amount.is_finite():
        raise ValueError(f"Unparseable amount: {value!r}")
    return -amount if negative else amount


def parse_optional_amount(value: Any) -> Optional[Decimal]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return parse_amount(value)


def parse_date(value: Any) -> date:
    """
    Parse a statement date.

    Raises:
        ValueError: If no known format matches
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if value is None:
        raise ValueError("Empty date")

    text = str(value).strip()
    # Drop a time component: "2024-01-15 00:00:00" / "2024-01-15T08:00:00Z"
    text = re.split(r"[T ]", text, maxsplit=1)[0]
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unparseable date: {value!r}")


def clean_text(value: Any) -> str:
    """Collapse internal whitespace/newlines and strip."""
    if value is None:
        return ""
    return re.sub(r"\s+", " ", str(value)).strip()


def contains_word(text: str, words: tuple[str, ...]) -> bool:
    """Case-insensitive whole-word match, so "coffee" never counts as "fee"."""
    return any(re.search(rf"\b{re.escape(word)}\b", text, re.IGNORECASE) for word in words)


def decode_text(data: bytes) -> str:
    """Decode exported text files (UTF-8 with BOM, then GB18030, then Latin-1)."""
    for encoding in ("utf-8-sig", "gb18030"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode("latin-1")
