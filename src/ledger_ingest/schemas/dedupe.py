"""
Fingerprint generation (CRITICAL).

This module defines THE deterministic fingerprint functions used to detect
re-imports of the same underlying record. This is the ONLY way to generate
fingerprints in the system.

Fingerprint format: SHA256(source_type|field|field|...) as 64 hex chars,
optionally suffixed with ``#n`` for the n-th repeat of the same key inside
one document.

A fingerprint must be:
- Stable: same raw record always produces the same output, across restarts
- Exact: amounts are hashed from their decimal text, never from floats
- Source-owned: each source type defines which fields identify a record
"""

import hashlib
import unicodedata
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import date
from decimal import Decimal
from typing import Optional

from .ledger import AMOUNT_SCALE, RawTransaction, SourceType, to_decimal

# ============================================================================
# SSOT Constants for Fingerprint Generation
# ============================================================================

# Separator between hashed components
FINGERPRINT_SEPARATOR = "|"

# Marker between a fingerprint and its in-document occurrence ordinal
OCCURRENCE_MARKER = "#"


def normalize_amount(amount: Decimal | str | int) -> str:
    """
    Normalize an amount to a fixed-scale decimal string for hashing.

    Args:
        amount: Amount as Decimal, int, or string (comma decimal allowed)

    Returns:
        Absolute amount with AMOUNT_SCALE decimal places

    Raises:
        TypeError: If a float is passed
    """
    if isinstance(amount, str) and "," in amount and "." not in amount:
        # European format without thousands separator
        amount = amount.replace(",", ".")
    value = to_decimal(amount)
    return f"{abs(value):.{AMOUNT_SCALE}f}"


def normalize_text(value: str | None) -> str:
    """Normalize free text for hashing (NFKC, collapse whitespace, lowercase)."""
    if not value:
        return ""
    value = unicodedata.normalize("NFKC", value)
    return " ".join(value.split()).lower()


def normalize_date(value: date | None) -> str:
    return value.isoformat() if value else ""


def hash_components(source_type: SourceType, components: Sequence[str]) -> str:
    """SHA256 over the source type and its ordered components."""
    canonical = FINGERPRINT_SEPARATOR.join((source_type.value, *components))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def compute_file_hash(file_bytes: bytes) -> str:
    """
    Compute SHA256 hash of source bytes.

    Args:
        file_bytes: Raw artifact content

    Returns:
        64-character lowercase hex string
    """
    return hashlib.sha256(file_bytes).hexdigest()


class DuplicateStrategy(ABC):
    """
    Fingerprint definition for one source type.

    Subclasses choose the identifying field subset; hashing, normalization
    and occurrence handling are shared.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Strategy name for logging."""
        pass

    @abstractmethod
    def fields(self, raw: RawTransaction) -> tuple[str, ...]:
        """Ordered, normalized components identifying ``raw``."""
        pass

    def fingerprint(self, raw: RawTransaction) -> str:
        """Pure, deterministic fingerprint of a raw record."""
        if raw.is_skipped:
            raise ValueError(f"Cannot fingerprint a skipped record: {raw.skip_reason}")
        return hash_components(raw.source_type, self.fields(raw))


class LoanRepaymentStrategy(DuplicateStrategy):
    """Account + date + |principal| + repayment period."""

    @property
    def name(self) -> str:
        return "loan_repayment"

    def fields(self, raw: RawTransaction) -> tuple[str, ...]:
        return (
            raw.account_id,
            normalize_date(raw.date),
            normalize_amount(raw.amount),
            str(raw.source_fields.get("period", "")),
        )


class CardStatementStrategy(DuplicateStrategy):
    """Account + date + |amount| + currency + merchant."""

    @property
    def name(self) -> str:
        return "card_statement"

    def fields(self, raw: RawTransaction) -> tuple[str, ...]:
        return (
            raw.account_id,
            normalize_date(raw.date),
            normalize_amount(raw.amount),
            normalize_text(raw.currency),
            normalize_text(raw.counterparty),
        )


class BankSpreadsheetStrategy(DuplicateStrategy):
    """Account + date + |amount| + counterparty."""

    @property
    def name(self) -> str:
        return "bank_spreadsheet"

    def fields(self, raw: RawTransaction) -> tuple[str, ...]:
        return (
            raw.account_id,
            normalize_date(raw.date),
            normalize_amount(raw.amount),
            normalize_text(raw.counterparty),
        )


class ProviderIdStrategy(DuplicateStrategy):
    """Account + provider transaction id; falls back to date + |amount| + merchant."""

    @property
    def name(self) -> str:
        return "provider_id"

    def fields(self, raw: RawTransaction) -> tuple[str, ...]:
        if raw.external_id:
            return (raw.account_id, "id", raw.external_id)
        return (
            raw.account_id,
            normalize_date(raw.date),
            normalize_amount(raw.amount),
            normalize_text(raw.counterparty),
        )


def assign_fingerprints(
    raws: Iterable[RawTransaction], strategy: DuplicateStrategy
) -> list[Optional[str]]:
    """
    Fingerprint every record of one document, in document order.

    Repeats of the same key inside the document get an occurrence ordinal
    (``key#2``, ``key#3``, ...) so legitimate same-day same-amount rows stay
    distinct while a re-import of the same content reproduces the same keys.
    Skipped records get ``None``.
    """
    seen: Counter[str] = Counter()
    fingerprints: list[Optional[str]] = []

    for raw in raws:
        if raw.is_skipped:
            fingerprints.append(None)
            continue

        base = strategy.fingerprint(raw)
        seen[base] += 1
        occurrence = seen[base]
        fingerprints.append(base if occurrence == 1 else f"{base}{OCCURRENCE_MARKER}{occurrence}")

    return fingerprints


def is_duplicate(fingerprint: str, existing_fingerprints: set[str] | frozenset[str]) -> bool:
    """Pure set-membership test against previously imported fingerprints."""
    return fingerprint in existing_fingerprints
