"""
Canonical ledger objects (SSOT).

Every adapter maps into these types and every store/query maps out of them.
No other module may invent another transaction or batch schema.

Key invariants:
- Amounts are Decimal end to end; binary floats are rejected at the boundary.
- Dates are ``datetime.date``, serialized as ISO ``YYYY-MM-DD``.
- ``ImportBatch`` conserves counts:
  total_raw_records == successful_imports + duplicate_count + skipped_count
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_EVEN, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, Optional

# Decimal places kept when amounts are compared as integers (SQL indexes)
AMOUNT_SCALE = 4

# Namespaces for deterministic ids (never change: ids are persisted)
ACCOUNT_NAMESPACE = uuid.UUID("6f1c8e52-3d0b-4b7e-9a59-0c7d2b1e4a10")
TRANSACTION_NAMESPACE = uuid.UUID("b3a4f0d9-8e21-4c55-8f36-5d7e9c2a1b64")


class SourceType(str, Enum):
    """Source artifact formats with a registered adapter."""

    LOAN_STATEMENT_PDF = "loan_statement_pdf"
    CARD_STATEMENT_CSV = "card_statement_csv"
    BANK_SPREADSHEET = "bank_spreadsheet"
    AGGREGATOR_API = "aggregator_api"


class AccountType(str, Enum):
    """Account types with an explicit sign table."""

    CHECKING = "checking"
    CREDIT_CARD = "credit_card"
    LOAN = "loan"


class Flow(str, Enum):
    """Classification of a canonical transaction."""

    INCOME = "income"
    EXPENSE = "expense"
    NEUTRAL = "neutral"


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """Fixed-width UTC timestamp, safe for lexicographic comparison in SQL."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def to_decimal(value: Any) -> Decimal:
    """Convert a str/int/Decimal to Decimal. Floats are rejected."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"amount must be Decimal, str or int, got: {type(value).__name__}")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation as e:
            raise ValueError(f"Invalid decimal amount: {value!r}") from e
    raise TypeError(f"amount must be Decimal, str or int, got: {type(value).__name__}")


def optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_decimal(value)


def quantize_amount(amount: Decimal) -> Decimal:
    """Round amounts finer than AMOUNT_SCALE places; coarser ones keep their printed form."""
    if not amount.is_finite() or amount.as_tuple().exponent >= -AMOUNT_SCALE:
        return amount
    return amount.quantize(Decimal(1).scaleb(-AMOUNT_SCALE), rounding=ROUND_HALF_EVEN)


def to_minor_units(amount: Decimal, rounding: Optional[str] = None) -> int:
    """
    Exact integer representation used for indexed amount comparisons.

    Without ``rounding`` the amount must be representable at AMOUNT_SCALE
    places. Rule bounds pass ROUND_CEILING (lower) or ROUND_FLOOR (upper),
    which keeps the integer comparison equal to the decimal one.

    Raises:
        ValueError: The amount has more than AMOUNT_SCALE places and no rounding
    """
    scaled = amount.scaleb(AMOUNT_SCALE)
    if rounding is None:
        if scaled != scaled.to_integral_value():
            raise ValueError(f"Amount {amount} has more than {AMOUNT_SCALE} decimal places")
        return int(scaled)
    return int(scaled.to_integral_value(rounding=rounding))


def lower_bound_minor_units(amount: Decimal) -> int:
    return to_minor_units(amount, ROUND_CEILING)


def upper_bound_minor_units(amount: Decimal) -> int:
    return to_minor_units(amount, ROUND_FLOOR)


def parse_iso_date(value: Any) -> date:
    """Parse ``YYYY-MM-DD`` (or a date/datetime) into a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value.strip()[:10])
    raise TypeError(f"date must be ISO string or date, got: {type(value).__name__}")


def optional_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    return parse_iso_date(value)


def account_id_for(source_type: "SourceType | str", external_id: str) -> str:
    """Deterministic canonical account id for an external account identifier."""
    source_value = source_type.value if isinstance(source_type, SourceType) else source_type
    return str(uuid.uuid5(ACCOUNT_NAMESPACE, f"{source_value}:{external_id}"))


def transaction_id_for(account_id: str, fingerprint: str) -> str:
    """Deterministic canonical transaction id for a fingerprinted raw record."""
    return str(uuid.uuid5(TRANSACTION_NAMESPACE, f"{account_id}|{fingerprint}"))


@dataclass(frozen=True)
class RawTransaction:
    """
    Verbatim-plus-parsed record exactly as produced by one source adapter.

    ``amount`` is the signed amount as printed by the source, before the
    account sign table is applied. Records the parser could not fully
    understand keep ``skip_reason`` and are persisted unprocessed.
    """

    source_type: SourceType
    date: Optional[date]
    amount: Optional[Decimal]
    counterparty: str = ""
    sequence: int = 0
    page: Optional[int] = None
    account_identifier: str = ""
    account_id: str = ""
    import_batch_id: str = ""
    currency: Optional[str] = None
    category: Optional[str] = None
    external_id: Optional[str] = None
    kind: str = ""
    balance: Optional[Decimal] = None
    skip_reason: Optional[str] = None
    source_fields: dict[str, Any] = field(default_factory=dict, hash=False, compare=True)

    def __post_init__(self) -> None:
        if self.amount is not None and not isinstance(self.amount, Decimal):
            object.__setattr__(self, "amount", to_decimal(self.amount))
        if self.balance is not None and not isinstance(self.balance, Decimal):
            object.__setattr__(self, "balance", to_decimal(self.balance))
        if self.skip_reason is None and (self.date is None or self.amount is None):
            object.__setattr__(self, "skip_reason", "missing date or amount")

    @property
    def is_skipped(self) -> bool:
        return self.skip_reason is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_type": self.source_type.value,
            "date": self.date.isoformat() if self.date else None,
            "amount": str(self.amount) if self.amount is not None else None,
            "counterparty": self.counterparty,
            "sequence": self.sequence,
            "page": self.page,
            "account_identifier": self.account_identifier,
            "account_id": self.account_id,
            "import_batch_id": self.import_batch_id,
            "currency": self.currency,
            "category": self.category,
            "external_id": self.external_id,
            "kind": self.kind,
            "balance": str(self.balance) if self.balance is not None else None,
            "skip_reason": self.skip_reason,
            "source_fields": self.source_fields,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RawTransaction":
        return cls(
            source_type=SourceType(data["source_type"]),
            date=optional_date(data.get("date")),
            amount=optional_decimal(data.get("amount")),
            counterparty=data.get("counterparty", ""),
            sequence=data.get("sequence", 0),
            page=data.get("page"),
            account_identifier=data.get("account_identifier", ""),
            account_id=data.get("account_id", ""),
            import_batch_id=data.get("import_batch_id", ""),
            currency=data.get("currency"),
            category=data.get("category"),
            external_id=data.get("external_id"),
            kind=data.get("kind", ""),
            balance=optional_decimal(data.get("balance")),
            skip_reason=data.get("skip_reason"),
            source_fields=data.get("source_fields") or {},
        )


@dataclass
class Transaction:
    """Canonical ledger entry, uniform across all source types."""

    id: str
    account_id: str
    date: date
    amount: Decimal
    merchant: str = ""
    notes: str = ""
    balance: Optional[Decimal] = None
    sequence_number: int = 0
    flow: Flow = Flow.NEUTRAL
    category: Optional[str] = None
    currency: Optional[str] = None
    import_batch_id: Optional[str] = None
    fingerprint: Optional[str] = None

    def __post_init__(self) -> None:
        self.amount = quantize_amount(to_decimal(self.amount))
        if self.balance is not None:
            self.balance = to_decimal(self.balance)
        self.flow = Flow(self.flow)

    @property
    def sort_key(self) -> tuple[date, int, str]:
        """Ordering shared by every backend: date, then sequence, then id."""
        return (self.date, self.sequence_number, self.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "date": self.date.isoformat(),
            "amount": str(self.amount),
            "merchant": self.merchant,
            "notes": self.notes,
            "balance": str(self.balance) if self.balance is not None else None,
            "sequence_number": self.sequence_number,
            "flow": self.flow.value,
            "category": self.category,
            "currency": self.currency,
            "import_batch_id": self.import_batch_id,
            "fingerprint": self.fingerprint,
        }


@dataclass
class ImportBatch:
    """One execution of the import pipeline against one artifact for one account."""

    id: str
    account_id: str
    source_type: SourceType
    source_file_name: str
    imported_at: str
    total_raw_records: int
    successful_imports: int
    duplicate_count: int
    skipped_count: int = 0
    source_hash: Optional[str] = None

    def __post_init__(self) -> None:
        self.source_type = SourceType(self.source_type)
        if not self.conservation_holds:
            raise ValueError(
                f"Batch {self.id} does not conserve counts: total={self.total_raw_records}, "
                f"imported={self.successful_imports}, duplicates={self.duplicate_count}, "
                f"skipped={self.skipped_count}"
            )

    @property
    def conservation_holds(self) -> bool:
        return self.total_raw_records == (
            self.successful_imports + self.duplicate_count + self.skipped_count
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "source_type": self.source_type.value,
            "source_file_name": self.source_file_name,
            "imported_at": self.imported_at,
            "total_raw_records": self.total_raw_records,
            "successful_imports": self.successful_imports,
            "duplicate_count": self.duplicate_count,
            "skipped_count": self.skipped_count,
            "source_hash": self.source_hash,
        }


@dataclass
class AccountMetadata:
    """
    Structured header fields of one account as found in a source.

    Keyed by ``(source_type, external_id)``; ``account_id`` is derived from
    that key so re-imports always re-match the same canonical account.
    """

    source_type: SourceType
    external_id: str
    account_type: AccountType
    name: str = ""
    currency: Optional[str] = None
    fields: dict[str, Any] = field(default_factory=dict)
    starting_balance: Decimal = Decimal("0")
    account_id: str = ""
    first_seen: Optional[str] = None
    last_seen: Optional[str] = None

    def __post_init__(self) -> None:
        self.source_type = SourceType(self.source_type)
        self.account_type = AccountType(self.account_type)
        self.starting_balance = to_decimal(self.starting_balance)
        if not self.external_id:
            raise ValueError("external_id is required for account metadata")
        if not self.account_id:
            self.account_id = account_id_for(self.source_type, self.external_id)

    def merged_with(self, newer: "AccountMetadata") -> "AccountMetadata":
        """Update (not replace) stored metadata with a newer import's header."""
        return AccountMetadata(
            source_type=self.source_type,
            external_id=self.external_id,
            account_type=self.account_type,
            name=newer.name or self.name,
            currency=newer.currency or self.currency,
            fields={**self.fields, **newer.fields},
            starting_balance=self.starting_balance,
            account_id=self.account_id,
            first_seen=self.first_seen,
            last_seen=newer.last_seen or self.last_seen,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "source_type": self.source_type.value,
            "external_id": self.external_id,
            "account_type": self.account_type.value,
            "name": self.name,
            "currency": self.currency,
            "fields": self.fields,
            "starting_balance": str(self.starting_balance),
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
        }


def _frozen_ids(values: Optional[Iterable[str]]) -> Optional[frozenset[str]]:
    if values is None:
        return None
    if isinstance(values, str):
        return frozenset([values])
    return frozenset(values)


@dataclass(frozen=True)
class LedgerRule:
    """
    Declarative filter over the canonical ledger. Pure data, no behavior.

    ``include_accounts=None`` and ``categories=None`` mean unconstrained;
    an empty set matches nothing. Amount bounds apply to ``|amount|`` and
    are inclusive.
    """

    include_accounts: Optional[frozenset[str]] = None
    exclude_accounts: frozenset[str] = frozenset()
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    include_income: bool = True
    include_expense: bool = True
    include_neutral: bool = True
    categories: Optional[frozenset[str]] = None
    starting_balance: Decimal = Decimal("0")
    name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "include_accounts", _frozen_ids(self.include_accounts))
        object.__setattr__(self, "exclude_accounts", _frozen_ids(self.exclude_accounts) or frozenset())
        object.__setattr__(self, "categories", _frozen_ids(self.categories))
        object.__setattr__(self, "start_date", optional_date(self.start_date))
        object.__setattr__(self, "end_date", optional_date(self.end_date))
        if self.min_amount is not None:
            object.__setattr__(self, "min_amount", to_decimal(self.min_amount))
        if self.max_amount is not None:
            object.__setattr__(self, "max_amount", to_decimal(self.max_amount))
        object.__setattr__(self, "starting_balance", to_decimal(self.starting_balance))

    @property
    def allowed_flows(self) -> frozenset[Flow]:
        flows = set()
        if self.include_income:
            flows.add(Flow.INCOME)
        if self.include_expense:
            flows.add(Flow.EXPENSE)
        if self.include_neutral:
            flows.add(Flow.NEUTRAL)
        return frozenset(flows)


@dataclass(frozen=True)
class MonthlyStat:
    """Income/expense breakdown for one calendar month."""

    year: int
    month: int
    income: Decimal
    expenses: Decimal
    net: Decimal
    count: int

    @property
    def period(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass
class ImportResult:
    """
    Structured outcome of one ``import_from`` call.

    On failure the counts are zero (nothing was committed) and ``error``
    carries the typed exception.
    """

    total_raw_records: int = 0
    successful_imports: int = 0
    duplicate_count: int = 0
    skipped_count: int = 0
    batch_ids: list[str] = field(default_factory=list)
    new_account_metadata: list[AccountMetadata] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, error: Exception) -> "ImportResult":
        return cls(error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_raw_records": self.total_raw_records,
            "successful_imports": self.successful_imports,
            "duplicate_count": self.duplicate_count,
            "skipped_count": self.skipped_count,
            "batch_ids": list(self.batch_ids),
            "new_account_metadata": [m.to_dict() for m in self.new_account_metadata],
            "error": (
                {"type": type(self.error).__name__, "message": str(self.error)}
                if self.error
                else None
            ),
        }
