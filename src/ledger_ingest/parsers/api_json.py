"""
Aggregation API page parser.

Each page is a JSON object:

    {
        "accounts": [{"id", "name", "type", "currency", "mask", "balance"}],
        "transactions": [{"id", "account_id", "date", "amount", "currency",
                          "merchant_name", "description", "category", "pending"}],
        "next_cursor": "..." | null
    }

Amounts are signed from the account holder's perspective (negative = money
out). Pages are concatenated in order; accounts are de-duplicated by id.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from ..errors import ParseError
from .common import clean_text, parse_amount, parse_date, parse_optional_amount

logger = logging.getLogger(__name__)

SOURCE_LABEL = "aggregator_api"

REQUIRED_PAGE_KEYS = ("transactions",)
REQUIRED_ACCOUNT_KEYS = ("id",)
REQUIRED_TRANSACTION_KEYS = ("account_id", "date", "amount")


@dataclass
class ApiAccount:
    id: str
    name: str = ""
    type: str = ""
    currency: Optional[str] = None
    mask: Optional[str] = None
    balance: Optional[Decimal] = None
    opening_balance: Optional[Decimal] = None


@dataclass
class ApiRecord:
    """One provider transaction as delivered."""

    position: int
    account_id: str
    payload: dict[str, Any]
    id: Optional[str] = None
    date: Optional[date] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    merchant: str = ""
    category: Optional[str] = None
    skip_reason: Optional[str] = None


@dataclass
class ApiBatch:
    accounts: list[ApiAccount] = field(default_factory=list)
    records: list[ApiRecord] = field(default_factory=list)

    def records_for(self, account_id: str) -> list[ApiRecord]:
        return [r for r in self.records if r.account_id == account_id]


def _json_safe(value: Any) -> Any:
    """Decimal/float values rendered as strings for verbatim storage."""
    if isinstance(value, (Decimal, float)):
        return str(value)
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_json_safe(v) for v in value]
    return value


def _require_object(data: Any, kind: str, position: int) -> None:
    if not isinstance(data, dict):
        raise ParseError(
            f"{kind} record is not a JSON object",
            source_type=SOURCE_LABEL,
            detail={"position": position, "type": type(data).__name__},
        )


def _identifier(value: Any, key: str, position: int) -> str:
    """Non-blank id text; an empty id cannot name an account."""
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ParseError(
            f"Record has an empty {key}",
            source_type=SOURCE_LABEL,
            detail={"key": key, "position": position},
        )
    return text


def _parse_account(position: int, data: dict[str, Any]) -> ApiAccount:
    _require_object(data, "Account", position)
    missing = [key for key in REQUIRED_ACCOUNT_KEYS if key not in data]
    if missing:
        raise ParseError(
            "Account record is missing required keys",
            source_type=SOURCE_LABEL,
            detail={"missing": missing},
        )
    try:
        balance = parse_optional_amount(data.get("balance"))
        opening = parse_optional_amount(data.get("opening_balance"))
    except ValueError as e:
        raise ParseError(f"Invalid account balance: {e}", source_type=SOURCE_LABEL) from e
    return ApiAccount(
        id=_identifier(data["id"], "id", position),
        name=clean_text(data.get("name")),
        type=clean_text(data.get("type")).lower(),
        currency=(data.get("currency") or None),
        mask=(str(data["mask"]) if data.get("mask") is not None else None),
        balance=balance,
        opening_balance=opening,
    )


def _parse_record(position: int, data: dict[str, Any]) -> ApiRecord:
    _require_object(data, "Transaction", position)
    missing = [key for key in REQUIRED_TRANSACTION_KEYS if key not in data]
    if missing:
        raise ParseError(
            "Transaction record is missing required keys",
            source_type=SOURCE_LABEL,
            detail={"missing": missing, "position": position},
        )

    record = ApiRecord(
        position=position,
        account_id=_identifier(data["account_id"], "account_id", position),
        payload=_json_safe(data),
        id=str(data["id"]) if data.get("id") is not None else None,
        currency=data.get("currency") or None,
        merchant=clean_text(data.get("merchant_name") or data.get("description")),
        category=data.get("category") or None,
    )

    if data.get("pending"):
        record.skip_reason = "pending"
    try:
        record.date = parse_date(data["date"])
        record.amount = parse_amount(data["amount"])
    except ValueError as e:
        record.skip_reason = str(e)
    return record


def parse_api_pages(pages: list[dict[str, Any]]) -> ApiBatch:
    """
    Concatenate API pages into one batch.

    Raises:
        ParseError: A page does not follow the expected schema
    """
    batch = ApiBatch()
    seen_accounts: set[str] = set()
    position = 0

    for page_number, page in enumerate(pages, start=1):
        if not isinstance(page, dict) or any(key not in page for key in REQUIRED_PAGE_KEYS):
            raise ParseError(
                "Unrecognized API page schema",
                source_type=SOURCE_LABEL,
                detail={
                    "page": page_number,
                    "keys": sorted(page) if isinstance(page, dict) else type(page).__name__,
                },
            )

        for index, account_data in enumerate(page.get("accounts") or []):
            account = _parse_account(index, account_data)
            if account.id not in seen_accounts:
                seen_accounts.add(account.id)
                batch.accounts.append(account)

        for record_data in page["transactions"]:
            batch.records.append(_parse_record(position, record_data))
            position += 1

    # Transactions may reference accounts the pages did not describe
    for record in batch.records:
        if record.account_id not in seen_accounts:
            seen_accounts.add(record.account_id)
            batch.accounts.append(ApiAccount(id=record.account_id))

    logger.info(
        f"Parsed {len(pages)} API page(s): {len(batch.accounts)} accounts, "
        f"{len(batch.records)} transactions"
    )
    return batch
