"""
Aggregations over rule-filtered transactions.

All functions take an already filtered transaction list and accumulate in
ledger order ``(date, sequence_number, id)``.
"""

from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from typing import Optional

from ..schemas.ledger import MonthlyStat, Transaction

ZERO = Decimal("0")


def _ordered(transactions: Iterable[Transaction]) -> list[Transaction]:
    return sorted(transactions, key=lambda t: t.sort_key)


def monthly_statistics(transactions: Iterable[Transaction]) -> list[MonthlyStat]:
    """
    Group by (year, month) of the transaction date.

    income = sum of positive amounts, expenses = sum of |negative amounts|,
    net = income - expenses. Months without transactions are omitted.
    """
    buckets: dict[tuple[int, int], list[Decimal | int]] = {}
    for transaction in _ordered(transactions):
        key = (transaction.date.year, transaction.date.month)
        bucket = buckets.setdefault(key, [ZERO, ZERO, 0])
        if transaction.amount > 0:
            bucket[0] += transaction.amount
        elif transaction.amount < 0:
            bucket[1] += -transaction.amount
        bucket[2] += 1

    return [
        MonthlyStat(
            year=year,
            month=month,
            income=income,
            expenses=expenses,
            net=income - expenses,
            count=count,
        )
        for (year, month), (income, expenses, count) in sorted(buckets.items())
    ]


def balance_at(
    transactions: Iterable[Transaction],
    at_date: date,
    starting_balance: Decimal = ZERO,
) -> Decimal:
    """Starting balance plus the signed sum of transactions dated on or before ``at_date``."""
    balance = starting_balance
    for transaction in _ordered(transactions):
        if transaction.date > at_date:
            break
        balance += transaction.amount
    return balance


def running_balances(
    transactions: Iterable[Transaction],
    starting_balance: Decimal = ZERO,
    until: Optional[date] = None,
) -> list[tuple[Transaction, Decimal]]:
    """Each transaction paired with the balance right after it."""
    series = []
    balance = starting_balance
    for transaction in _ordered(transactions):
        if until is not None and transaction.date > until:
            break
        balance += transaction.amount
        series.append((transaction, balance))
    return series
