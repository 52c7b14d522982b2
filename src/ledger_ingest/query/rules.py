"""
Ledger rule evaluation.

A LedgerRule is pure data. Two evaluators turn it into results:
- InMemoryEvaluator: linear scan over Transaction objects
- SqlEvaluator: parameterized WHERE clause against the transactions table

Both must return the same transactions in the same order for any rule:
``(date, sequence_number, id)`` ascending.
"""

import logging
from collections.abc import Iterable
from typing import Any, Protocol

from ..schemas.ledger import (
    LedgerRule,
    Transaction,
    lower_bound_minor_units,
    upper_bound_minor_units,
)
from ..state_store.sqlite_store import LedgerStore

logger = logging.getLogger(__name__)


def matches(rule: LedgerRule, transaction: Transaction) -> bool:
    """Declarative match semantics of a ledger rule."""
    if rule.include_accounts is not None and transaction.account_id not in rule.include_accounts:
        return False
    if transaction.account_id in rule.exclude_accounts:
        return False
    if rule.start_date is not None and transaction.date < rule.start_date:
        return False
    if rule.end_date is not None and transaction.date > rule.end_date:
        return False

    magnitude = abs(transaction.amount)
    if rule.min_amount is not None and magnitude < rule.min_amount:
        return False
    if rule.max_amount is not None and magnitude > rule.max_amount:
        return False

    if transaction.flow not in rule.allowed_flows:
        return False
    if rule.categories is not None and transaction.category not in rule.categories:
        return False
    return True


class RuleEvaluator(Protocol):
    """Anything that answers a ledger rule with ordered transactions."""

    def evaluate(self, rule: LedgerRule) -> list[Transaction]: ...


class InMemoryEvaluator:
    """Linear scan over an in-memory transaction set."""

    def __init__(self, transactions: Iterable[Transaction]):
        self.transactions = list(transactions)

    def evaluate(self, rule: LedgerRule) -> list[Transaction]:
        selected = [t for t in self.transactions if matches(rule, t)]
        selected.sort(key=lambda t: t.sort_key)
        return selected


def _in_clause(column: str, values: Iterable[Any], negate: bool = False) -> tuple[str, list[Any]]:
    values = sorted(values)
    placeholders = ", ".join("?" for _ in values)
    operator = "NOT IN" if negate else "IN"
    return f"{column} {operator} ({placeholders})", values


def compile_rule(rule: LedgerRule) -> tuple[str, list[Any]]:
    """
    Compile a rule into a WHERE clause and its parameters.

    Amount bounds compare integer minor units so the comparison stays exact
    and can use an index. Empty include sets compile to a false predicate.
    """
    clauses: list[str] = []
    params: list[Any] = []

    if rule.include_accounts is not None:
        if not rule.include_accounts:
            return "0", []
        clause, values = _in_clause("account_id", rule.include_accounts)
        clauses.append(clause)
        params.extend(values)

    if rule.exclude_accounts:
        clause, values = _in_clause("account_id", rule.exclude_accounts, negate=True)
        clauses.append(clause)
        params.extend(values)

    if rule.start_date is not None:
        clauses.append("date >= ?")
        params.append(rule.start_date.isoformat())
    if rule.end_date is not None:
        clauses.append("date <= ?")
        params.append(rule.end_date.isoformat())

    if rule.min_amount is not None:
        clauses.append("ABS(amount_minor) >= ?")
        params.append(lower_bound_minor_units(rule.min_amount))
    if rule.max_amount is not None:
        clauses.append("ABS(amount_minor) <= ?")
        params.append(upper_bound_minor_units(rule.max_amount))

    flows = rule.allowed_flows
    if not flows:
        return "0", []
    if len(flows) < 3:
        clause, values = _in_clause("flow", (flow.value for flow in flows))
        clauses.append(clause)
        params.extend(values)

    if rule.categories is not None:
        if not rule.categories:
            return "0", []
        clause, values = _in_clause("category", rule.categories)
        clauses.append(clause)
        params.extend(values)

    if not clauses:
        return "1", []
    return " AND ".join(clauses), params


class SqlEvaluator:
    """Indexed evaluation against the SQLite transactions table."""

    def __init__(self, store: LedgerStore):
        self.store = store

    def evaluate(self, rule: LedgerRule) -> list[Transaction]:
        where, params = compile_rule(rule)
        logger.debug(f"Rule {rule.name or '<unnamed>'} compiled to: {where} {params}")
        return self.store.query_transactions(where, params)
