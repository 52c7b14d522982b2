"""
Ledger queries: rule evaluation and aggregation.
"""

from .aggregation import balance_at, monthly_statistics, running_balances
from .rules import InMemoryEvaluator, RuleEvaluator, SqlEvaluator, compile_rule, matches

__all__ = [
    "InMemoryEvaluator",
    "RuleEvaluator",
    "SqlEvaluator",
    "balance_at",
    "compile_rule",
    "matches",
    "monthly_statistics",
    "running_balances",
]
