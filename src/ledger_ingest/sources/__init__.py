"""
Data source adapters.

Each adapter wraps one parser behind the DataSource contract and is bound
to its fingerprint strategy in the closed registry.
"""

from .aggregator import AggregatorApiSource
from .bank_spreadsheet import BankSpreadsheetSource
from .bank_spreadsheet import load_sheet as _load_sheet
from .base import DataSource, Source
from .card_statement import CardStatementSource
from .card_statement import load_statement as _load_card_statement
from .loan_statement import LoanStatementSource
from .loan_statement import load_statement as _load_loan_statement
from .registry import SourceBinding, SourceRegistry, default_registry
from .traits import ACCOUNT_TRAITS, AccountTrait, SignRule, trait_for


def clear_parse_caches() -> None:
    """Drop parsed artifacts memoized between extract_accounts and extract_transactions."""
    _load_loan_statement.cache_clear()
    _load_card_statement.cache_clear()
    _load_sheet.cache_clear()


__all__ = [
    "ACCOUNT_TRAITS",
    "AccountTrait",
    "AggregatorApiSource",
    "BankSpreadsheetSource",
    "CardStatementSource",
    "DataSource",
    "LoanStatementSource",
    "SignRule",
    "Source",
    "SourceBinding",
    "SourceRegistry",
    "clear_parse_caches",
    "default_registry",
    "trait_for",
]
