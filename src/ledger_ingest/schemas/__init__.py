"""
Canonical schemas.

- ledger: raw and canonical transactions, batches, account metadata, rules
- dedupe: fingerprint strategies (SSOT for duplicate detection)
"""

from .dedupe import (
    BankSpreadsheetStrategy,
    CardStatementStrategy,
    DuplicateStrategy,
    LoanRepaymentStrategy,
    ProviderIdStrategy,
    assign_fingerprints,
    compute_file_hash,
    is_duplicate,
)
from .ledger import (
    AccountMetadata,
    AccountType,
    Flow,
    ImportBatch,
    ImportResult,
    LedgerRule,
    MonthlyStat,
    RawTransaction,
    SourceType,
    Transaction,
)

__all__ = [
    "AccountMetadata",
    "AccountType",
    "BankSpreadsheetStrategy",
    "CardStatementStrategy",
    "DuplicateStrategy",
    "Flow",
    "ImportBatch",
    "ImportResult",
    "LedgerRule",
    "LoanRepaymentStrategy",
    "MonthlyStat",
    "ProviderIdStrategy",
    "RawTransaction",
    "SourceType",
    "Transaction",
    "assign_fingerprints",
    "compute_file_hash",
    "is_duplicate",
]
