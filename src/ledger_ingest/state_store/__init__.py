"""
Ledger Store (SQLite-based).

Persistent state for:
- Account metadata (idempotent re-matching by external id)
- Import batch log
- Raw records with retention
- Canonical transactions

Enforces one canonical transaction per (account, fingerprint).
"""

from .locks import AccountLocks
from .sqlite_store import LedgerStore, RawRecord, RetentionReport, UnitOfWork

__all__ = [
    "AccountLocks",
    "LedgerStore",
    "RawRecord",
    "RetentionReport",
    "UnitOfWork",
]
