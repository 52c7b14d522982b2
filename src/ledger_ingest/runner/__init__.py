"""
CLI runner module.

Provides commands:
- import / accounts: Statement files
- sync: Aggregation API
- query / stats / balance: Rule queries over the ledger
- sweep / status / init-config: Maintenance
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
