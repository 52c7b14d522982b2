"""
Database migrations module.

Versioned, explicitly registered migrations for the SQLite ledger store.
Migrations are applied in order and tracked in a migrations table.
"""

from .runner import MIGRATION_MODULES, Migration, MigrationRunner, get_all_migrations

__all__ = ["MIGRATION_MODULES", "Migration", "MigrationRunner", "get_all_migrations"]
