"""
Versioned schema migrations for the ledger store.

Migration modules are listed in MIGRATION_MODULES, in order; nothing is
discovered from the filesystem. Each module defines ``VERSION``, ``NAME``
and ``upgrade(conn)``. An upgrade must be idempotent: the version marker is
written in the same transaction as the upgrade, and a run interrupted
before that commit simply applies the migration again on the next open.
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass

from ...schemas.ledger import utc_timestamp

logger = logging.getLogger(__name__)

MIGRATION_MODULES = (
    "001_core",
    "002_amount_minor_units",
)


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]


def get_all_migrations() -> list[Migration]:
    """
    Load the registered migrations, sorted by version.

    Raises:
        ValueError: Two modules declare the same version
    """
    migrations = []
    for module_name in MIGRATION_MODULES:
        module = importlib.import_module(f".{module_name}", __package__)
        migrations.append(Migration(module.VERSION, module.NAME, module.upgrade))

    versions = [m.version for m in migrations]
    if len(versions) != len(set(versions)):
        raise ValueError(f"Duplicate migration versions: {sorted(versions)}")
    return sorted(migrations, key=lambda m: m.version)


class MigrationRunner:
    """Applies pending migrations; the `migrations` table is the version marker."""

    def __init__(self, conn: sqlite3.Connection, migrations: list[Migration] | None = None):
        self.conn = conn
        self.migrations = migrations if migrations is not None else get_all_migrations()
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def get_current_version(self) -> int:
        """Highest applied version, 0 for a fresh database."""
        result = self.conn.execute("SELECT MAX(version) FROM migrations").fetchone()[0]
        return result if result is not None else 0

    def pending(self) -> list[Migration]:
        applied = {row[0] for row in self.conn.execute("SELECT version FROM migrations")}
        return [m for m in self.migrations if m.version not in applied]

    def _apply(self, migration: Migration) -> None:
        logger.info(f"Applying migration {migration.version}: {migration.name}")
        try:
            migration.upgrade(self.conn)
            self.conn.execute(
                "INSERT OR IGNORE INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, utc_timestamp()),
            )
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error(f"Migration {migration.version} ({migration.name}) failed: {e}")
            raise

    def run_pending(self) -> list[int]:
        """Apply every pending migration in order; returns the applied versions."""
        applied = []
        for migration in self.pending():
            self._apply(migration)
            applied.append(migration.version)

        if applied:
            logger.info(f"Schema upgraded to version {applied[-1]} (applied {applied})")
        else:
            logger.debug("Schema is up to date")
        return applied
