"""
Configuration management (SSOT).

This module defines ALL configuration for ledger ingestion. All config keys
are defined here; no other module should invent config keys.

Key invariants:
- The ledger database path is the only required setting
- Aggregation API credentials are only needed by the ``sync`` command
- Environment variables override the YAML file
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class StoreConfig:
    """Ledger database settings."""

    db_path: Path = field(default_factory=lambda: Path("data/ledger.db"))


@dataclass
class RetentionConfig:
    """Retention windows for the raw store and the batch log."""

    # Processed raw records older than this are swept (unprocessed are kept)
    raw_retention_days: int = 90
    # Import batches without raw records older than this are swept
    batch_retention_days: int = 365


@dataclass
class ImportConfig:
    """Import orchestration settings."""

    # Rows between advisory progress callbacks
    progress_interval: int = 100
    # Currency for records and accounts whose source names none
    default_currency: Optional[str] = None
    # Seconds to wait for another import of the same account (None = wait)
    lock_timeout_seconds: Optional[float] = 60.0


@dataclass
class AggregatorConfig:
    """Aggregation API configuration."""

    base_url: str = ""
    token: str = ""
    timeout_seconds: int = 30
    # Retries apply to rate limiting and gateway errors only
    max_retries: int = 3
    backoff_factor: float = 0.5
    max_backoff_seconds: float = 30.0
    page_size: int = 100

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.token)


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    store: StoreConfig = field(default_factory=StoreConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    imports: ImportConfig = field(default_factory=ImportConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not str(self.store.db_path):
            errors.append("store.db_path is required")

        if self.retention.raw_retention_days < 1:
            errors.append("retention.raw_retention_days must be >= 1")
        if self.retention.batch_retention_days < self.retention.raw_retention_days:
            errors.append("retention.batch_retention_days must be >= raw_retention_days")

        if self.imports.progress_interval < 1:
            errors.append("imports.progress_interval must be >= 1")
        currency = self.imports.default_currency
        if currency is not None and (len(currency) != 3 or not currency.isalpha()):
            errors.append("imports.default_currency must be a 3-letter code")

        if self.aggregator.max_retries < 0:
            errors.append("aggregator.max_retries must be >= 0")
        if self.aggregator.base_url and not self.aggregator.base_url.startswith(
            ("http://", "https://")
        ):
            errors.append("aggregator.base_url must be an http(s) URL")
        if self.aggregator.base_url and not self.aggregator.token:
            errors.append("aggregator.token is required when aggregator.base_url is set")

        return errors


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "")
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={value!r}")
        return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - LEDGER_DB_PATH
    - LEDGER_RAW_RETENTION_DAYS
    - LEDGER_BATCH_RETENTION_DAYS
    - AGGREGATOR_URL
    - AGGREGATOR_TOKEN
    """
    if config_path.exists():
        with open(config_path) as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}
    else:
        data = {}

    store_data = data.get("store", {}) or {}
    store = StoreConfig(
        db_path=Path(os.environ.get("LEDGER_DB_PATH", store_data.get("db_path", "data/ledger.db"))),
    )

    retention_data = data.get("retention", {}) or {}
    retention = RetentionConfig(
        raw_retention_days=_env_int(
            "LEDGER_RAW_RETENTION_DAYS", retention_data.get("raw_retention_days", 90)
        ),
        batch_retention_days=_env_int(
            "LEDGER_BATCH_RETENTION_DAYS", retention_data.get("batch_retention_days", 365)
        ),
    )

    import_data = data.get("imports", {}) or {}
    imports = ImportConfig(
        progress_interval=import_data.get("progress_interval", 100),
        default_currency=import_data.get("default_currency"),
        lock_timeout_seconds=import_data.get("lock_timeout_seconds", 60.0),
    )

    aggregator_data = data.get("aggregator", {}) or {}
    aggregator = AggregatorConfig(
        base_url=os.environ.get("AGGREGATOR_URL", aggregator_data.get("base_url", "")),
        token=os.environ.get("AGGREGATOR_TOKEN", aggregator_data.get("token", "")),
        timeout_seconds=aggregator_data.get("timeout_seconds", 30),
        max_retries=aggregator_data.get("max_retries", 3),
        backoff_factor=aggregator_data.get("backoff_factor", 0.5),
        max_backoff_seconds=aggregator_data.get("max_backoff_seconds", 30.0),
        page_size=aggregator_data.get("page_size", 100),
    )

    return Config(store=store, retention=retention, imports=imports, aggregator=aggregator)


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Ledger ingestion configuration
#
# Environment overrides: LEDGER_DB_PATH, LEDGER_RAW_RETENTION_DAYS,
# LEDGER_BATCH_RETENTION_DAYS, AGGREGATOR_URL, AGGREGATOR_TOKEN

store:
  db_path: "data/ledger.db"

retention:
  raw_retention_days: 90      # Processed raw records older than this are swept
  batch_retention_days: 365   # Empty import batches older than this are swept

imports:
  progress_interval: 100      # Rows between progress reports
  default_currency: null      # e.g. "EUR" for sources that name no currency
  lock_timeout_seconds: 60    # Wait for a concurrent import of the same account

# Aggregation API (only used by the sync command)
aggregator:
  base_url: ""
  token: ""
  timeout_seconds: 30
  max_retries: 3              # Rate limiting / gateway errors only
  backoff_factor: 0.5
  max_backoff_seconds: 30
  page_size: 100
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
