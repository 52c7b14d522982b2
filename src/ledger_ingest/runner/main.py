"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

from ..aggregator_client import AggregatorClient
from ..config import Config, create_default_config, load_config
from ..errors import LedgerIngestError
from ..schemas.ledger import Flow, ImportResult, LedgerRule, SourceType
from ..services import Ledger
from ..sources import Source

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from e


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"expected a decimal amount, got {value!r}") from e


def _add_source_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("file", type=Path, help="Statement file or archive")
    parser.add_argument(
        "--type",
        dest="source_type",
        required=True,
        choices=[t.value for t in SourceType if t != SourceType.AGGREGATOR_API],
        help="Source format",
    )
    parser.add_argument("--password", help="Archive or PDF password")
    parser.add_argument("--account-type", help="Account type for spreadsheet exports")
    parser.add_argument("--account-number", help="Account number if the file lacks one")
    parser.add_argument("--card-number", help="Card number if the statement lacks one")
    parser.add_argument("--currency", help="Currency code if the source lacks one")


def _add_rule_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--account",
        action="append",
        default=None,
        help="Include account (canonical id or external id); repeatable",
    )
    parser.add_argument(
        "--exclude-account",
        action="append",
        default=[],
        help="Exclude account; repeatable",
    )
    parser.add_argument("--from", dest="start_date", type=_iso_date, help="Start date (inclusive)")
    parser.add_argument("--to", dest="end_date", type=_iso_date, help="End date (inclusive)")
    parser.add_argument("--min", dest="min_amount", type=_decimal, help="Minimum |amount|")
    parser.add_argument("--max", dest="max_amount", type=_decimal, help="Maximum |amount|")
    parser.add_argument(
        "--flow",
        action="append",
        choices=[f.value for f in Flow],
        help="Only these flows; repeatable (default: all)",
    )
    parser.add_argument("--category", action="append", help="Only these categories; repeatable")
    parser.add_argument(
        "--starting-balance",
        type=_decimal,
        help="Starting balance (default: stored opening balance of --account)",
    )
    parser.add_argument("--json", action="store_true", help="Print JSON")


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-ingest",
        description="Import statements into a deduplicated ledger and query it",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    import_parser = subparsers.add_parser("import", help="Import a statement file")
    _add_source_args(import_parser)

    accounts_parser = subparsers.add_parser(
        "accounts", help="Show accounts found in a file (or stored accounts)"
    )
    accounts_parser.add_argument("file", type=Path, nargs="?", help="Statement file or archive")
    accounts_parser.add_argument(
        "--type",
        dest="source_type",
        choices=[t.value for t in SourceType if t != SourceType.AGGREGATOR_API],
        help="Source format (required with a file)",
    )
    accounts_parser.add_argument("--password", help="Archive or PDF password")
    accounts_parser.add_argument("--account-type", help="Account type for spreadsheet exports")
    accounts_parser.add_argument("--account-number", help="Account number if the file lacks one")
    accounts_parser.add_argument("--card-number", help="Card number if the statement lacks one")
    accounts_parser.add_argument("--currency", help="Currency code if the source lacks one")

    sync_parser = subparsers.add_parser("sync", help="Fetch from the aggregation API and import")
    sync_parser.add_argument("--from", dest="start_date", type=_iso_date, help="Start date")
    sync_parser.add_argument("--to", dest="end_date", type=_iso_date, help="End date")
    sync_parser.add_argument("--max-pages", type=int, help="Stop after this many pages")

    query_parser = subparsers.add_parser("query", help="List transactions matching a rule")
    _add_rule_args(query_parser)

    stats_parser = subparsers.add_parser("stats", help="Monthly income/expense statistics")
    _add_rule_args(stats_parser)

    balance_parser = subparsers.add_parser("balance", help="Balance at a date")
    _add_rule_args(balance_parser)
    balance_parser.add_argument("--at", dest="at_date", type=_iso_date, required=True)

    subparsers.add_parser("sweep", help="Apply the retention policy")
    subparsers.add_parser("status", help="Show ledger status")
    subparsers.add_parser("init-config", help="Write a default config file")

    return parser


def _source_params(parsed: argparse.Namespace) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for name in ("password", "account_type", "account_number", "card_number", "currency"):
        value = getattr(parsed, name, None)
        if value is not None:
            params[name] = value
    return params


def _resolve_accounts(ledger: Ledger, values: Optional[list[str]]) -> Optional[set[str]]:
    """Map canonical ids or external ids to canonical ids."""
    if values is None:
        return None
    known = ledger.list_accounts()
    resolved = set()
    for value in values:
        matched = [m.account_id for m in known if value in (m.account_id, m.external_id)]
        if not matched:
            logger.warning(f"No stored account matches {value!r}")
        resolved.update(matched)
    return resolved


def _build_rule(ledger: Ledger, parsed: argparse.Namespace) -> LedgerRule:
    include = _resolve_accounts(ledger, parsed.account)
    exclude = _resolve_accounts(ledger, parsed.exclude_account) or set()
    flows = set(parsed.flow) if parsed.flow else {f.value for f in Flow}

    starting_balance = parsed.starting_balance
    if starting_balance is None:
        starting_balance = ledger.opening_balance(include) if include else Decimal("0")

    return LedgerRule(
        include_accounts=include,
        exclude_accounts=exclude,
        start_date=parsed.start_date,
        end_date=parsed.end_date,
        min_amount=parsed.min_amount,
        max_amount=parsed.max_amount,
        include_income=Flow.INCOME.value in flows,
        include_expense=Flow.EXPENSE.value in flows,
        include_neutral=Flow.NEUTRAL.value in flows,
        categories=set(parsed.category) if parsed.category else None,
        starting_balance=starting_balance,
        name="cli",
    )


def _print_result(result: ImportResult) -> int:
    if not result.success:
        print(f"❌ Import failed ({type(result.error).__name__}): {result.error}")
        return 1

    print(f"  Total records:  {result.total_raw_records}")
    print(f"  Imported:       {result.successful_imports}")
    print(f"  Duplicates:     {result.duplicate_count}")
    print(f"  Skipped:        {result.skipped_count}")
    for metadata in result.new_account_metadata:
        print(f"  🆕 Account {metadata.name} ({metadata.account_type.value}) {metadata.account_id}")
    print("✅ Import complete")
    return 0


def cmd_import(config: Config, parsed: argparse.Namespace) -> int:
    """Import one statement file."""
    if not parsed.file.exists():
        print(f"❌ File not found: {parsed.file}")
        return 1

    print(f"📥 Importing {parsed.file.name} as {parsed.source_type}...")
    with Ledger.from_config(config) as ledger:
        result = ledger.import_from(
            Source.from_path(parsed.file), parsed.source_type, _source_params(parsed)
        )
    return _print_result(result)


def cmd_accounts(config: Config, parsed: argparse.Namespace) -> int:
    """Show accounts in a file, or the stored accounts when no file is given."""
    with Ledger.from_config(config) as ledger:
        if parsed.file is None:
            accounts = ledger.list_accounts()
            print(f"\n🏦 Stored accounts ({len(accounts)})")
        else:
            if not parsed.source_type:
                print("❌ --type is required with a file")
                return 1
            try:
                accounts = ledger.accounts(
                    Source.from_path(parsed.file), parsed.source_type, _source_params(parsed)
                )
            except LedgerIngestError as e:
                print(f"❌ {type(e).__name__}: {e}")
                return 1
            print(f"\n🏦 Accounts in {parsed.file.name} ({len(accounts)})")

    print("=" * 60)
    for metadata in accounts:
        print(f"  {metadata.account_id}  {metadata.account_type.value:<12} {metadata.name}")
        for key, value in sorted(metadata.fields.items()):
            print(f"      {key}: {value}")
        if metadata.starting_balance:
            print(f"      starting_balance: {metadata.starting_balance}")
    print()
    return 0


def cmd_sync(config: Config, parsed: argparse.Namespace) -> int:
    """Fetch pages from the aggregation API and import them."""
    if not config.aggregator.configured:
        print("❌ aggregator.base_url and aggregator.token must be configured")
        return 1

    client = AggregatorClient(
        base_url=config.aggregator.base_url,
        token=config.aggregator.token,
        timeout=config.aggregator.timeout_seconds,
        max_retries=config.aggregator.max_retries,
        backoff_factor=config.aggregator.backoff_factor,
        max_backoff=config.aggregator.max_backoff_seconds,
        page_size=config.aggregator.page_size,
    )

    start = parsed.start_date.isoformat() if parsed.start_date else None
    end = parsed.end_date.isoformat() if parsed.end_date else None
    print("🔄 Fetching from aggregation API...")
    try:
        source = client.fetch_source(start_date=start, end_date=end, max_pages=parsed.max_pages)
    except LedgerIngestError as e:
        print(f"❌ Fetch failed ({type(e).__name__}): {e}")
        return 1

    params = {"start_date": start, "end_date": end}
    with Ledger.from_config(config) as ledger:
        result = ledger.import_from(source, SourceType.AGGREGATOR_API, params)
    return _print_result(result)


def cmd_query(config: Config, parsed: argparse.Namespace) -> int:
    """List matching transactions with running balances."""
    with Ledger.from_config(config) as ledger:
        rule = _build_rule(ledger, parsed)
        series = ledger.running_balances(rule)

    if parsed.json:
        payload = [{**t.to_dict(), "running_balance": str(b)} for t, b in series]
        print(json.dumps(payload, indent=2))
        return 0

    print(f"\n📒 {len(series)} transaction(s)")
    print("=" * 80)
    for transaction, balance in series:
        print(
            f"  {transaction.date}  {transaction.amount:>12}  {balance:>14}  "
            f"{transaction.flow.value:<8} {transaction.merchant[:32]}"
        )
    print()
    return 0


def cmd_stats(config: Config, parsed: argparse.Namespace) -> int:
    """Show monthly statistics."""
    with Ledger.from_config(config) as ledger:
        stats = ledger.monthly_statistics(_build_rule(ledger, parsed))

    if parsed.json:
        payload = [
            {
                "period": s.period,
                "income": str(s.income),
                "expenses": str(s.expenses),
                "net": str(s.net),
                "count": s.count,
            }
            for s in stats
        ]
        print(json.dumps(payload, indent=2))
        return 0

    print("\n📊 Monthly statistics")
    print("=" * 60)
    print(f"  {'Month':<8} {'Income':>14} {'Expenses':>14} {'Net':>14} {'Count':>6}")
    for s in stats:
        print(f"  {s.period:<8} {s.income:>14} {s.expenses:>14} {s.net:>14} {s.count:>6}")
    print()
    return 0


def cmd_balance(config: Config, parsed: argparse.Namespace) -> int:
    """Show the balance at a date."""
    with Ledger.from_config(config) as ledger:
        rule = _build_rule(ledger, parsed)
        balance = ledger.balance(rule, parsed.at_date)

    if parsed.json:
        print(json.dumps({"at": parsed.at_date.isoformat(), "balance": str(balance)}))
    else:
        print(f"💰 Balance at {parsed.at_date}: {balance}")
    return 0


def cmd_sweep(config: Config) -> int:
    """Apply the retention policy."""
    with Ledger.from_config(config) as ledger:
        report = ledger.sweep_retention()

    print("🧹 Retention sweep")
    print(f"  Processed raw records deleted: {report.raw_deleted}")
    print(f"  Import batches deleted:        {report.batches_deleted}")
    return 0


def cmd_status(config: Config) -> int:
    """Show ledger status."""
    with Ledger.from_config(config) as ledger:
        stats = ledger.store.get_stats()

    print("\n📊 Ledger Status")
    print("=" * 40)
    print(f"  Database:               {config.store.db_path}")
    print(f"  Schema version:         {stats['schema_version']}")
    print(f"  Accounts:               {stats['accounts']}")
    print(f"  Transactions:           {stats['transactions']}")
    print(f"  Import batches:         {stats['import_batches']}")
    print(f"  Raw records processed:  {stats['raw_processed']}")
    print(f"  Raw records held back:  {stats['raw_unprocessed']}")
    print()

    return 0


def cmd_init_config(config_path: Path) -> int:
    """Write a default config file."""
    if config_path.exists():
        print(f"❌ Config already exists: {config_path}")
        return 1
    create_default_config(config_path)
    print(f"✅ Wrote {config_path}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    errors = config.validate()
    if errors:
        for error in errors:
            print(f"❌ Config error: {error}")
        return 1

    try:
        if parsed.command == "import":
            return cmd_import(config, parsed)
        elif parsed.command == "accounts":
            return cmd_accounts(config, parsed)
        elif parsed.command == "sync":
            return cmd_sync(config, parsed)
        elif parsed.command == "query":
            return cmd_query(config, parsed)
        elif parsed.command == "stats":
            return cmd_stats(config, parsed)
        elif parsed.command == "balance":
            return cmd_balance(config, parsed)
        elif parsed.command == "sweep":
            return cmd_sweep(config)
        elif parsed.command == "status":
            return cmd_status(config)
        else:
            parser.print_help()
            return 1
    except LedgerIngestError as e:
        print(f"❌ {type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
