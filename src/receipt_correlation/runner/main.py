"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from ..config import Config, create_default_config, load_config
from ..correlation import CorrelationLedger, CorrelationService, KeyedLockRegistry
from ..errors import CorrelationError
from ..oracle import LLMCorrelationOracle
from ..schemas import LedgerAction, Transaction
from ..state_store import StoreError, TransactionStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="receipt-correlation",
        description="Correlate and deduplicate transactions reported by several channels",
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

    subparsers.add_parser("init-config", help="Write a default config file")

    ingest_parser = subparsers.add_parser(
        "ingest", help="Correlate a transaction from a JSON file and store the result"
    )
    ingest_parser.add_argument(
        "file",
        type=Path,
        help="JSON file with one transaction (use - for stdin)",
    )

    correlate_parser = subparsers.add_parser(
        "correlate", help="Retroactively correlate a stored transaction"
    )
    correlate_parser.add_argument("transaction_id", type=str, help="Stored transaction id")

    show_parser = subparsers.add_parser("show", help="Show a stored transaction")
    show_parser.add_argument("transaction_id", type=str, help="Stored transaction id")

    ledger_parser = subparsers.add_parser("ledger", help="List an owner's correlations")
    ledger_parser.add_argument("--owner", type=str, required=True, help="Owner (user) id")
    ledger_parser.add_argument(
        "--action",
        type=str,
        choices=[action.value for action in LedgerAction],
        default=None,
        help="Only entries of this kind",
    )
    ledger_parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Max entries to list (default: 20)",
    )

    subparsers.add_parser("stats", help="Show record store statistics")

    return parser


def _open_store(config: Config) -> TransactionStore:
    return TransactionStore(
        config.store.db_path,
        timeout_seconds=config.store.busy_timeout_seconds,
    )


def _read_transaction(path: Path) -> Transaction:
    if str(path) == "-":
        data = json.load(sys.stdin)
    else:
        with open(path) as f:
            data = json.load(f)
    return Transaction.from_dict(data)


def cmd_init_config(config_path: Path) -> int:
    """Write a default configuration file."""
    if config_path.exists():
        print(f"❌ Config file already exists: {config_path}")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def cmd_ingest(config: Config, path: Path) -> int:
    """Correlate one incoming transaction and print the outcome as JSON."""
    try:
        tx = _read_transaction(path)
    except (OSError, ValueError) as e:
        print(f"❌ Could not read transaction: {e}")
        return 1

    store = _open_store(config)
    with LLMCorrelationOracle(config) as oracle:
        service = CorrelationService(
            store,
            oracle,
            config,
            locks=KeyedLockRegistry(default_timeout=config.correlation.lock_timeout_seconds),
        )
        try:
            outcome = service.process(tx)
        except (CorrelationError, StoreError) as e:
            logger.error("Correlation failed: %s", e)
            print(f"❌ Correlation failed: {e}")
            return 1

    print(json.dumps(outcome.to_dict(), indent=2))
    return 0


def cmd_correlate(config: Config, transaction_id: str) -> int:
    """Retroactively correlate a stored transaction."""
    store = _open_store(config)
    with LLMCorrelationOracle(config) as oracle:
        service = CorrelationService(store, oracle, config)
        try:
            outcome = service.correlate_existing(transaction_id)
        except (CorrelationError, StoreError) as e:
            logger.error("Correlation of %s failed: %s", transaction_id, e)
            print(f"❌ Correlation failed: {e}")
            return 1

    print(json.dumps(outcome.to_dict(), indent=2))
    return 0


def cmd_show(config: Config, transaction_id: str) -> int:
    """Print a stored transaction."""
    store = _open_store(config)
    tx = store.get(transaction_id)
    if tx is None:
        print(f"❌ Transaction not found: {transaction_id}")
        return 1
    print(json.dumps(tx.to_dict(), indent=2))
    return 0


def cmd_ledger(config: Config, owner: str, action: str | None, limit: int) -> int:
    """List an owner's ledger entries, newest first."""
    ledger = CorrelationLedger(_open_store(config))
    entries = ledger.entries_for_owner(
        owner,
        action=LedgerAction(action) if action else None,
        limit=limit,
    )

    if not entries:
        print(f"No correlations recorded for {owner}")
        return 0

    print(f"\n🔗 Correlations for {owner}")
    print("=" * 60)
    for entry in entries:
        print(
            f"  {entry.timestamp:%Y-%m-%d %H:%M}  {entry.action.value:<18} "
            f"{entry.absorbed} -> {entry.merged_into} "
            f"({entry.classification.value}, {entry.confidence}%)"
        )
    print()
    return 0


def cmd_stats(config: Config) -> int:
    """Show record store statistics."""
    stats = _open_store(config).get_stats()
    by_status = stats["transactions_by_status"]
    by_action = stats["ledger_by_action"]

    print("\n📊 Correlation Status")
    print("=" * 40)
    print(f"  Transactions total:     {stats['transactions_total']}")
    print(f"  Active:                 {by_status.get('active', 0)}")
    print(f"  Merges recorded:        {by_action.get(LedgerAction.MERGED.value, 0)}")
    print(f"  Flagged for review:     {by_action.get(LedgerAction.FLAGGED_FOR_REVIEW.value, 0)}")
    print()

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
        config.validate_or_raise()
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "ingest":
        return cmd_ingest(config, parsed.file)
    elif parsed.command == "correlate":
        return cmd_correlate(config, parsed.transaction_id)
    elif parsed.command == "show":
        return cmd_show(config, parsed.transaction_id)
    elif parsed.command == "ledger":
        return cmd_ledger(config, parsed.owner, parsed.action, parsed.limit)
    elif parsed.command == "stats":
        return cmd_stats(config)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
