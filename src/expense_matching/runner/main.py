"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..errors import MatchingError
from ..schemas.matching import MatchType
from ..schemas.records import Receipt, Transaction
from ..services import MatchingJobProcessor, MatchingService
from ..state_store import MatchingDatabaseService

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
        prog="expense-matching",
        description="Match card transactions to expense receipts",
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

    # init command
    subparsers.add_parser("init", help="Create default config and database")

    # import command
    import_parser = subparsers.add_parser(
        "import", help="Load transactions and receipts from a JSON file"
    )
    import_parser.add_argument("file", type=Path, help="JSON file with 'transactions' and 'receipts'")
    import_parser.add_argument(
        "--org", type=str, default=None, help="Organization for records that name none"
    )

    # auto-match command
    auto_parser = subparsers.add_parser("auto-match", help="Match unmatched items once")
    auto_parser.add_argument("--org", type=str, required=True, help="Organization id")
    auto_parser.add_argument(
        "--dry-run", action="store_true", help="Show matches without saving them"
    )

    # bulk-match command
    bulk_parser = subparsers.add_parser("bulk-match", help="Match the whole backlog in batches")
    bulk_parser.add_argument("--org", type=str, required=True, help="Organization id")
    bulk_parser.add_argument("--batch-size", type=int, default=None, help="Transactions per batch")

    # suggest command
    suggest_parser = subparsers.add_parser("suggest", help="Rank candidates for one item")
    suggest_parser.add_argument("--org", type=str, required=True, help="Organization id")
    suggest_parser.add_argument("item_id", type=str, help="Transaction or receipt id")
    suggest_parser.add_argument(
        "--type",
        dest="item_type",
        choices=["transaction", "receipt"],
        default="transaction",
        help="Kind of item (default: transaction)",
    )

    # confirm command
    confirm_parser = subparsers.add_parser("confirm", help="Confirm a transaction/receipt pair")
    confirm_parser.add_argument("--org", type=str, required=True, help="Organization id")
    confirm_parser.add_argument("transaction_id", type=str)
    confirm_parser.add_argument("receipt_id", type=str)
    confirm_parser.add_argument("--user", type=str, default=None, help="Reviewer id")
    confirm_parser.add_argument("--notes", type=str, default=None)

    # reject command
    reject_parser = subparsers.add_parser("reject", help="Reject a transaction/receipt pair")
    reject_parser.add_argument("--org", type=str, required=True, help="Organization id")
    reject_parser.add_argument("transaction_id", type=str)
    reject_parser.add_argument("receipt_id", type=str)
    reject_parser.add_argument("--user", type=str, default=None, help="Reviewer id")
    reject_parser.add_argument("--reason", type=str, default=None)
    reject_parser.add_argument(
        "--correct-receipt", type=str, default=None, help="Receipt that actually belongs"
    )
    reject_parser.add_argument(
        "--correct-transaction", type=str, default=None, help="Transaction that actually belongs"
    )

    # metrics command
    metrics_parser = subparsers.add_parser("metrics", help="Show matching metrics")
    metrics_parser.add_argument("--org", type=str, required=True, help="Organization id")
    metrics_parser.add_argument("--days", type=int, default=30, help="Period in days (default: 30)")

    # update-config command
    update_parser = subparsers.add_parser(
        "update-config", help="Show or adopt learned configuration changes"
    )
    update_parser.add_argument("--org", type=str, required=True, help="Organization id")
    update_parser.add_argument(
        "--apply", action="store_true", help="Adopt the suggestion (default: preview only)"
    )

    # status command
    subparsers.add_parser("status", help="Show database statistics")

    # worker command
    worker_parser = subparsers.add_parser("worker", help="Run the background job processor")
    worker_parser.add_argument(
        "--org", type=str, action="append", default=[], help="Queue a bulk job for this organization"
    )
    worker_parser.add_argument(
        "--once", action="store_true", help="Run queued jobs, then exit"
    )

    return parser


def _open(config: Config) -> MatchingService:
    store = MatchingDatabaseService(
        config.state_db_path, claim_ttl_seconds=config.claim_ttl_seconds
    )
    return MatchingService(store, config)


def cmd_init(config: Config, config_path: Path) -> int:
    """Create config file and database."""
    if config_path.exists():
        print(f"⚠️  Config already exists: {config_path}")
    else:
        create_default_config(config_path)
        print(f"✓ Created config: {config_path}")

    MatchingDatabaseService(config.state_db_path)
    print(f"✓ Database ready: {config.state_db_path}")
    return 0


def cmd_import(config: Config, file: Path, organization_id: str | None) -> int:
    """Import transactions and receipts from JSON."""
    try:
        data = json.loads(file.read_text())
    except (OSError, json.JSONDecodeError) as e:
        print(f"❌ Cannot read {file}: {e}")
        return 1

    service = _open(config)
    imported = {"transactions": 0, "receipts": 0}
    failed = 0

    for kind, model, save in (
        ("transactions", Transaction, service.store.upsert_transaction),
        ("receipts", Receipt, service.store.upsert_receipt),
    ):
        for item in data.get(kind, []):
            if organization_id and not item.get("organization_id"):
                item = {**item, "organization_id": organization_id}
            record = model.from_dict(item)
            try:
                record.validate()
            except MatchingError as e:
                print(f"  ❌ {e}")
                failed += 1
                continue
            save(record)
            imported[kind] += 1

    print(
        f"✓ Imported {imported['transactions']} transaction(s), "
        f"{imported['receipts']} receipt(s)"
    )
    if failed:
        print(f"⚠️  Skipped {failed} invalid record(s)")
    return 0 if not failed else 1


def cmd_auto_match(config: Config, organization_id: str, dry_run: bool) -> int:
    """Match unmatched items once."""
    service = _open(config)
    limit = config.bulk_batch_size
    transactions = service.store.get_unmatched_transactions(organization_id, limit=limit)
    receipts = service.store.get_unmatched_receipts(organization_id, limit=limit * 2)

    print(
        f"🔍 Matching {len(transactions)} transaction(s) against "
        f"{len(receipts)} receipt(s)..."
    )
    result = service.perform_auto_matching(
        organization_id, transactions, receipts, persist=not dry_run
    )

    for candidate in result.candidates:
        marker = "✓" if candidate.match_type == MatchType.AUTO else "?"
        print(
            f"  {marker} {candidate.transaction_id} -> {candidate.receipt_id} "
            f"({candidate.confidence_score:.0%}, {candidate.match_type.value})"
        )
    for error in result.errors:
        print(f"  ❌ {error}")

    stats = result.stats
    print(f"\n{'[DRY RUN] ' if dry_run else ''}✓ {stats.auto_matches} auto, {stats.suggestions} suggested")
    return 0


def cmd_bulk_match(config: Config, organization_id: str, batch_size: int | None) -> int:
    """Match the backlog of an organization."""
    service = _open(config)

    def report(processed: int, batch_number: int) -> None:
        print(f"  ⏳ Batch {batch_number}: {processed} transaction(s) processed")

    result = service.perform_bulk_matching(organization_id, batch_size=batch_size, progress=report)

    print(f"\n✓ Processed {result.total_processed}, matched {result.matches_created}")
    if result.errors:
        print(f"⚠️  {len(result.errors)} error(s):")
        for error in result.errors:
            print(f"   - {error}")
    return 0 if result.success else 1


def cmd_suggest(config: Config, organization_id: str, item_id: str, item_type: str) -> int:
    """Rank candidates for one transaction or receipt."""
    service = _open(config)
    limit = config.bulk_batch_size * 2
    if item_type == "transaction":
        pool = service.store.get_unmatched_receipts(organization_id, limit=limit)
    else:
        pool = service.store.get_unmatched_transactions(organization_id, limit=limit)

    try:
        candidates = service.get_match_suggestions(organization_id, item_id, item_type, pool)
    except MatchingError as e:
        print(f"❌ {e}")
        return 1

    if not candidates:
        print("No candidates above the suggest threshold")
        return 0

    for c in candidates:
        other = c.receipt_id if item_type == "transaction" else c.transaction_id
        print(f"  [{c.confidence_score:.0%}] {other} ({c.match_type.value})")
        for line in c.reasoning:
            print(f"      - {line}")
        for warning in c.warnings:
            print(f"      ⚠️  {warning}")
    return 0


def cmd_confirm(
    config: Config,
    organization_id: str,
    transaction_id: str,
    receipt_id: str,
    user_id: str | None,
    notes: str | None,
) -> int:
    """Confirm a pair."""
    service = _open(config)
    try:
        result = service.confirm_match(
            organization_id, transaction_id, receipt_id, user_id=user_id, notes=notes
        )
    except MatchingError as e:
        print(f"❌ {e}")
        return 1

    print(f"✓ Confirmed match {result.match_id} ({result.confidence_score:.0%})")
    for match_id in result.superseded_match_ids:
        print(f"  ↳ superseded {match_id}")
    return 0


def cmd_reject(
    config: Config,
    organization_id: str,
    transaction_id: str,
    receipt_id: str,
    user_id: str | None,
    reason: str | None,
    correct_transaction_id: str | None,
    correct_receipt_id: str | None,
) -> int:
    """Reject a pair."""
    service = _open(config)
    try:
        record = service.reject_match(
            organization_id,
            transaction_id,
            receipt_id,
            user_id=user_id,
            reason=reason,
            correct_transaction_id=correct_transaction_id,
            correct_receipt_id=correct_receipt_id,
        )
    except MatchingError as e:
        print(f"❌ {e}")
        return 1

    print(f"✓ Rejected match {record.id}")
    return 0


def cmd_metrics(config: Config, organization_id: str, days: int) -> int:
    """Show matching metrics."""
    service = _open(config)
    metrics = service.get_matching_metrics(organization_id, days)
    learning = service.get_learning_stats(organization_id)

    print(f"\n📊 Matching Metrics ({organization_id}, last {days} days)")
    print("=" * 40)
    print(f"  Transactions:           {metrics.total_transactions}")
    print(f"  Receipts:               {metrics.total_receipts}")
    print(f"  Auto matched:           {metrics.auto_matched}")
    print(f"  Manually matched:       {metrics.manual_matched}")
    print(f"  Unmatched transactions: {metrics.unmatched_transactions}")
    print(f"  Unmatched receipts:     {metrics.unmatched_receipts}")
    print(f"  Average confidence:     {metrics.average_confidence:.2f}")
    print(f"  Accuracy:               {metrics.accuracy_rate:.0%}")
    print(f"  User corrections:       {metrics.user_corrections}")
    print(f"  Merchant mappings:      {learning['merchant_mappings']}")
    print()
    return 0


def cmd_update_config(config: Config, organization_id: str, apply: bool) -> int:
    """Preview or adopt learned configuration changes."""
    service = _open(config)
    suggestion = service.get_suggested_config(organization_id)
    if not suggestion:
        print("✓ No configuration changes suggested")
        return 0

    print("💡 Suggested changes:")
    print(json.dumps(suggestion, indent=2))
    if not apply:
        print("\nRun with --apply to adopt them")
        return 0

    try:
        service.update_config_with_learning(organization_id, updated_by="cli")
    except ConfigValidationError as e:
        print(f"❌ {e}")
        return 1
    print("✓ Configuration updated")
    return 0


def cmd_status(config: Config) -> int:
    """Show database status."""
    store = MatchingDatabaseService(config.state_db_path)
    stats = store.get_stats()

    print("\n📊 Matching Status")
    print("=" * 40)
    print(f"  Organizations:          {stats['organizations']}")
    print(f"  Transactions:           {stats['transactions_total']}")
    print(f"  Receipts:               {stats['receipts_total']}")
    print(f"  Active matches:         {stats['matches_active']}")
    print(f"  Pending suggestions:    {stats['suggestions_pending']}")
    print(f"  Rejected matches:       {stats['matches_rejected']}")
    print(f"  Feedback entries:       {stats['feedback_total']}")
    print(f"  Merchant mappings:      {stats['merchant_mappings']}")
    print()
    return 0


def cmd_worker(config: Config, organizations: list[str], once: bool) -> int:
    """Run the job processor."""
    service = _open(config)
    processor = MatchingJobProcessor(
        service,
        max_concurrent_jobs=config.jobs.max_concurrent_jobs,
        poll_interval=config.jobs.poll_interval_seconds,
    )
    processor.on("job_completed", lambda job: print(f"  ✓ {job.type.value} {job.id}"))
    processor.on("job_failed", lambda job: print(f"  ❌ {job.type.value} {job.id}: {job.error}"))

    for organization_id in organizations:
        processor.add_job(organization_id, "bulk_match")

    if once:
        while processor.dispatch_pending() or processor.get_stats()["running"]:
            time.sleep(0.1)
        processor.stop(wait=True)
        failed = processor.get_stats()["by_status"]["failed"]
        return 0 if not failed else 1

    processor.start()
    print("🔄 Job processor running (Ctrl+C to stop)")
    try:
        while True:
            time.sleep(1)
            processor.cleanup_old_jobs(config.jobs.job_retention_days)
    except KeyboardInterrupt:
        print("\nStopping...")
    finally:
        processor.stop(wait=True)
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "init":
        return cmd_init(config, parsed.config)
    elif parsed.command == "import":
        return cmd_import(config, parsed.file, parsed.org)
    elif parsed.command == "auto-match":
        return cmd_auto_match(config, parsed.org, parsed.dry_run)
    elif parsed.command == "bulk-match":
        return cmd_bulk_match(config, parsed.org, parsed.batch_size)
    elif parsed.command == "suggest":
        return cmd_suggest(config, parsed.org, parsed.item_id, parsed.item_type)
    elif parsed.command == "confirm":
        return cmd_confirm(
            config, parsed.org, parsed.transaction_id, parsed.receipt_id, parsed.user, parsed.notes
        )
    elif parsed.command == "reject":
        return cmd_reject(
            config,
            parsed.org,
            parsed.transaction_id,
            parsed.receipt_id,
            parsed.user,
            parsed.reason,
            parsed.correct_transaction,
            parsed.correct_receipt,
        )
    elif parsed.command == "metrics":
        return cmd_metrics(config, parsed.org, parsed.days)
    elif parsed.command == "update-config":
        return cmd_update_config(config, parsed.org, parsed.apply)
    elif parsed.command == "status":
        return cmd_status(config)
    elif parsed.command == "worker":
        return cmd_worker(config, parsed.org, parsed.once)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
