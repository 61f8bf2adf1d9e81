"""
wagob CLI - operate the marketplace ledger indexer.

Usage:
    wagob run
    wagob cycle [--address ADDR] [--json]
    wagob status [--json]
    wagob dead-letters [--limit N]
    wagob requeue HASH
    wagob alerts [--all] [--limit N] [--json]
    wagob resolve-alert ID
    wagob rewind ADDRESS SEQUENCE
    wagob job ID [--json]
    wagob jobs [--status S] [--category C] [--cursor ID] [--limit N] [--json]
    wagob reputation ACCOUNT [--json]
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from typing import Optional

from wagob.cache import TTLCache
from wagob.config import ContractRegistry, Settings, build_contract_registry, get_settings
from wagob.engine import ReconciliationEngine
from wagob.ledger import HttpLedgerClient
from wagob.logging_config import setup_wagob_logging
from wagob.monitoring import ContractMonitor
from wagob.notify import NotificationBus
from wagob.queries import QueryService
from wagob.scheduler import PollScheduler
from wagob.storage.sqlite import SQLiteStateStore
from wagob.types import JobCategory, JobStatus, PollCursor, utc_now

logger = logging.getLogger(__name__)


@dataclass
class App:
    """Everything a command needs, wired from settings."""

    settings: Settings
    store: SQLiteStateStore
    cache: TTLCache
    registry: ContractRegistry
    engine: ReconciliationEngine
    queries: QueryService
    monitor: ContractMonitor
    scheduler: PollScheduler


def build_app(settings: Settings) -> App:
    store = SQLiteStateStore(settings.db_path, timeout=settings.store_timeout_seconds)
    cache = TTLCache(ttl_seconds=settings.cache_ttl_job)
    registry = build_contract_registry(settings)
    engine = ReconciliationEngine(
        store,
        cache=cache,
        notifier=NotificationBus(),
        max_retry_cycles=settings.max_retry_cycles,
    )
    ledger = HttpLedgerClient(
        settings.ledger_api_url,
        registry,
        api_key=settings.ledger_api_key,
        timeout=settings.fetch_timeout_seconds,
    )
    monitor = ContractMonitor.from_settings(settings, store)
    return App(
        settings=settings,
        store=store,
        cache=cache,
        registry=registry,
        engine=engine,
        queries=QueryService(
            store,
            cache,
            job_list_ttl=settings.cache_ttl_job_list,
            job_ttl=settings.cache_ttl_job,
            reputation_ttl=settings.cache_ttl_reputation,
        ),
        monitor=monitor,
        scheduler=PollScheduler.from_settings(
            settings, ledger, engine, store, registry, monitor=monitor
        ),
    )


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _run_forever(scheduler: PollScheduler) -> None:
    await scheduler.start()
    try:
        await scheduler.wait()
    finally:
        await scheduler.stop()


def cmd_run(args, app: App):
    """Poll every configured contract until interrupted."""
    if not len(app.registry):
        print("No contract addresses configured (set WAGOB_CONTRACT_* variables)")
        sys.exit(1)
    print(f"Indexing {len(app.registry)} contracts on {app.settings.network}")
    for contract in app.registry:
        print(f"  {contract.kind.value:<13} {contract.address}")
    try:
        asyncio.run(_run_forever(app.scheduler))
    except KeyboardInterrupt:
        print("Stopped")


def cmd_cycle(args, app: App):
    """Run a single poll cycle."""
    reports = asyncio.run(app.scheduler.run_cycle(args.address))
    if args.json:
        _print_json([r.to_dict() for r in reports])
        return
    for r in reports:
        if r.skipped:
            print(f"- {r.address}: skipped ({r.skipped})")
            continue
        mark = "✓" if r.success else "✗"
        print(
            f"{mark} {r.address}: fetched {r.fetched}, applied {r.applied}, "
            f"deferred {r.deferred}, rejected {r.rejected}, refunds {r.refunds}, "
            f"cursor {r.cursor}"
        )
        if r.error:
            print(f"  error: {r.error}")


def cmd_status(args, app: App):
    """Show indexer status."""
    stats = app.store.get_stats()
    cursors = app.store.list_cursors()
    health = app.monitor.get_health_status(app.registry)
    if args.json:
        stats["health"] = health
        stats["cursors"] = [
            {
                "address": c.address,
                "last_sequence": c.last_sequence,
                "last_transaction_hash": c.last_transaction_hash,
                "updated_at": c.updated_at,
            }
            for c in cursors
        ]
        _print_json(stats)
        return

    counts = stats["counts"]
    print(f"Indexer Status ({app.settings.network})")
    print("=" * 40)
    print(f"Jobs:         {counts['jobs']}")
    for status, count in sorted(stats["jobs_by_status"].items()):
        print(f"  {status:<11} {count}")
    print(f"Escrows:      {counts['escrows']}")
    for status, count in sorted(stats["escrows_by_status"].items()):
        print(f"  {status:<11} {count}")
    print(f"Ratings:      {counts['ratings']}")
    print(f"Processed:    {counts['processed_transactions']}")
    print(f"Deferred:     {counts['deferred_events']}")
    print(f"Dead letters: {counts['dead_letters']}")
    print(f"Undelivered:  {counts['pending_notifications']}")
    print(f"Alerts:       {stats['active_alerts']} active")
    if cursors:
        print()
        print("Cursors:")
        for c in cursors:
            print(f"  {c.address}  seq={c.last_sequence}")
    if health["contracts"]:
        print()
        print(f"Health: {health['status']}")
        for c in health["contracts"]:
            line = f"  {c['address']}  {c['status']}"
            if c["consecutive_failures"]:
                line += f"  failures={c['consecutive_failures']}"
            if c["stale"]:
                line += "  stale"
            print(line)


def cmd_dead_letters(args, app: App):
    """List escalated transactions."""
    letters = app.store.list_dead_letters(limit=args.limit)
    if not letters:
        print("No dead letters.")
        return
    for letter in letters:
        print(
            f"{letter.transaction_hash}  {letter.event_kind}  "
            f"entity={letter.entity_id}  attempts={letter.attempts}"
        )
        print(f"  {letter.error}")


def cmd_requeue(args, app: App):
    """Forget a dead-lettered transaction so it is retried when next fetched."""
    if app.store.requeue_dead_letter(args.hash):
        print(f"✓ Requeued {args.hash}")
        print("  Use `wagob rewind ADDRESS SEQUENCE` if the cursor has already passed it")
    else:
        print(f"No dead letter for {args.hash}")
        sys.exit(1)


def cmd_alerts(args, app: App):
    """List monitoring alerts, newest first."""
    alerts = app.monitor.list_alerts(include_resolved=args.all, limit=args.limit)
    if args.json:
        _print_json([a.to_dict() for a in alerts])
        return
    if not alerts:
        print("No active alerts." if not args.all else "No alerts.")
        return
    for alert in alerts:
        print(
            f"#{alert.id}  [{alert.severity.value}] {alert.alert_type}  "
            f"{alert.status.value}  {alert.created_at.isoformat() if alert.created_at else '-'}"
        )
        print(f"  {alert.message}")


def cmd_resolve_alert(args, app: App):
    """Mark an alert resolved."""
    if app.monitor.resolve_alert(args.alert_id):
        print(f"✓ Resolved alert {args.alert_id}")
    else:
        print(f"No active alert {args.alert_id}")
        sys.exit(1)


def cmd_rewind(args, app: App):
    """Move an address cursor back so earlier transactions are fetched again."""
    app.registry.require(args.address)
    if args.sequence < 0:
        raise ValueError("Sequence must be >= 0")
    current = app.store.get_cursor(args.address)
    if args.sequence > current.last_sequence:
        raise ValueError(
            f"Cursor for {args.address} is at {current.last_sequence}; rewind only moves it back"
        )
    app.store.save_cursor(
        PollCursor(address=args.address, last_sequence=args.sequence, updated_at=utc_now())
    )
    print(f"✓ {args.address} cursor {current.last_sequence} -> {args.sequence}")


def cmd_job(args, app: App):
    """Show one job and its escrow."""
    job = app.queries.get_job(args.job_id)
    if job is None:
        print(f"Job {args.job_id} not found")
        sys.exit(1)
    escrow = app.queries.get_escrow_by_job(job.job_id)
    if args.json:
        _print_json({"job": job.to_dict(), "escrow": escrow.to_dict() if escrow else None})
        return
    print(f"Job {job.job_id} [{job.status.value}] {job.category.value}")
    print(f"  employer: {job.employer_account}")
    print(f"  worker:   {job.worker_account or '-'}")
    print(f"  wages:    {job.wages_amount}  ({job.duration_hours}h)")
    if job.cancellation_reason:
        print(f"  cancelled: {job.cancellation_reason}")
    if escrow:
        print(
            f"  escrow {escrow.escrow_id} [{escrow.status.value}] "
            f"funded {escrow.funded_amount}/{escrow.amount}, deadline {escrow.deadline.isoformat()}"
        )


def cmd_jobs(args, app: App):
    """List jobs newest first."""
    page = app.queries.list_jobs(
        status=args.status, category=args.category, cursor=args.cursor, limit=args.limit
    )
    if args.json:
        _print_json(page.to_dict())
        return
    if not page.items:
        print("No jobs found.")
        return
    for job in page.items:
        print(
            f"{job.job_id:>8}  {job.status.value:<10} {job.category.value:<14} "
            f"wages={job.wages_amount}"
        )
    if page.next_cursor is not None:
        print(f"\nMore: --cursor {page.next_cursor}")


def cmd_reputation(args, app: App):
    """Show reputation for an account or account hash."""
    if args.account.isdigit():
        account = app.queries.get_reputation(int(args.account))
    else:
        account = app.queries.get_reputation_for_account(args.account)
    if account is None:
        print(f"No ratings for {args.account}")
        return
    if args.json:
        _print_json(account.to_dict())
        return
    print(f"Score: {account.score:.2f} ({account.rating_count} ratings)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wagob",
        description="Ledger indexer for the wagob security-jobs marketplace",
    )
    parser.add_argument("--db", help="SQLite database path (overrides WAGOB_DB_PATH)")
    parser.add_argument("--log-level", help="Log level (overrides WAGOB_LOG_LEVEL)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Poll contracts until interrupted")

    p_cycle = subparsers.add_parser("cycle", help="Run one poll cycle")
    p_cycle.add_argument("--address", help="Only this contract address")
    p_cycle.add_argument("--json", action="store_true", help="Output as JSON")

    p_status = subparsers.add_parser("status", help="Show indexer status")
    p_status.add_argument("--json", action="store_true", help="Output as JSON")

    p_dead = subparsers.add_parser("dead-letters", help="List escalated transactions")
    p_dead.add_argument("--limit", type=int, default=50)

    p_requeue = subparsers.add_parser("requeue", help="Retry a dead-lettered transaction")
    p_requeue.add_argument("hash", help="Transaction hash")

    p_alerts = subparsers.add_parser("alerts", help="List monitoring alerts")
    p_alerts.add_argument("--all", action="store_true", help="Include resolved alerts")
    p_alerts.add_argument("--limit", type=int, default=50)
    p_alerts.add_argument("--json", action="store_true", help="Output as JSON")

    p_resolve = subparsers.add_parser("resolve-alert", help="Resolve a monitoring alert")
    p_resolve.add_argument("alert_id", type=int)

    p_rewind = subparsers.add_parser("rewind", help="Move a contract cursor back")
    p_rewind.add_argument("address", help="Monitored contract address")
    p_rewind.add_argument("sequence", type=int, help="Re-fetch transactions after this sequence")

    p_job = subparsers.add_parser("job", help="Show a job")
    p_job.add_argument("job_id", type=int)
    p_job.add_argument("--json", action="store_true", help="Output as JSON")

    p_jobs = subparsers.add_parser("jobs", help="List jobs")
    p_jobs.add_argument("--status", choices=[s.value for s in JobStatus])
    p_jobs.add_argument("--category", choices=[c.value for c in JobCategory])
    p_jobs.add_argument("--cursor", type=int, help="Last job id of the previous page")
    p_jobs.add_argument("--limit", type=int, default=20)
    p_jobs.add_argument("--json", action="store_true", help="Output as JSON")

    p_rep = subparsers.add_parser("reputation", help="Show reputation")
    p_rep.add_argument("account", help="Raw account (0:abc...) or account hash")
    p_rep.add_argument("--json", action="store_true", help="Output as JSON")

    return parser


COMMANDS = {
    "run": cmd_run,
    "cycle": cmd_cycle,
    "status": cmd_status,
    "dead-letters": cmd_dead_letters,
    "requeue": cmd_requeue,
    "rewind": cmd_rewind,
    "alerts": cmd_alerts,
    "resolve-alert": cmd_resolve_alert,
    "job": cmd_job,
    "jobs": cmd_jobs,
    "reputation": cmd_reputation,
}


def main(argv: Optional[list] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = get_settings()
        overrides = {}
        if args.db:
            overrides["db_path"] = args.db
        if args.log_level:
            overrides["log_level"] = args.log_level
        if overrides:
            settings = settings.model_copy(update=overrides)
        setup_wagob_logging(settings.log_level, settings.log_dir)
        app = build_app(settings)
    except (ValueError, TypeError) as e:
        logger.error(f"Failed to initialize indexer: {e}")
        sys.exit(1)

    try:
        COMMANDS[args.command](args, app)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
