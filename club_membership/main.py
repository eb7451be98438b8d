"""Club Membership -- Command Line Entry Point.

Each command is one host-triggered job against the membership workbook:

    transactions           join / renew members from paid transactions
    migrations             import flagged members from the legacy roster
    generate-expirations   queue today's expiry notices
    process-queue          run one batch of the expiration queue
    possible-renewals      list member pairs that look like a missed renewal
    merge A B              fold member row B into row A as a renewal
    status                 queue depth and next scheduled run

Usage::

    # From the project root:
    python -m club_membership.main process-queue

    # With a custom config or workbook:
    python -m club_membership.main --config path/to/custom.yaml transactions
    python -m club_membership.main --workbook data/membership.xlsx status

    # Dry run (in-memory copy, side effects logged only):
    python -m club_membership.main --dry-run generate-expirations
"""

from __future__ import annotations

import argparse
import logging
import sys

from .config import MembershipConfig, get_config
from .scheduler import StateFileScheduler
from .service import MembershipService
from .storage import WorkbookStorage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _cmd_transactions(service: MembershipService, args) -> int:
    run = service.process_transactions()
    batch = run.batch
    print(f"Joined   : {len(batch.joined)}")
    print(f"Renewed  : {len(batch.renewed)}")
    print(f"Ambiguous: {len(batch.ambiguous)}")
    print(f"Errors   : {len(batch.errors)}")
    if run.has_pending_payments:
        print("Some transactions are still awaiting payment.")
    return 1 if batch.errors else 0


def _cmd_migrations(service: MembershipService, args) -> int:
    run = service.process_migrations()
    print(f"Migrated : {len(run.batch.migrated)}")
    print(f"Skipped  : {run.batch.skipped}")
    print(f"Errors   : {len(run.batch.errors)}")
    if not run.written:
        print("[LOG ONLY] Nothing was written back.")
    return 1 if run.batch.errors else 0


def _cmd_generate(service: MembershipService, args) -> int:
    result = service.generate_expiration_queue()
    print(f"Queued {result.queued} notice(s); {result.expired} membership(s) expired.")
    return 0


def _cmd_process_queue(service: MembershipService, args) -> int:
    result = service.process_expiration_queue()
    print(f"Processed: {result.processed}  succeeded: {result.succeeded}  "
          f"retrying: {result.retried}  dead: {result.dead}  remaining: {result.remaining}")
    if result.invalid_rows:
        print(f"{result.invalid_rows} invalid queue row(s) were skipped.")
    return 0


def _cmd_possible_renewals(service: MembershipService, args) -> int:
    members, pairs = service.find_possible_renewals()
    if not pairs:
        print("No possible renewals found.")
        return 0
    for pair in pairs:
        earlier, later = members[pair.earlier], members[pair.later]
        print(f"rows {pair.earlier + 2} & {pair.later + 2} (score {pair.score}): "
              f"{earlier.full_name} <{earlier.email}> joined {earlier.joined}, "
              f"expires {earlier.expires} / "
              f"{later.full_name} <{later.email}> joined {later.joined}")
    return 0


def _cmd_merge(service: MembershipService, args) -> int:
    # Sheet rows are 1-based with a header row.
    result = service.convert_join_to_renew(args.row_a - 2, args.row_b - 2)
    print(result.message)
    return 0 if result.success else 1


def _cmd_status(config: MembershipConfig, storage: WorkbookStorage) -> int:
    queue = storage.read_table(config.tables.queue)
    dead = storage.read_table(config.tables.dead_letter)
    scheduler = StateFileScheduler(config.data_files.resolve(config.data_files.scheduler_state))
    next_run = scheduler.next_run_at()
    print(f"Live queue entries : {len(queue)}")
    print(f"Dead-letter entries: {len(dead)}")
    print(f"Next scheduled run : {next_run.isoformat(timespec='seconds') if next_run else '(none)'}")
    return 0


_COMMANDS = {
    "transactions": _cmd_transactions,
    "migrations": _cmd_migrations,
    "generate-expirations": _cmd_generate,
    "process-queue": _cmd_process_queue,
    "possible-renewals": _cmd_possible_renewals,
    "merge": _cmd_merge,
}


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Club membership lifecycle automation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m club_membership.main process-queue\n"
            "  python -m club_membership.main --dry-run transactions\n"
            "  python -m club_membership.main merge 12 57\n"
        ),
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: project root config.yaml)",
    )
    parser.add_argument(
        "--workbook",
        type=str,
        default=None,
        help="Path to the membership workbook (overrides config)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Work on an in-memory copy and only log side effects",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("transactions", help="Process paid transactions")
    sub.add_parser("migrations", help="Migrate flagged legacy members")
    sub.add_parser("generate-expirations", help="Queue today's expiry notices")
    sub.add_parser("process-queue", help="Run one batch of the expiration queue")
    sub.add_parser("possible-renewals", help="List likely missed renewals")
    merge = sub.add_parser("merge", help="Fold member row B into row A as a renewal")
    merge.add_argument("row_a", type=int, help="Sheet row of the original membership")
    merge.add_argument("row_b", type=int, help="Sheet row of the later join")
    sub.add_parser("status", help="Show queue depth and next scheduled run")
    return parser


_LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


def _add_log_file(config: MembershipConfig) -> None:
    log_file = config.output.resolved_log_file()
    if log_file is None:
        return
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logging.getLogger().addHandler(handler)
    logger.debug("Logging to %s", log_file)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt="%H:%M:%S",
    )

    try:
        config = get_config(args.config)
        _add_log_file(config)
        if args.workbook:
            config.data_files.workbook = args.workbook

        storage = WorkbookStorage(config.data_files.resolve(config.data_files.workbook))
        if args.command == "status":
            return _cmd_status(config, storage)

        service = MembershipService.from_config(config, storage=storage, dry_run=args.dry_run)
        return _COMMANDS[args.command](service, args)

    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except ValueError as exc:
        logger.error("Data error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except Exception as exc:
        logger.exception("Unexpected error running %s", args.command)
        print(f"\nUNEXPECTED ERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
