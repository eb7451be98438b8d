"""
Club Membership -- Service Layer

One method per host-triggered job.  Each does a full read-modify-write
of the tables it touches, once per batch:

    process_expiration_queue()   drain up to N eligible queue entries
    generate_expiration_queue()  turn due expiry notices into queue entries
    process_transactions()       join / renew from paid transactions
    process_migrations()         import flagged legacy members
    convert_join_to_renew(a, b)  manual merge of a missed renewal
    find_possible_renewals()     report candidates for that merge

Collaborators (storage, messenger, directory, scheduler, clock) are
passed in; ``from_config`` wires the production set, honoring the
test-mode flags.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from .audit import AuditGuard
from .config import MembershipConfig
from .directory import GroupDirectory, LoggingDirectory, TableDirectory
from .identity_resolver import PossibleRenewal, find_possible_renewals
from .models import AuditEntry, Member
from .notifier import LoggingMessenger, Messenger, OperatorNotifier, SmtpMessenger
from .processor import (
    AmbiguousTransaction,
    BusinessEventProcessor,
    MergeResult,
    MigrationBatchResult,
    TransactionBatchResult,
)
from .retry_queue import RetryQueue
from .scheduler import LoggingScheduler, RunScheduler, StateFileScheduler
from .storage import InMemoryStorage, TableStorage, WorkbookStorage
from .tables import (
    AMBIGUOUS_HEADERS,
    MEMBER_HEADERS,
    QUEUE_HEADERS,
    SCHEDULE_HEADERS,
    TRANSACTION_HEADERS,
    action_specs_from_rows,
    ambiguous_transaction_to_row,
    groups_from_rows,
    member_from_row,
    member_to_row,
    migration_from_row,
    migration_to_row,
    queue_entry_to_row,
    schedule_entry_to_row,
    schedule_from_rows,
    transaction_from_row,
    transaction_to_row,
    validate_queue_rows,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Run results
# ---------------------------------------------------------------------------

@dataclass
class QueueRunResult:
    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead: int = 0
    remaining: int = 0
    invalid_rows: int = 0
    audit_written: int = 0
    has_more_work: bool = False
    audit_entries: list[AuditEntry] = field(default_factory=list)


@dataclass
class GenerationRunResult:
    queued: int = 0
    expired: int = 0
    schedule_consumed: int = 0


@dataclass
class AmbiguousPersistResult:
    persisted: bool
    count: int = 0
    reason: str = ""


@dataclass
class TransactionRunResult:
    batch: TransactionBatchResult
    audit_written: int = 0
    ambiguous: AmbiguousPersistResult | None = None

    @property
    def has_pending_payments(self) -> bool:
        return self.batch.has_pending_payments


@dataclass
class MigrationRunResult:
    batch: MigrationBatchResult
    written: bool = False
    audit_written: int = 0


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class MembershipService:
    """Orchestrates storage, processor, queue, audit and scheduling."""

    def __init__(
        self,
        storage: TableStorage,
        messenger: Messenger,
        directory: GroupDirectory,
        scheduler: RunScheduler,
        config: MembershipConfig | None = None,
        notifier: OperatorNotifier | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config or MembershipConfig()
        self.tables = self.config.tables
        self.storage = storage
        self.messenger = messenger
        self.directory = directory
        self.scheduler = scheduler
        self.clock = clock
        self.notifier = notifier or OperatorNotifier(
            messenger,
            self.config.club.operator_email,
            reply_to=self.config.club.reply_to,
        )
        self.retry_queue = RetryQueue.from_settings(self.config.queue)
        self.audit_guard = AuditGuard(storage, self.notifier, table=self.tables.audit)

    @classmethod
    def from_config(
        cls,
        config: MembershipConfig,
        storage: TableStorage | None = None,
        dry_run: bool = False,
    ) -> MembershipService:
        """Production wiring.

        ``dry_run`` works on an in-memory snapshot of the workbook with
        every side effect logged instead of performed.
        """
        if storage is None:
            storage = WorkbookStorage(config.data_files.resolve(config.data_files.workbook))
        flags = config.test_mode

        if dry_run:
            storage = InMemoryStorage.snapshot_of(storage)
            messenger: Messenger = LoggingMessenger()
            directory: GroupDirectory = LoggingDirectory()
            scheduler: RunScheduler = LoggingScheduler()
        else:
            if flags.test_emails:
                messenger = LoggingMessenger()
            else:
                messenger = SmtpMessenger(config.smtp, default_sender=config.club.reply_to)
            directory = LoggingDirectory(
                TableDirectory(storage),
                log_adds=flags.test_group_adds,
                log_removes=flags.test_group_removes,
            )
            scheduler = StateFileScheduler(
                config.data_files.resolve(config.data_files.scheduler_state)
            )
        return cls(storage, messenger, directory, scheduler, config=config)

    # -------------------------------------------------------------------
    # Loading helpers
    # -------------------------------------------------------------------

    def build_processor(self) -> BusinessEventProcessor:
        specs = action_specs_from_rows(self.storage.read_table(self.tables.action_specs))
        groups = groups_from_rows(self.storage.read_table(self.tables.groups))
        return BusinessEventProcessor(
            action_specs=specs,
            groups=groups,
            messenger=self.messenger,
            directory=self.directory,
            backoff=self.retry_queue.backoff,
            max_attempts=self.retry_queue.max_attempts,
            reply_to=self.config.club.reply_to,
            clock=self.clock,
        )

    def _load_members(self) -> list[Member]:
        members = []
        for row in self.storage.read_table(self.tables.members):
            member = member_from_row(row)
            member.source_row = row
            members.append(member)
        return members

    def _write_members(self, members: list[Member]) -> None:
        # Each member is written over its own source row, never another
        # member's, even when emails are shared or blank.
        rows = [member_to_row(m, m.source_row) for m in members]
        self.storage.write_table(self.tables.members, rows, MEMBER_HEADERS)

    def _write_schedule(self, schedule) -> None:
        schedule = sorted(schedule, key=lambda e: (e.date, e.action.rank, e.email))
        self.storage.write_table(
            self.tables.expiry_schedule,
            [schedule_entry_to_row(e) for e in schedule],
            SCHEDULE_HEADERS,
        )

    def _schedule_next_run(self, delay: timedelta | None) -> None:
        if delay is None:
            self.scheduler.cancel_scheduled_runs()
            return
        minutes = max(int(delay.total_seconds() // 60), self.config.queue.continuation_delay_minutes)
        self.scheduler.schedule_future_run(minutes)

    # -------------------------------------------------------------------
    # Expiration queue
    # -------------------------------------------------------------------

    def _reporting(self, context: str, job: Callable, *args):
        """Run *job*; unrecoverable errors go to the operator and are re-raised."""
        try:
            return job(*args)
        except Exception as exc:
            logger.exception("%s failed", context)
            self.notifier.report_exception(context, exc)
            raise

    def process_expiration_queue(self) -> QueueRunResult:
        """Run one batch of the expiration queue."""
        return self._reporting("Expiration queue processing", self._process_expiration_queue)

    def _process_expiration_queue(self) -> QueueRunResult:
        now = self.clock()
        result = QueueRunResult()

        rows = self.storage.read_table(self.tables.queue)
        entries, rejected, errors = validate_queue_rows(rows)
        result.invalid_rows = len(rejected)
        if errors:
            self.notifier.report_problems(
                f"Invalid rows in {self.tables.queue}",
                errors,
                intro="These rows were skipped and left in place for correction.",
            )

        continuation = timedelta(minutes=self.config.queue.continuation_delay_minutes)
        batch = self.retry_queue.select_batch(entries, now)
        outcome = None
        if batch:
            processor = self.build_processor()
            outcome = processor.process_expired_members(batch.entries, now)
        else:
            logger.info("No eligible queue entries (%d waiting)", len(entries))
        update = self.retry_queue.apply_outcomes(
            entries, outcome.results if outcome else [], batch,
        )

        if batch or update.dead_letters:
            live_rows = [queue_entry_to_row(e) for e in update.queue] + rejected
            self.storage.write_table(self.tables.queue, live_rows, QUEUE_HEADERS)
        if update.dead_letters:
            dead_rows = self.storage.read_table(self.tables.dead_letter)
            dead_rows.extend(queue_entry_to_row(e, status="dead") for e in update.dead_letters)
            self.storage.write_table(self.tables.dead_letter, dead_rows, QUEUE_HEADERS)

        if outcome is not None:
            result.audit_entries = outcome.audit_entries
            result.audit_written = self.audit_guard.persist(outcome.audit_entries)

        result.processed = len(batch)
        result.succeeded = len(update.succeeded)
        result.retried = len(update.retried)
        result.dead = len(update.dead_letters)
        result.remaining = len(update.queue)
        result.has_more_work = update.has_more_work
        self._schedule_next_run(self.retry_queue.next_run_delay(update.queue, now, continuation))

        logger.info(
            "Expiration queue run: processed=%d succeeded=%d retried=%d dead=%d remaining=%d",
            result.processed, result.succeeded, result.retried, result.dead, result.remaining,
        )
        return result

    def generate_expiration_queue(self) -> GenerationRunResult:
        """Queue today's due expiry notices and start the queue consumer."""
        return self._reporting("Expiration queue generation", self._generate_expiration_queue)

    def _generate_expiration_queue(self) -> GenerationRunResult:
        members = self._load_members()
        schedule = schedule_from_rows(self.storage.read_table(self.tables.expiry_schedule))
        processor = self.build_processor()
        generated = processor.generate_expiration_queue(members, schedule, self.clock())

        result = GenerationRunResult(
            queued=len(generated.entries),
            expired=len(generated.expired),
            schedule_consumed=generated.schedule_consumed,
        )
        if not generated.schedule_consumed:
            logger.info("No memberships required expiration processing")
            return result

        queue_rows = self.storage.read_table(self.tables.queue)
        queue_rows.extend(queue_entry_to_row(e) for e in generated.entries)
        self.storage.write_table(self.tables.queue, queue_rows, QUEUE_HEADERS)
        self._write_members(members)
        self._write_schedule(schedule)

        if generated.entries:
            self.scheduler.schedule_future_run(self.config.queue.continuation_delay_minutes)
        logger.info("Queued %d expiry notice(s); %d member(s) expired",
                    result.queued, result.expired)
        return result

    # -------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------

    def process_transactions(self) -> TransactionRunResult:
        return self._reporting("Transaction processing", self._process_transactions)

    def _process_transactions(self) -> TransactionRunResult:
        txn_rows = self.storage.read_table(self.tables.transactions)
        transactions = [transaction_from_row(r) for r in txn_rows]
        members = self._load_members()
        schedule = schedule_from_rows(self.storage.read_table(self.tables.expiry_schedule))

        processor = self.build_processor()
        batch = processor.process_paid_transactions(transactions, members, schedule)

        if batch.records_changed:
            self.storage.write_table(
                self.tables.transactions,
                [transaction_to_row(t, base) for t, base in zip(transactions, txn_rows)],
                TRANSACTION_HEADERS,
            )
            self._write_members(members)
            self._write_schedule(schedule)

        for error in batch.errors:
            logger.error("Transaction on row %d %s had an error: %s",
                         error.row, error.email, error.message)

        run = TransactionRunResult(batch=batch)
        run.ambiguous = self.persist_ambiguous_transactions(batch.ambiguous)
        run.audit_written = self.audit_guard.persist(batch.audit_entries)
        return run

    def persist_ambiguous_transactions(
        self,
        ambiguous: list[AmbiguousTransaction],
    ) -> AmbiguousPersistResult:
        """Replace the manual-review table with this run's ambiguous transactions."""
        if not ambiguous:
            return AmbiguousPersistResult(persisted=False, reason="no_ambiguous_transactions")
        now = self.clock()
        rows = [
            ambiguous_transaction_to_row(
                held.transaction,
                kind=held.kind.value,
                candidate_rows=held.candidate_rows,
                note=f"Transaction row {held.row}: match manually, then mark it processed",
                timestamp=now,
            )
            for held in ambiguous
        ]
        self.storage.write_table(self.tables.ambiguous, rows, AMBIGUOUS_HEADERS)
        logger.warning("%d transaction(s) need manual identity resolution", len(rows))
        return AmbiguousPersistResult(persisted=True, count=len(rows))

    # -------------------------------------------------------------------
    # Migrations
    # -------------------------------------------------------------------

    def process_migrations(self) -> MigrationRunResult:
        return self._reporting("Member migration", self._process_migrations)

    def _process_migrations(self) -> MigrationRunResult:
        migration_rows = self.storage.read_table(self.tables.migrations)
        records = [migration_from_row(r) for r in migration_rows]
        members = self._load_members()
        schedule = schedule_from_rows(self.storage.read_table(self.tables.expiry_schedule))
        starting_members, starting_schedule = len(members), len(schedule)

        processor = self.build_processor()
        batch = processor.migrate_members(records, members, schedule)
        for error in batch.errors:
            logger.error("Migration on row %d %s had an error: %s",
                         error.row, error.email, error.message)

        run = MigrationRunResult(batch=batch)
        if self.config.test_mode.log_only:
            logger.info(
                "logOnly - new members: %d - expiry schedule entries added: %d",
                len(members) - starting_members, len(schedule) - starting_schedule,
            )
            return run

        self.storage.write_table(
            self.tables.migrations,
            [migration_to_row(rec, base) for rec, base in zip(records, migration_rows)],
        )
        self._write_members(members)
        self._write_schedule(schedule)
        run.written = True
        run.audit_written = self.audit_guard.persist(batch.audit_entries)
        return run

    # -------------------------------------------------------------------
    # Merges
    # -------------------------------------------------------------------

    def find_possible_renewals(self) -> tuple[list[Member], list[PossibleRenewal]]:
        members = self._load_members()
        return members, find_possible_renewals(members)

    def convert_join_to_renew(self, a_index: int, b_index: int) -> MergeResult:
        members = self._load_members()
        schedule = schedule_from_rows(self.storage.read_table(self.tables.expiry_schedule))
        processor = self.build_processor()
        result = processor.convert_join_to_renew(a_index, b_index, members, schedule)
        if result.success:
            self._write_members(members)
            self._write_schedule(schedule)
        if result.audit_entry is not None:
            self.audit_guard.persist([result.audit_entry])
        return result
