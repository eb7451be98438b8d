"""Business Event Processor for the club membership engine.

Executes the side effects of one unit of work and decides its outcome.
The load-bearing rule for every unit:

    completed            -> exactly 1 audit entry (outcome=success)
    terminal failure     -> exactly 1 audit entry (outcome=fail)
    transient failure    -> 0 audit entries (the queue retries it)

Units of work:
    - an expiration queue entry       (notify, leave groups on Expiry4)
    - a paid transaction              (join or renew, via IdentityResolver)
    - a migrating member record       (import from the legacy roster)
    - a manual join-to-renew merge

Expiry schedule generation also lives here; it produces queue entries,
not audit entries -- the consumer's terminal outcome is the audit record
for the expire-notify event.

The processor mutates only the in-memory lists it is handed.  Reading
and writing tables is the service's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Callable

from .audit import AuditLogger
from .directory import GroupDirectory
from .identity_resolver import (
    SAME_PERSON_THRESHOLD,
    Ambiguous,
    AmbiguityKind,
    Candidate,
    MemberIndex,
    Resolved,
    is_possible_renewal,
    resolve,
    similarity_score,
)
from .lifecycle import (
    calculate_expiration_date,
    create_schedule_entries,
    extract_directory_sharing,
    get_period,
    remove_schedule_entries,
)
from .models import (
    ActionSpec,
    ActionType,
    AuditEntry,
    ExpiryScheduleEntry,
    Member,
    MemberStatus,
    Message,
    MigrationRecord,
    PublicGroup,
    QueueEntry,
    Transaction,
    new_entry_id,
)
from .notifier import Messenger
from .retry_queue import BackoffPolicy, EntryOutcome, EntryResult
from .templates import MessageRenderer

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Audit types
# ---------------------------------------------------------------------------

AUDIT_EXPIRED_MEMBER = "ProcessExpiredMember"
AUDIT_DEAD_LETTER = "DeadLetter"
AUDIT_AMBIGUOUS = "AmbiguousTransaction"
AUDIT_MERGE = "ConvertJoinToRenew"


class PermanentActionError(Exception):
    """A failure that retrying cannot fix; the entry goes straight to dead."""


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ExpirationBatchResult:
    results: list[EntryResult] = field(default_factory=list)
    audit_entries: list[AuditEntry] = field(default_factory=list)

    def count(self, outcome: EntryOutcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)


@dataclass
class TransactionError:
    row: int
    email: str
    message: str


@dataclass
class AmbiguousTransaction:
    """A paid transaction held back for a human to match."""
    row: int
    transaction: Transaction
    candidate_indices: list[int]
    kind: AmbiguityKind

    @property
    def candidate_rows(self) -> list[int]:
        """Member sheet row numbers (header is row 1)."""
        return [i + 2 for i in self.candidate_indices]


@dataclass
class TransactionBatchResult:
    records_changed: bool = False
    has_pending_payments: bool = False
    joined: list[str] = field(default_factory=list)
    renewed: list[str] = field(default_factory=list)
    errors: list[TransactionError] = field(default_factory=list)
    ambiguous: list[AmbiguousTransaction] = field(default_factory=list)
    audit_entries: list[AuditEntry] = field(default_factory=list)


@dataclass
class MigrationBatchResult:
    migrated: list[str] = field(default_factory=list)
    skipped: int = 0
    errors: list[TransactionError] = field(default_factory=list)
    audit_entries: list[AuditEntry] = field(default_factory=list)


@dataclass
class GenerationResult:
    entries: list[QueueEntry] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)
    schedule_consumed: int = 0


@dataclass
class MergeResult:
    success: bool
    message: str
    audit_entry: AuditEntry | None = None


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------

class BusinessEventProcessor:
    """Applies lifecycle actions through injected collaborators.

    Args:
        action_specs: Message templates keyed by action type.
        groups: Public groups; ``auto`` ones are joined on membership
            start and left on final expiry.
        messenger: Outbound email.
        directory: Group membership.
        backoff: Retry delay policy for queue entries.
        max_attempts: Global retry ceiling (entries may override).
        reply_to: Reply-To for member messages.
        clock: Returns "now"; today's date is derived from it.
    """

    def __init__(
        self,
        action_specs: dict[ActionType, ActionSpec],
        groups: list[PublicGroup],
        messenger: Messenger,
        directory: GroupDirectory,
        backoff: BackoffPolicy | None = None,
        max_attempts: int = 5,
        reply_to: str = "",
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.specs = action_specs
        self.groups = groups
        self.auto_groups = [g for g in groups if g.is_auto]
        self.messenger = messenger
        self.directory = directory
        self.backoff = backoff or BackoffPolicy()
        self.max_attempts = max_attempts
        self.clock = clock
        self.renderer = MessageRenderer(action_specs, reply_to=reply_to)
        self.audit = AuditLogger(clock)

    def today(self) -> date:
        return self.clock().date()

    # ===================================================================
    # Expiration queue consumer
    # ===================================================================

    def process_queue_entry(self, entry: QueueEntry, now: datetime | None = None) -> EntryResult:
        """Execute one queue entry and classify the outcome."""
        now = now or self.clock()
        try:
            for group in entry.groups:
                self.directory.remove_from_group(entry.recipient, group)
            self.messenger.send(Message(
                to=entry.recipient,
                subject=entry.subject,
                html_body=entry.body,
                reply_to=self.renderer.reply_to,
            ))
        except Exception as exc:
            return self._failed_entry(entry, exc, now)

        logger.info("%s - %s - processed", entry.action_type or "Queue entry", entry.recipient)
        audit = self.audit.success(
            AUDIT_EXPIRED_MEMBER,
            note=f"Successfully processed expiration for {entry.recipient}",
            data={
                "entryId": entry.id,
                "email": entry.recipient,
                "actionType": entry.action_type,
                "groupsRemoved": list(entry.groups),
                "attempts": entry.attempts + 1,
            },
            id=f"{entry.id}:success",
        )
        return EntryResult(entry_id=entry.id, outcome=EntryOutcome.SUCCESS, audit_entry=audit)

    def _failed_entry(self, entry: QueueEntry, exc: Exception, now: datetime) -> EntryResult:
        attempts = entry.attempts + 1
        error = str(exc) or type(exc).__name__
        ceiling = entry.effective_max_attempts(self.max_attempts)
        permanent = isinstance(exc, PermanentActionError)

        if permanent or attempts >= ceiling:
            dead = replace(
                entry,
                attempts=attempts,
                last_attempt_at=now,
                last_error=error,
                next_attempt_at=None,
                dead=True,
            )
            logger.warning("Dead-lettering %s for %s after %d attempt(s): %s",
                           entry.id, entry.recipient, attempts, error)
            audit = self.audit.failure(
                AUDIT_DEAD_LETTER,
                error=error,
                note=(f"Gave up on {entry.action_type or 'queue entry'} for "
                      f"{entry.recipient} after {attempts} attempt(s)"),
                data={
                    "entryId": entry.id,
                    "email": entry.recipient,
                    "error": error,
                    "attempts": attempts,
                    "maxAttempts": ceiling,
                    "permanent": permanent,
                },
                id=f"{entry.id}:dead",
            )
            return EntryResult(entry_id=entry.id, outcome=EntryOutcome.DEAD,
                               entry=dead, audit_entry=audit)

        retry = replace(
            entry,
            attempts=attempts,
            last_attempt_at=now,
            last_error=error,
            next_attempt_at=self.backoff.next_attempt_at(attempts, now),
        )
        logger.info("Retrying %s for %s (attempt %d/%d) at %s: %s",
                    entry.id, entry.recipient, attempts, ceiling,
                    retry.next_attempt_at.isoformat(timespec="seconds"), error)
        return EntryResult(entry_id=entry.id, outcome=EntryOutcome.RETRY, entry=retry)

    def process_expired_members(
        self,
        entries: list[QueueEntry],
        now: datetime | None = None,
    ) -> ExpirationBatchResult:
        """Process a selected batch; one result per entry, in order."""
        now = now or self.clock()
        batch = ExpirationBatchResult()
        for entry in entries:
            result = self.process_queue_entry(entry, now)
            batch.results.append(result)
            if result.audit_entry is not None:
                batch.audit_entries.append(result.audit_entry)
        logger.info(
            "Expiration batch: %d succeeded, %d retrying, %d dead",
            batch.count(EntryOutcome.SUCCESS), batch.count(EntryOutcome.RETRY),
            batch.count(EntryOutcome.DEAD),
        )
        return batch

    # ===================================================================
    # Expiration queue producer
    # ===================================================================

    def generate_expiration_queue(
        self,
        members: list[Member],
        schedule: list[ExpiryScheduleEntry],
        now: datetime | None = None,
    ) -> GenerationResult:
        """Turn due schedule entries into queue entries.

        Due entries leave *schedule*.  For each email only the latest due
        notification is sent.  Expiry4 marks the member Expired and the
        queue entry carries the auto groups to leave.
        """
        now = now or self.clock()
        today = now.date()
        result = GenerationResult()

        due = [e for e in schedule if e.date <= today]
        if not due:
            return result
        schedule[:] = [e for e in schedule if e.date > today]
        result.schedule_consumed = len(due)

        due.sort(key=lambda e: (e.date, e.action.rank), reverse=True)
        seen: set[str] = set()
        for sched in due:
            email_key = sched.email.strip().lower()
            if email_key in seen:
                logger.debug("Skipping %s for %s - later notice already queued",
                             sched.action.value, sched.email)
                continue
            seen.add(email_key)

            member = next(
                (m for m in members if m.email.strip().lower() == email_key and m.is_active),
                None,
            )
            if member is None:
                logger.info("Skipping %s for %s - not an active member",
                            sched.action.value, sched.email)
                continue

            groups: list[str] = []
            if sched.action is ActionType.EXPIRY4:
                member.status = MemberStatus.EXPIRED
                groups = [g.email for g in self.auto_groups]
                result.expired.append(member.email)

            message = self.renderer.render(sched.action, member)
            result.entries.append(QueueEntry(
                id=new_entry_id(),
                recipient=member.email,
                subject=message.subject,
                body=message.html_body,
                groups=groups,
                action_type=sched.action.value,
                created_at=now,
            ))
            logger.info("%s - %s - queued", sched.action.value, member.email)

        return result

    # ===================================================================
    # Paid transactions
    # ===================================================================

    def process_paid_transactions(
        self,
        transactions: list[Transaction],
        members: list[Member],
        schedule: list[ExpiryScheduleEntry],
    ) -> TransactionBatchResult:
        """Join or renew for every paid, unprocessed transaction.

        Unpaid rows are left alone and reported via
        ``has_pending_payments``.  Ambiguous identities are held back for
        manual review without touching any member.
        """
        result = TransactionBatchResult()
        index = MemberIndex.build(members)
        today = self.today()

        for i, txn in enumerate(transactions):
            row = i + 2
            if txn.processed:
                continue
            if not txn.is_paid:
                result.has_pending_payments = True
                continue

            resolution = resolve(Candidate.from_transaction(txn), members, index)

            if isinstance(resolution, Ambiguous):
                self._hold_ambiguous(row, txn, resolution, result)
                continue

            action = ActionType.RENEW if isinstance(resolution, Resolved) else ActionType.JOIN
            try:
                if isinstance(resolution, Resolved):
                    member = self._renew(txn, resolution.index, members, index, schedule)
                    result.renewed.append(member.email)
                else:
                    member = self._join(txn, members, index, schedule)
                    result.joined.append(member.email)
            except Exception as exc:
                message = str(exc) or type(exc).__name__
                logger.exception("Transaction on row %d (%s) failed", row, txn.email)
                result.errors.append(TransactionError(row=row, email=txn.email, message=message))
                result.audit_entries.append(self.audit.failure(
                    action.value,
                    error=message,
                    note=f"{action.value} failed for transaction on row {row} ({txn.email})",
                    data={"row": row, "email": txn.email, "payment": txn.payment},
                ))
                continue

            txn.timestamp = today
            txn.processed = today
            result.records_changed = True
            result.audit_entries.append(self.audit.success(
                action.value,
                note=f"{action.value} processed for {member.email}",
                data={
                    "row": row,
                    "email": member.email,
                    "period": member.period,
                    "expires": member.expires,
                },
            ))

        logger.info(
            "Transactions: %d joined, %d renewed, %d ambiguous, %d error(s), pending=%s",
            len(result.joined), len(result.renewed), len(result.ambiguous),
            len(result.errors), result.has_pending_payments,
        )
        return result

    def _hold_ambiguous(
        self,
        row: int,
        txn: Transaction,
        resolution: Ambiguous,
        result: TransactionBatchResult,
    ) -> None:
        held = AmbiguousTransaction(
            row=row,
            transaction=txn,
            candidate_indices=sorted(resolution.indices),
            kind=resolution.kind,
        )
        result.ambiguous.append(held)
        email = txn.email.strip().lower()
        result.audit_entries.append(self.audit.failure(
            AUDIT_AMBIGUOUS,
            error=(f"Transaction matches {len(held.candidate_indices)} members "
                   f"({resolution.kind.value}); manual resolution required"),
            note=f"Transaction on row {row} ({txn.email}) not applied",
            data={
                "row": row,
                "email": txn.email,
                "phone": txn.phone,
                "kind": resolution.kind.value,
                "candidateRows": held.candidate_rows,
            },
            id=f"{AUDIT_AMBIGUOUS}:{email}:{txn.phone}:{txn.payment}",
        ))

    def _join(
        self,
        txn: Transaction,
        members: list[Member],
        index: MemberIndex,
        schedule: list[ExpiryScheduleEntry],
    ) -> Member:
        today = self.today()
        period = get_period(txn.payment)
        member = Member(
            email=txn.email,
            first=txn.first,
            last=txn.last,
            phone=txn.phone,
            joined=today,
            period=period,
            expires=calculate_expiration_date(today, today, period),
            status=MemberStatus.ACTIVE,
            **extract_directory_sharing(txn.directory),
        )
        message = self.renderer.render(ActionType.JOIN, member)

        for group in self.auto_groups:
            self.directory.add_to_group(member.email, group.email)
        self.messenger.send(message)

        members.append(member)
        index.add(len(members) - 1, member)
        schedule.extend(create_schedule_entries(member.email, member.expires, self.specs, today))
        logger.info("%s joined (expires %s)", member.email, member.expires)
        return member

    def _renew(
        self,
        txn: Transaction,
        position: int,
        members: list[Member],
        index: MemberIndex,
        schedule: list[ExpiryScheduleEntry],
    ) -> Member:
        today = self.today()
        current = members[position]
        period = get_period(txn.payment)
        renewed = replace(
            current,
            period=period,
            renewed_on=today,
            expires=calculate_expiration_date(today, current.expires or today, period),
            email=current.email or txn.email,
            phone=current.phone or txn.phone,
            **extract_directory_sharing(txn.directory),
        )
        message = self.renderer.render(ActionType.RENEW, renewed)
        self.messenger.send(message)

        index.remove(position, current)
        members[position] = renewed
        index.add(position, renewed)
        remove_schedule_entries(current.email, schedule)
        schedule.extend(create_schedule_entries(renewed.email, renewed.expires, self.specs, today))
        logger.info("%s renewed (expires %s)", renewed.email, renewed.expires)
        return renewed

    # ===================================================================
    # Migrations
    # ===================================================================

    def migrate_members(
        self,
        records: list[MigrationRecord],
        members: list[Member],
        schedule: list[ExpiryScheduleEntry],
    ) -> MigrationBatchResult:
        """Bring flagged legacy members into the member table.

        Active migrants join their flagged groups, get an expiry schedule
        and the Migrate message.  Inactive migrants are recorded only.
        """
        result = MigrationBatchResult()
        today = self.today()
        active_emails = {m.email.strip().lower() for m in members if m.is_active and m.email}

        for i, record in enumerate(records):
            row = i + 2
            if not record.migrate_me or record.member.migrated:
                continue
            email = record.email.strip()
            if not email:
                logger.info("Skipping migration row %d, no email address", row)
                result.skipped += 1
                continue
            if email.lower() in active_emails:
                logger.info("Skipping %s on row %d, already an active member", email, row)
                result.skipped += 1
                continue

            migrant = replace(record.member, migrated=today)
            try:
                if migrant.is_active:
                    logger.info("Migrating active member %s, row %d", email, row)
                    message = self.renderer.render(ActionType.MIGRATE, migrant)
                    for group in record.groups:
                        self.directory.add_to_group(migrant.email, group)
                    self.messenger.send(message)
                    if migrant.expires is not None:
                        schedule.extend(create_schedule_entries(
                            migrant.email, migrant.expires, self.specs, today,
                        ))
                else:
                    logger.info("Migrating inactive member %s, row %d - no groups or email",
                                email, row)
            except Exception as exc:
                message_text = str(exc) or type(exc).__name__
                logger.exception("Migration of %s on row %d failed", email, row)
                result.errors.append(TransactionError(row=row, email=email, message=message_text))
                result.audit_entries.append(self.audit.failure(
                    ActionType.MIGRATE.value,
                    error=message_text,
                    note=f"Migration failed for {email} on row {row}",
                    data={"row": row, "email": email},
                ))
                continue

            members.append(migrant)
            active_emails.add(email.lower())
            record.member.migrated = today
            result.migrated.append(email)
            result.audit_entries.append(self.audit.success(
                ActionType.MIGRATE.value,
                note=f"Migrated {email} from row {row}",
                data={
                    "row": row,
                    "email": email,
                    "status": migrant.status.value,
                    "groups": list(record.groups) if migrant.is_active else [],
                },
            ))

        logger.info("Migrations: %d migrated, %d skipped, %d error(s)",
                    len(result.migrated), result.skipped, len(result.errors))
        return result

    # ===================================================================
    # Join-to-renew merge
    # ===================================================================

    def convert_join_to_renew(
        self,
        a_index: int,
        b_index: int,
        members: list[Member],
        schedule: list[ExpiryScheduleEntry],
    ) -> MergeResult:
        """Fold member B (a later join) into member A as a renewal.

        A keeps its joined date and takes B's expiry, period and contact
        details; B's row is removed.  Both rows must be active, look like
        the same person, and B must have joined before A expired.
        """
        problem = self._merge_problem(a_index, b_index, members)
        if problem:
            logger.warning("Cannot merge rows %d and %d: %s", a_index + 2, b_index + 2, problem)
            audit = self.audit.failure(
                AUDIT_MERGE,
                error=problem,
                note=f"Merge of member rows {a_index + 2} and {b_index + 2} refused",
                data={"rowA": a_index + 2, "rowB": b_index + 2},
            )
            return MergeResult(success=False, message=problem, audit_entry=audit)

        a, b = members[a_index], members[b_index]
        merged = replace(
            a,
            email=b.email or a.email,
            phone=b.phone or a.phone,
            period=b.period,
            expires=max(a.expires, b.expires),
            renewed_on=b.joined,
            share_name=b.share_name,
            share_email=b.share_email,
            share_phone=b.share_phone,
        )
        members[a_index] = merged
        del members[b_index]

        remove_schedule_entries(a.email, schedule)
        remove_schedule_entries(b.email, schedule)
        schedule.extend(create_schedule_entries(merged.email, merged.expires, self.specs, self.today()))

        message = f"Merged {b.email} (joined {b.joined}) into {a.email}; expires {merged.expires}"
        logger.info("%s", message)
        audit = self.audit.success(
            AUDIT_MERGE,
            note=message,
            data={"rowA": a_index + 2, "rowB": b_index + 2, "email": merged.email,
                  "expires": merged.expires},
        )
        return MergeResult(success=True, message=message, audit_entry=audit)

    @staticmethod
    def _merge_problem(a_index: int, b_index: int, members: list[Member]) -> str:
        for idx in (a_index, b_index):
            if not 0 <= idx < len(members):
                return f"row {idx + 2} does not exist"
        if a_index == b_index:
            return "cannot merge a member with itself"
        a, b = members[a_index], members[b_index]
        if not a.is_active or not b.is_active:
            return "both members must be active"
        if similarity_score(a, b) < SAME_PERSON_THRESHOLD:
            return "members do not look like the same person"
        if a.expires is None or b.expires is None:
            return "both members need an expiry date"
        if not is_possible_renewal(a, b):
            return f"{b.email} joined after {a.email} expired"
        return ""
