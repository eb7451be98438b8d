"""
Club Membership -- Retry Queue

Durable, FIFO-ordered work queue for pending business actions.  The
queue itself lives in a table (see ``tables.py``); this module holds the
pure logic that runs over an in-memory copy of it once per batch:

    select_batch     -> up to N eligible entries, stored order preserved
    apply_outcomes   -> updated live queue + dead-letter rows + has_more_work

Entry lifecycle:

    pending --success--> (removed)
       |
       +--retry--> pending (attempts+1, backoff until next_attempt_at)
       |
       +--dead---> dead-letter table (never back in the live queue)

Backoff: ``next_attempt_at = now + min(base * 2**(attempts-1), max)``.

The queue never schedules anything itself; ``QueueUpdate.has_more_work``
tells the caller whether a future run is needed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum

from .config import QueueSettings
from .models import AuditEntry, QueueEntry

logger = logging.getLogger(__name__)


class QueueContractError(RuntimeError):
    """A processing result is missing or malformed.

    This is a bug in the calling code, never a business-data problem, so
    it is raised instead of being coerced into some outcome.
    """


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class EntryOutcome(Enum):
    SUCCESS = "success"
    RETRY = "retry"
    DEAD = "dead"


@dataclass
class EntryResult:
    """What happened to one queue entry.

    For RETRY and DEAD, ``entry`` is the rewritten entry carrying the
    attempt metadata (attempts, last_attempt_at, last_error and, for
    RETRY, next_attempt_at).  ``audit_entry`` is set exactly when the
    outcome is terminal.
    """
    entry_id: str
    outcome: EntryOutcome
    entry: QueueEntry | None = None
    audit_entry: AuditEntry | None = None


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

@dataclass
class BackoffPolicy:
    """Exponential backoff with a ceiling; attempt 1 waits ``base_delay``."""
    base_delay: timedelta = timedelta(minutes=5)
    max_delay: timedelta = timedelta(minutes=240)

    def delay_for(self, attempts: int) -> timedelta:
        exponent = max(attempts, 1) - 1
        # 2**31 * any positive base is far past any sensible ceiling
        if exponent >= 31:
            return self.max_delay
        return min(self.base_delay * (2 ** exponent), self.max_delay)

    def next_attempt_at(self, attempts: int, now: datetime) -> datetime:
        return now + self.delay_for(attempts)


# ---------------------------------------------------------------------------
# Batch / update containers
# ---------------------------------------------------------------------------

@dataclass
class Batch:
    """Entries selected for one run, with their positions in the queue."""
    entries: list[QueueEntry] = field(default_factory=list)
    indices: list[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def ids(self) -> list[str]:
        return [e.id for e in self.entries]


@dataclass
class QueueUpdate:
    """The queue after one batch's outcomes were applied."""
    queue: list[QueueEntry] = field(default_factory=list)
    dead_letters: list[QueueEntry] = field(default_factory=list)
    succeeded: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)

    @property
    def has_more_work(self) -> bool:
        """True while any live entry remains (eligible now or after backoff)."""
        return any(not e.dead for e in self.queue)


# ---------------------------------------------------------------------------
# Retry Queue
# ---------------------------------------------------------------------------

class RetryQueue:
    """Selection and bookkeeping over an in-memory copy of the queue table."""

    def __init__(
        self,
        batch_size: int = 50,
        max_attempts: int = 5,
        backoff: BackoffPolicy | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be positive, got {max_attempts}")
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff = backoff or BackoffPolicy()

    @classmethod
    def from_settings(cls, settings: QueueSettings) -> RetryQueue:
        return cls(
            batch_size=settings.batch_size,
            max_attempts=settings.max_attempts,
            backoff=BackoffPolicy(
                base_delay=timedelta(minutes=settings.base_delay_minutes),
                max_delay=timedelta(minutes=settings.max_delay_minutes),
            ),
        )

    # -------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------

    def select_batch(
        self,
        queue: list[QueueEntry],
        now: datetime,
        batch_size: int | None = None,
    ) -> Batch:
        """Up to *batch_size* eligible entries, in stored order.

        Empty or fully-ineligible queues yield an empty batch.

        Raises:
            QueueContractError: If *queue* is not a list.
        """
        if not isinstance(queue, list):
            raise QueueContractError(
                f"queue must be a list, got {type(queue).__name__}"
            )
        limit = batch_size if batch_size is not None else self.batch_size
        batch = Batch()
        for i, entry in enumerate(queue):
            if len(batch) >= limit:
                break
            if entry is None or not entry.is_eligible(now):
                continue
            batch.entries.append(entry)
            batch.indices.append(i)
        logger.debug("Selected %d of %d queue entries (limit %d)",
                     len(batch), len(queue), limit)
        return batch

    # -------------------------------------------------------------------
    # Applying outcomes
    # -------------------------------------------------------------------

    def apply_outcomes(
        self,
        queue: list[QueueEntry],
        results: list[EntryResult],
        batch: Batch | None = None,
    ) -> QueueUpdate:
        """Rewrite the queue from one batch's results.

        Successes and dead entries leave the live queue; retried entries
        are replaced in place; entries without a result pass through
        unchanged, except ones already flagged dead, which are moved to
        the dead letters.  When *batch* is given, every entry in it must
        have a result.

        Raises:
            QueueContractError: On a missing, duplicate, unknown or
                malformed result.
        """
        if not isinstance(queue, list):
            raise QueueContractError(
                f"queue must be a list, got {type(queue).__name__}"
            )
        if not isinstance(results, list):
            raise QueueContractError(
                f"results must be a list, got {type(results).__name__}"
            )

        by_id = {entry.id: entry for entry in queue}
        outcomes: dict[str, EntryResult] = {}
        for result in results:
            if not isinstance(result, EntryResult):
                raise QueueContractError(f"Not an EntryResult: {result!r}")
            if result.entry_id in outcomes:
                raise QueueContractError(f"Duplicate result for entry {result.entry_id}")
            original = by_id.get(result.entry_id)
            if original is None:
                raise QueueContractError(f"Result for unknown entry {result.entry_id}")
            self._check_result(original, result)
            outcomes[result.entry_id] = result

        if batch is not None:
            missing = [entry_id for entry_id in batch.ids if entry_id not in outcomes]
            if missing:
                raise QueueContractError(
                    f"No result for {len(missing)} processed entr(y/ies): {missing}"
                )

        update = QueueUpdate()
        for entry in queue:
            result = outcomes.get(entry.id)
            if result is None and entry.dead:
                logger.warning("Entry %s is flagged dead in the live queue; moving it "
                               "to the dead letters", entry.id)
                update.dead_letters.append(entry)
            elif result is None:
                update.queue.append(entry)
            elif result.outcome is EntryOutcome.SUCCESS:
                update.succeeded.append(entry.id)
            elif result.outcome is EntryOutcome.RETRY:
                update.queue.append(result.entry)
                update.retried.append(entry.id)
            else:
                update.dead_letters.append(replace(result.entry, dead=True))

        logger.info(
            "Queue update: %d succeeded, %d retrying, %d dead-lettered, %d live",
            len(update.succeeded), len(update.retried),
            len(update.dead_letters), len(update.queue),
        )
        return update

    def _check_result(self, original: QueueEntry, result: EntryResult) -> None:
        if not isinstance(result.outcome, EntryOutcome):
            raise QueueContractError(
                f"Entry {original.id}: outcome {result.outcome!r} is not an EntryOutcome"
            )
        if result.outcome is EntryOutcome.SUCCESS:
            return

        updated = result.entry
        if updated is None:
            raise QueueContractError(
                f"Entry {original.id}: {result.outcome.value} result carries no failure metadata"
            )
        if updated.id != original.id:
            raise QueueContractError(
                f"Entry {original.id}: result entry has id {updated.id}"
            )
        if not updated.last_error:
            raise QueueContractError(f"Entry {original.id}: missing last_error")
        if updated.last_attempt_at is None:
            raise QueueContractError(f"Entry {original.id}: missing last_attempt_at")
        if updated.attempts <= original.attempts:
            raise QueueContractError(
                f"Entry {original.id}: attempts not incremented "
                f"({original.attempts} -> {updated.attempts})"
            )

        if result.outcome is EntryOutcome.RETRY:
            if updated.dead:
                raise QueueContractError(f"Entry {original.id}: retry result is marked dead")
            if updated.next_attempt_at is None:
                raise QueueContractError(f"Entry {original.id}: retry without next_attempt_at")
        elif not updated.dead:
            raise QueueContractError(f"Entry {original.id}: dead result is not marked dead")

    # -------------------------------------------------------------------
    # Scheduling hint
    # -------------------------------------------------------------------

    def next_run_delay(
        self,
        queue: list[QueueEntry],
        now: datetime,
        minimum: timedelta = timedelta(minutes=1),
    ) -> timedelta | None:
        """How long until some live entry is eligible; None for an empty queue."""
        live = [e for e in queue if not e.dead]
        if not live:
            return None
        if any(e.is_eligible(now) for e in live):
            return minimum
        earliest = min(e.next_attempt_at for e in live if e.next_attempt_at is not None)
        return max(earliest - now, minimum)
