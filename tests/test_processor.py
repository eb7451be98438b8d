"""Tests for club_membership.processor -- business event processing.

Covers:
- Audit contract per queue entry: success -> 1, dead -> 1, retry -> 0
- Retry bookkeeping and backoff on transient failures
- Dead-lettering at the retry ceiling and on permanent errors
- Expiry schedule -> queue generation (latest notice wins, Expiry4 expires)
- Paid transactions: join, renew, pending payments, ambiguity hold-back
- Legacy member migration
- Join-to-renew merge
"""

from datetime import date, datetime, timedelta

import pytest

from club_membership.identity_resolver import AmbiguityKind
from club_membership.models import (
    ActionSpec,
    ActionType,
    ExpiryScheduleEntry,
    Member,
    MemberStatus,
    MigrationRecord,
    PublicGroup,
    QueueEntry,
    Transaction,
)
from club_membership.notifier import LoggingMessenger
from club_membership.processor import (
    AUDIT_AMBIGUOUS,
    AUDIT_DEAD_LETTER,
    AUDIT_EXPIRED_MEMBER,
    AUDIT_MERGE,
    BusinessEventProcessor,
    PermanentActionError,
)
from club_membership.retry_queue import EntryOutcome


NOW = datetime(2025, 3, 1, 9, 0, 0)
TODAY = NOW.date()


# ============================================================================
# Test Data Helpers
# ============================================================================

class RecordingDirectory:
    def __init__(self):
        self.added = []
        self.removed = []

    def add_to_group(self, member_email, group_email):
        self.added.append((member_email, group_email))

    def remove_from_group(self, member_email, group_email):
        self.removed.append((member_email, group_email))


class FailingMessenger:
    """Raises *exc* on every send."""

    def __init__(self, exc=None):
        self.exc = exc or ConnectionError("Error: transient")
        self.calls = 0

    def send(self, message):
        self.calls += 1
        raise self.exc


def _make_specs():
    return {
        ActionType.JOIN: ActionSpec(ActionType.JOIN, "Welcome {{ first }}",
                                    "<p>Expires {{ expires | format_date }}</p>"),
        ActionType.RENEW: ActionSpec(ActionType.RENEW, "Thanks {{ first }}",
                                     "<p>Now expires {{ expires | format_date }}</p>"),
        ActionType.MIGRATE: ActionSpec(ActionType.MIGRATE, "Moved {{ first }}", "<p>Hi</p>"),
        ActionType.EXPIRY1: ActionSpec(ActionType.EXPIRY1, "Expiring soon", "<p>1</p>", -10),
        ActionType.EXPIRY2: ActionSpec(ActionType.EXPIRY2, "Expires today", "<p>2</p>", 0),
        ActionType.EXPIRY3: ActionSpec(ActionType.EXPIRY3, "Expired", "<p>3</p>", 7),
        ActionType.EXPIRY4: ActionSpec(ActionType.EXPIRY4, "Final notice {{ first }}",
                                       "<p>4</p>", 30),
    }


GROUPS = [
    PublicGroup("Members", "members@groups.sc3.club", "auto"),
    PublicGroup("Rides", "rides@groups.sc3.club", "manual"),
]


def _make_processor(messenger=None, directory=None, max_attempts=5):
    return BusinessEventProcessor(
        action_specs=_make_specs(),
        groups=GROUPS,
        messenger=messenger or LoggingMessenger(),
        directory=directory or RecordingDirectory(),
        max_attempts=max_attempts,
        reply_to="membership@sc3.club",
        clock=lambda: NOW,
    )


def _make_member(email="alice@example.com", **overrides):
    defaults = {
        "email": email,
        "first": "Alice",
        "last": "Archer",
        "phone": "831-555-0001",
        "joined": date(2024, 6, 1),
        "period": 1,
        "expires": date(2025, 6, 1),
    }
    defaults.update(overrides)
    return Member(**defaults)


def _make_txn(email="alice@example.com", **overrides):
    defaults = {
        "email": email,
        "first": "Alice",
        "last": "Archer",
        "phone": "831-555-0001",
        "payment": "1 year membership",
        "payable_status": "Paid",
    }
    defaults.update(overrides)
    return Transaction(**defaults)


def _make_entry(entry_id="e1", **overrides):
    defaults = {
        "id": entry_id,
        "recipient": "alice@example.com",
        "subject": "Final notice",
        "body": "<p>4</p>",
        "groups": ["members@groups.sc3.club"],
        "action_type": "Expiry4",
        "created_at": NOW - timedelta(days=1),
    }
    defaults.update(overrides)
    return QueueEntry(**defaults)


# ============================================================================
# Expiration queue consumer
# ============================================================================

class TestProcessQueueEntry:
    """Exactly one audit entry per terminal outcome, none per retry."""

    def test_success(self):
        messenger, directory = LoggingMessenger(), RecordingDirectory()
        result = _make_processor(messenger, directory).process_queue_entry(_make_entry(), NOW)

        assert result.outcome is EntryOutcome.SUCCESS
        assert result.audit_entry is not None
        assert result.audit_entry.type == AUDIT_EXPIRED_MEMBER
        assert result.audit_entry.outcome == "success"
        assert result.audit_entry.id == "e1:success"
        assert directory.removed == [("alice@example.com", "members@groups.sc3.club")]
        assert len(messenger.sent) == 1
        assert messenger.sent[0].reply_to == "membership@sc3.club"

    def test_transient_failure_retries_without_audit(self):
        entry = _make_entry(attempts=2)
        result = _make_processor(FailingMessenger()).process_queue_entry(entry, NOW)

        assert result.outcome is EntryOutcome.RETRY
        assert result.audit_entry is None
        assert result.entry.attempts == 3
        assert result.entry.last_error == "Error: transient"
        assert result.entry.last_attempt_at == NOW
        assert result.entry.next_attempt_at == NOW + timedelta(minutes=20)
        assert not result.entry.dead

    def test_failure_at_ceiling_goes_dead(self):
        entry = _make_entry(attempts=4)
        result = _make_processor(FailingMessenger(), max_attempts=5).process_queue_entry(entry, NOW)

        assert result.outcome is EntryOutcome.DEAD
        assert result.entry.dead
        assert result.entry.attempts == 5
        assert result.audit_entry.type == AUDIT_DEAD_LETTER
        assert result.audit_entry.outcome == "fail"
        assert result.audit_entry.error == "Error: transient"
        assert result.audit_entry.id == "e1:dead"

    def test_permanent_error_goes_dead_immediately(self):
        messenger = FailingMessenger(PermanentActionError("mailbox does not exist"))
        result = _make_processor(messenger).process_queue_entry(_make_entry(), NOW)

        assert result.outcome is EntryOutcome.DEAD
        assert result.entry.attempts == 1
        assert result.audit_entry.structured_data["permanent"] is True

    def test_entry_max_attempts_overrides_global(self):
        entry = _make_entry(max_attempts=1)
        result = _make_processor(FailingMessenger()).process_queue_entry(entry, NOW)
        assert result.outcome is EntryOutcome.DEAD

    def test_directory_failure_is_retried(self):
        class BrokenDirectory(RecordingDirectory):
            def remove_from_group(self, member_email, group_email):
                raise RuntimeError("directory unavailable")

        messenger = LoggingMessenger()
        result = _make_processor(messenger, BrokenDirectory()).process_queue_entry(_make_entry(), NOW)
        assert result.outcome is EntryOutcome.RETRY
        assert messenger.sent == []

    def test_blank_error_message_uses_exception_name(self):
        result = _make_processor(FailingMessenger(TimeoutError())).process_queue_entry(
            _make_entry(), NOW,
        )
        assert result.entry.last_error == "TimeoutError"


class TestProcessExpiredMembers:

    def test_audit_count_matches_terminal_outcomes(self):
        class FlakyMessenger(LoggingMessenger):
            def send(self, message):
                if message.to.startswith("retry"):
                    raise ConnectionError("Error: transient")
                super().send(message)

        entries = [
            _make_entry("ok", recipient="ok@example.com"),
            _make_entry("r", recipient="retry@example.com", attempts=1),
            _make_entry("d", recipient="retry-dead@example.com", attempts=4),
        ]
        batch = _make_processor(FlakyMessenger()).process_expired_members(entries, NOW)

        assert [r.outcome for r in batch.results] == [
            EntryOutcome.SUCCESS, EntryOutcome.RETRY, EntryOutcome.DEAD,
        ]
        assert len(batch.audit_entries) == 2
        assert {a.id for a in batch.audit_entries} == {"ok:success", "d:dead"}

    def test_empty_batch(self):
        batch = _make_processor().process_expired_members([], NOW)
        assert batch.results == []
        assert batch.audit_entries == []


# ============================================================================
# Expiration queue producer
# ============================================================================

class TestGenerateExpirationQueue:

    def test_latest_due_notice_wins(self):
        members = [_make_member()]
        schedule = [
            ExpiryScheduleEntry(TODAY - timedelta(days=3), ActionType.EXPIRY3, "alice@example.com"),
            ExpiryScheduleEntry(TODAY, ActionType.EXPIRY4, "alice@example.com"),
            ExpiryScheduleEntry(TODAY + timedelta(days=5), ActionType.EXPIRY1, "bob@example.com"),
        ]
        result = _make_processor().generate_expiration_queue(members, schedule, NOW)

        assert len(result.entries) == 1
        entry = result.entries[0]
        assert entry.action_type == "Expiry4"
        assert entry.subject == "Final notice Alice"
        assert entry.groups == ["members@groups.sc3.club"]
        assert entry.attempts == 0
        assert result.expired == ["alice@example.com"]
        assert members[0].status is MemberStatus.EXPIRED
        assert result.schedule_consumed == 2
        assert [e.email for e in schedule] == ["bob@example.com"]

    def test_same_day_tie_goes_to_later_notice(self):
        members = [_make_member()]
        schedule = [
            ExpiryScheduleEntry(TODAY, ActionType.EXPIRY4, "alice@example.com"),
            ExpiryScheduleEntry(TODAY, ActionType.EXPIRY2, "alice@example.com"),
            ExpiryScheduleEntry(TODAY, ActionType.EXPIRY3, "alice@example.com"),
        ]
        result = _make_processor().generate_expiration_queue(members, schedule, NOW)
        assert [e.action_type for e in result.entries] == ["Expiry4"]

    def test_action_rank_follows_declaration_order(self):
        assert [a.rank for a in ActionType] == list(range(len(ActionType)))
        assert ActionType.EXPIRY4.rank > ActionType.EXPIRY1.rank

    def test_non_final_notice_keeps_member_active(self):
        members = [_make_member()]
        schedule = [ExpiryScheduleEntry(TODAY, ActionType.EXPIRY2, "alice@example.com")]
        result = _make_processor().generate_expiration_queue(members, schedule, NOW)
        assert result.entries[0].groups == []
        assert members[0].is_active

    def test_unknown_member_skipped(self):
        schedule = [ExpiryScheduleEntry(TODAY, ActionType.EXPIRY2, "ghost@example.com")]
        result = _make_processor().generate_expiration_queue([_make_member()], schedule, NOW)
        assert result.entries == []
        assert result.schedule_consumed == 1
        assert schedule == []

    def test_nothing_due(self):
        schedule = [ExpiryScheduleEntry(TODAY + timedelta(days=1), ActionType.EXPIRY1,
                                        "alice@example.com")]
        result = _make_processor().generate_expiration_queue([_make_member()], schedule, NOW)
        assert result.schedule_consumed == 0
        assert len(schedule) == 1


# ============================================================================
# Paid transactions
# ============================================================================

class TestProcessPaidTransactions:

    def test_join(self):
        messenger, directory = LoggingMessenger(), RecordingDirectory()
        members, schedule = [], []
        txn = _make_txn("new@example.com", directory="Share Name, Share Email")
        result = _make_processor(messenger, directory).process_paid_transactions(
            [txn], members, schedule,
        )

        assert result.joined == ["new@example.com"]
        assert result.records_changed
        assert len(members) == 1
        member = members[0]
        assert member.joined == TODAY
        assert member.expires == date(2026, 3, 1)
        assert member.share_name and member.share_email and not member.share_phone
        assert directory.added == [("new@example.com", "members@groups.sc3.club")]
        assert messenger.sent[0].subject == "Welcome Alice"
        assert len(schedule) == 4
        assert txn.processed == TODAY
        assert [a.type for a in result.audit_entries] == ["Join"]

    def test_renew_extends_from_current_expiry(self):
        messenger = LoggingMessenger()
        members = [_make_member()]
        schedule = [ExpiryScheduleEntry(date(2025, 5, 22), ActionType.EXPIRY1, "alice@example.com")]
        txn = _make_txn(payment="2 year membership")
        result = _make_processor(messenger).process_paid_transactions([txn], members, schedule)

        assert result.renewed == ["alice@example.com"]
        assert members[0].expires == date(2027, 6, 1)
        assert members[0].period == 2
        assert members[0].renewed_on == TODAY
        assert members[0].joined == date(2024, 6, 1)
        assert all(e.date > date(2027, 1, 1) for e in schedule)
        assert len(schedule) == 4
        assert messenger.sent[0].subject == "Thanks Alice"

    def test_renew_fills_only_blank_contact_fields(self):
        members = [_make_member(phone="")]
        txn = _make_txn(phone="831-555-9999", email="Alice@Example.com")
        _make_processor().process_paid_transactions([txn], members, [])
        assert members[0].phone == "831-555-9999"
        assert members[0].email == "alice@example.com"

    def test_expired_member_rejoins(self):
        members = [_make_member(status=MemberStatus.EXPIRED)]
        result = _make_processor().process_paid_transactions([_make_txn()], members, [])
        assert result.joined == ["alice@example.com"]
        assert len(members) == 2

    def test_unpaid_and_processed_skipped(self):
        members = []
        txns = [
            _make_txn("a@example.com", payable_status=""),
            _make_txn("b@example.com", processed=date(2025, 1, 1)),
        ]
        result = _make_processor().process_paid_transactions(txns, members, [])
        assert result.has_pending_payments
        assert not result.records_changed
        assert members == []
        assert result.audit_entries == []

    def test_ambiguous_transaction_held_back(self):
        messenger = LoggingMessenger()
        members = [
            _make_member("shared@example.com", phone="111"),
            _make_member("shared@example.com", phone="222"),
        ]
        before = [m.expires for m in members]
        txn = _make_txn("shared@example.com", phone="")
        result = _make_processor(messenger).process_paid_transactions([txn], members, [])

        assert len(result.ambiguous) == 1
        held = result.ambiguous[0]
        assert held.kind is AmbiguityKind.SHARED_CHANNEL
        assert held.candidate_rows == [2, 3]
        assert [m.expires for m in members] == before
        assert len(members) == 2
        assert messenger.sent == []
        assert txn.processed is None
        assert not result.records_changed
        assert len(result.audit_entries) == 1
        assert result.audit_entries[0].type == AUDIT_AMBIGUOUS
        assert result.audit_entries[0].outcome == "fail"

    def test_send_failure_leaves_members_untouched(self):
        members = []
        result = _make_processor(FailingMessenger()).process_paid_transactions(
            [_make_txn("new@example.com")], members, [],
        )
        assert members == []
        assert len(result.errors) == 1
        assert result.errors[0].row == 2
        assert result.audit_entries[0].outcome == "fail"
        assert result.audit_entries[0].type == "Join"

    def test_missing_spec_is_an_error(self):
        processor = _make_processor()
        del processor.specs[ActionType.JOIN]
        result = processor.process_paid_transactions([_make_txn("new@example.com")], [], [])
        assert "No action spec for Join" in result.errors[0].message


# ============================================================================
# Migrations
# ============================================================================

class TestMigrateMembers:

    def _record(self, email="old@example.com", **member_overrides):
        member = _make_member(email, **member_overrides)
        return MigrationRecord(member=member, migrate_me=True, groups=["rides@groups.sc3.club"])

    def test_active_migrant(self):
        messenger, directory = LoggingMessenger(), RecordingDirectory()
        members, schedule = [], []
        record = self._record()
        result = _make_processor(messenger, directory).migrate_members([record], members, schedule)

        assert result.migrated == ["old@example.com"]
        assert members[0].migrated == TODAY
        assert record.member.migrated == TODAY
        assert directory.added == [("old@example.com", "rides@groups.sc3.club")]
        assert messenger.sent[0].subject == "Moved Alice"
        assert len(schedule) == 4
        assert result.audit_entries[0].outcome == "success"

    def test_inactive_migrant_recorded_only(self):
        messenger = LoggingMessenger()
        members = []
        record = self._record(status=MemberStatus.EXPIRED)
        result = _make_processor(messenger).migrate_members([record], members, [])
        assert result.migrated == ["old@example.com"]
        assert messenger.sent == []
        assert members[0].status is MemberStatus.EXPIRED

    def test_already_active_skipped(self):
        members = [_make_member("old@example.com")]
        result = _make_processor().migrate_members([self._record()], members, [])
        assert result.skipped == 1
        assert len(members) == 1

    def test_not_flagged_or_already_migrated(self):
        unflagged = MigrationRecord(member=_make_member("x@example.com"), migrate_me=False)
        done = self._record("y@example.com", migrated=date(2024, 1, 1))
        result = _make_processor().migrate_members([unflagged, done], [], [])
        assert result.migrated == []
        assert result.audit_entries == []


# ============================================================================
# Join-to-renew merge
# ============================================================================

class TestConvertJoinToRenew:

    def test_merge(self):
        members = [
            _make_member("old@example.com", joined=date(2024, 1, 1), expires=date(2025, 1, 1)),
            _make_member("new@example.com", joined=date(2024, 12, 1), expires=date(2025, 12, 1),
                         period=1),
        ]
        schedule = [ExpiryScheduleEntry(date(2025, 11, 21), ActionType.EXPIRY1, "new@example.com")]
        result = _make_processor().convert_join_to_renew(0, 1, members, schedule)

        assert result.success
        assert len(members) == 1
        merged = members[0]
        assert merged.joined == date(2024, 1, 1)
        assert merged.expires == date(2025, 12, 1)
        assert merged.renewed_on == date(2024, 12, 1)
        assert merged.email == "new@example.com"
        assert len(schedule) == 4
        assert result.audit_entry.type == AUDIT_MERGE
        assert result.audit_entry.outcome == "success"

    @pytest.mark.parametrize("a,b,fragment", [
        (0, 0, "itself"),
        (0, 9, "does not exist"),
        (0, 2, "same person"),
    ])
    def test_refused(self, a, b, fragment):
        members = [
            _make_member("old@example.com", joined=date(2024, 1, 1), expires=date(2025, 1, 1)),
            _make_member("new@example.com", joined=date(2024, 12, 1), expires=date(2025, 12, 1)),
            _make_member("zed@example.com", first="Zed", last="Zulu", phone="999",
                         joined=date(2024, 12, 1)),
        ]
        result = _make_processor().convert_join_to_renew(a, b, members, [])
        assert not result.success
        assert fragment in result.message
        assert len(members) == 3
        assert result.audit_entry.outcome == "fail"

    def test_joined_after_expiry_refused(self):
        members = [
            _make_member("old@example.com", joined=date(2023, 1, 1), expires=date(2024, 1, 1)),
            _make_member("new@example.com", joined=date(2024, 6, 1), expires=date(2025, 6, 1)),
        ]
        result = _make_processor().convert_join_to_renew(0, 1, members, [])
        assert not result.success
        assert "expired" in result.message
