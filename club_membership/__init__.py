"""Club Membership - lifecycle automation over a spreadsheet system of record.

Joins, renewals, migrations and expirations, driven by a durable retry
queue with exponential backoff and dead-lettering, a member identity
resolver, and an audit trail with exactly one record per business event.
"""

from .models import (
    ActionSpec,
    ActionType,
    AuditEntry,
    AuditOutcome,
    ExpiryScheduleEntry,
    Member,
    MemberStatus,
    Message,
    MigrationRecord,
    PublicGroup,
    QueueEntry,
    Transaction,
)

from .service import MembershipService

__all__ = [
    "ActionSpec",
    "ActionType",
    "AuditEntry",
    "AuditOutcome",
    "ExpiryScheduleEntry",
    "Member",
    "MemberStatus",
    "MembershipService",
    "Message",
    "MigrationRecord",
    "PublicGroup",
    "QueueEntry",
    "Transaction",
]
