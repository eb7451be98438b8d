"""Data models for the club membership engine.

All models are plain dataclasses with type hints.  No ORM, no Pydantic --
the storage boundary (``tables.py``) is the only place that knows about
spreadsheet column names; everything in here uses named fields.

Records:
  Member, Transaction, MigrationRecord      -- membership system of record
  ActionSpec, PublicGroup                   -- reference tables
  ExpiryScheduleEntry                       -- future expiry notifications
  QueueEntry                                -- one pending business action
  AuditEntry                                -- one completed business event
  Message                                   -- one outbound email
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ActionType(Enum):
    """Lifecycle actions that have a message template in the ActionSpecs table."""

    JOIN = "Join"
    RENEW = "Renew"
    MIGRATE = "Migrate"
    EXPIRY1 = "Expiry1"
    EXPIRY2 = "Expiry2"
    EXPIRY3 = "Expiry3"
    EXPIRY4 = "Expiry4"

    @property
    def is_expiry(self) -> bool:
        return self.value.startswith("Expiry")

    @property
    def rank(self) -> int:
        """Position in declaration order; later expiry notices rank higher."""
        return list(ActionType).index(self)

    @classmethod
    def from_label(cls, label: str) -> ActionType:
        """Case-insensitive lookup by label, e.g. ``"expiry2"``."""
        wanted = (label or "").strip().lower()
        for member in cls:
            if member.value.lower() == wanted:
                return member
        raise ValueError(f"Unknown action type: {label!r}")


class MemberStatus(Enum):
    ACTIVE = "Active"
    EXPIRED = "Expired"


class AuditOutcome(Enum):
    """The only two terminal outcomes a business event can have."""

    SUCCESS = "success"
    FAIL = "fail"


# ---------------------------------------------------------------------------
# Membership records
# ---------------------------------------------------------------------------

@dataclass
class Member:
    """A row of the ActiveMembers table."""

    email: str
    first: str = ""
    last: str = ""
    phone: str = ""
    joined: date | None = None
    period: int = 1                         # membership length in years
    expires: date | None = None
    renewed_on: date | None = None
    status: MemberStatus = MemberStatus.ACTIVE

    # --- directory sharing preferences ---
    share_name: bool = False
    share_email: bool = False
    share_phone: bool = False

    migrated: date | None = None

    # The stored row this member was read from; carries columns the model
    # does not know about through a write-back.  None for new members.
    source_row: dict[str, Any] | None = field(default=None, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.status is MemberStatus.ACTIVE

    @property
    def full_name(self) -> str:
        return f"{self.first} {self.last}".strip()


@dataclass
class Transaction:
    """A payment/registration row of the Transactions table."""

    email: str
    first: str = ""
    last: str = ""
    phone: str = ""
    payment: str = ""                       # free text, e.g. "2 year membership"
    payable_status: str = ""
    directory: str = ""                     # free text sharing preferences
    processed: date | None = None
    timestamp: date | None = None

    @property
    def is_paid(self) -> bool:
        return self.payable_status.strip().lower().startswith("paid")


@dataclass
class MigrationRecord:
    """A row of the MigratingMembers table.

    ``groups`` holds the group addresses flagged for this person (columns
    whose header is a group email and whose cell is truthy).
    """

    member: Member
    migrate_me: bool = False
    groups: list[str] = field(default_factory=list)

    @property
    def email(self) -> str:
        return self.member.email


# ---------------------------------------------------------------------------
# Reference tables
# ---------------------------------------------------------------------------

@dataclass
class ActionSpec:
    """Message template for one action type.

    ``subject`` and ``body`` are Jinja2 templates rendered against a
    member.  ``offset_days`` is only meaningful for Expiry actions and is
    relative to the member's expiry date (negative = before).
    """

    action: ActionType
    subject: str
    body: str
    offset_days: int | None = None


@dataclass
class PublicGroup:
    """A mailing/directory group members may belong to."""

    name: str
    email: str
    subscription: str = "auto"

    @property
    def is_auto(self) -> bool:
        return self.subscription.strip().lower() == "auto"


@dataclass
class ExpiryScheduleEntry:
    """A pending expiry notification for one member on one date."""

    date: date
    action: ActionType
    email: str


@dataclass
class Message:
    """One outbound email."""

    to: str
    subject: str
    html_body: str
    reply_to: str = ""


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

def new_entry_id() -> str:
    return uuid.uuid4().hex


@dataclass
class QueueEntry:
    """One pending business action in the expiration queue.

    Eligibility: not dead, and ``next_attempt_at`` is unset or not in the
    future.  ``max_attempts`` overrides the global retry ceiling when set.
    """

    id: str
    recipient: str
    subject: str
    body: str
    groups: list[str] = field(default_factory=list)
    action_type: str = ""
    created_at: datetime | None = None

    # --- retry bookkeeping ---
    attempts: int = 0
    last_attempt_at: datetime | None = None
    last_error: str = ""
    next_attempt_at: datetime | None = None
    max_attempts: int | None = None
    dead: bool = False

    def is_eligible(self, now: datetime) -> bool:
        if self.dead:
            return False
        return self.next_attempt_at is None or self.next_attempt_at <= now

    def effective_max_attempts(self, default: int) -> int:
        return self.max_attempts if self.max_attempts is not None else default


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

@dataclass
class AuditEntry:
    """One audit record: exactly one per completed business event.

    ``id`` is the deduplication key.  It is not one of the six persisted
    columns; it rides inside StructuredDataJSON under ``auditId``.
    """

    type: str
    outcome: str
    timestamp: datetime = field(default_factory=datetime.now)
    note: str = ""
    error: str = ""
    structured_data: dict[str, Any] | None = None
    id: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.outcome, AuditOutcome):
            self.outcome = self.outcome.value
        if not self.type or not str(self.type).strip():
            raise ValueError("AuditEntry requires a non-empty type")
        if not self.outcome or not str(self.outcome).strip():
            raise ValueError("AuditEntry requires a non-empty outcome")
        if self.outcome not in {o.value for o in AuditOutcome}:
            raise ValueError(
                f"AuditEntry outcome must be 'success' or 'fail', got {self.outcome!r}"
            )

    @property
    def is_success(self) -> bool:
        return self.outcome == AuditOutcome.SUCCESS.value
