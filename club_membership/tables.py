"""Row mapping layer between table storage and the record dataclasses.

Storage hands out rows as ``{header: cell value}`` dicts.  This module is
the only place that knows the column headers; everything past it works
with named fields.  Cell coercion follows the same rules for every table:
nullish markers (``""``, ``#N/A`` ...) are empty, booleans accept
``TRUE``/``yes``/``1``, dates accept real date cells, ISO strings and the
usual US formats.

Writers take an optional ``base`` row so columns this system does not
model (form answers, formulas, notes) survive a read-modify-write.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime
from typing import Any

from .models import (
    ActionSpec,
    ActionType,
    AuditEntry,
    ExpiryScheduleEntry,
    Member,
    MemberStatus,
    MigrationRecord,
    PublicGroup,
    QueueEntry,
    Transaction,
)

logger = logging.getLogger(__name__)

Row = dict[str, Any]


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------

QUEUE_HEADERS = [
    "id", "createdAt", "status", "actionType", "recipient", "subject", "body",
    "groups", "attempts", "lastAttemptAt", "lastError", "nextAttemptAt",
    "maxAttempts", "dead",
]

# Fixed six columns, in this order.
AUDIT_HEADERS = ["Timestamp", "Type", "Outcome", "Note", "Error", "StructuredDataJSON"]

MEMBER_HEADERS = [
    "Email", "First", "Last", "Phone", "Joined", "Period", "Expires",
    "Renewed On", "Status", "Directory Share Name", "Directory Share Email",
    "Directory Share Phone", "Migrated",
]

TRANSACTION_HEADERS = [
    "Timestamp", "Email Address", "First Name", "Last Name", "Phone",
    "Payment", "Directory", "Payable Status", "Processed",
]

SCHEDULE_HEADERS = ["Date", "Type", "Email"]

ACTION_SPEC_HEADERS = ["Type", "Offset", "Subject", "Body"]

GROUP_HEADERS = ["Name", "Email", "Subscription"]

AMBIGUOUS_HEADERS = [
    "Timestamp", "Email", "First", "Last", "Phone", "Payment", "Kind",
    "CandidateRows", "Note",
]

GROUP_MEMBERSHIP_HEADERS = ["Group", "Member"]

# Key inside StructuredDataJSON carrying the audit entry id.
AUDIT_ID_KEY = "auditId"


# ---------------------------------------------------------------------------
# Cell coercion helpers
# ---------------------------------------------------------------------------

_NULL_SIGNALS: set[str | None] = {"", "#N/A", "N/A", "#REF!", "None", None}

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%b %d, %Y", "%B %d, %Y")


def _clean_str(val) -> str:
    """Convert a cell value to a stripped string.  None becomes ``""``."""
    if val is None:
        return ""
    s = str(val).strip()
    return "" if s in _NULL_SIGNALS else s


def _parse_bool(val) -> bool:
    """Parse a boolean cell value.

    Handles ``True``, ``False``, ``"TRUE"``, ``"FALSE"``, ``1``, ``0``,
    ``"yes"``/``"no"``.
    """
    if val is None:
        return False
    if isinstance(val, bool):
        return val
    s = str(val).strip().lower()
    return s in ("true", "1", "yes", "y", "x")


def _parse_int(val, default: int = 0) -> int:
    """Parse an integer cell value, returning *default* on failure."""
    if val is None or _clean_str(val) == "":
        return default
    try:
        return int(float(val))
    except (ValueError, TypeError):
        return default


def _parse_date(val, context: str = "") -> date | None:
    """Parse a date cell value.

    openpyxl returns ``datetime`` objects for date-typed cells; strings
    are tried against ISO and common US formats.
    """
    if val is None:
        return None
    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val

    s = _clean_str(val)
    if not s:
        return None
    try:
        return datetime.fromisoformat(s).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue

    logger.warning("%s: could not parse date %r", context or "cell", val)
    return None


def _parse_datetime(val, context: str = "") -> datetime | None:
    """Parse a timestamp cell.  Unparseable values are treated as empty."""
    if val is None:
        return None
    if isinstance(val, datetime):
        return val
    if isinstance(val, date):
        return datetime(val.year, val.month, val.day)

    s = _clean_str(val)
    if not s:
        return None
    try:
        parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("%s: could not parse timestamp %r -- treating as empty",
                       context or "cell", val)
        return None
    # Queue timestamps are naive local time throughout.
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _format_datetime(val: datetime | None) -> str:
    return val.isoformat(timespec="seconds") if val else ""


def _is_valid_email(email: str) -> bool:
    return bool(_EMAIL_PATTERN.match(email))


def _merge(base: Row | None, values: Row) -> Row:
    row = dict(base) if base else {}
    row.update(values)
    return row


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

def queue_entry_to_row(entry: QueueEntry, status: str | None = None) -> Row:
    return {
        "id": entry.id,
        "createdAt": _format_datetime(entry.created_at),
        "status": status or ("dead" if entry.dead else "pending"),
        "actionType": entry.action_type,
        "recipient": entry.recipient,
        "subject": entry.subject,
        "body": entry.body,
        "groups": ",".join(entry.groups),
        "attempts": entry.attempts,
        "lastAttemptAt": _format_datetime(entry.last_attempt_at),
        "lastError": entry.last_error,
        "nextAttemptAt": _format_datetime(entry.next_attempt_at),
        "maxAttempts": entry.max_attempts if entry.max_attempts is not None else "",
        "dead": entry.dead,
    }


def queue_entry_from_row(row: Row) -> QueueEntry:
    """Build a QueueEntry from a stored row.

    Raises:
        ValueError: Listing every problem with the row.
    """
    problems: list[str] = []

    entry_id = _clean_str(row.get("id"))
    if not entry_id:
        problems.append("id is required")

    recipient = _clean_str(row.get("recipient"))
    if not recipient:
        problems.append("recipient is required")
    elif not _is_valid_email(recipient):
        problems.append(f"recipient {recipient!r} is not a valid email address")

    subject = _clean_str(row.get("subject"))
    if not subject:
        problems.append("subject is required")

    body = row.get("body")
    body = "" if body is None else str(body)
    if not body.strip():
        problems.append("body is required")

    raw_attempts = row.get("attempts")
    attempts = 0
    if _clean_str(raw_attempts):
        try:
            attempts = int(float(raw_attempts))
        except (ValueError, TypeError):
            problems.append(f"attempts {raw_attempts!r} is not a number")
        else:
            if attempts < 0:
                problems.append(f"attempts must be >= 0, got {attempts}")

    raw_max = row.get("maxAttempts")
    max_attempts: int | None = None
    if _clean_str(raw_max):
        try:
            max_attempts = int(float(raw_max))
        except (ValueError, TypeError):
            problems.append(f"maxAttempts {raw_max!r} is not a number")

    if problems:
        raise ValueError("; ".join(problems))

    context = f"queue entry {entry_id}"
    groups = [g.strip() for g in _clean_str(row.get("groups")).split(",") if g.strip()]
    return QueueEntry(
        id=entry_id,
        recipient=recipient,
        subject=subject,
        body=body,
        groups=groups,
        action_type=_clean_str(row.get("actionType")),
        created_at=_parse_datetime(row.get("createdAt"), context),
        attempts=attempts,
        last_attempt_at=_parse_datetime(row.get("lastAttemptAt"), context),
        last_error=_clean_str(row.get("lastError")),
        next_attempt_at=_parse_datetime(row.get("nextAttemptAt"), context),
        max_attempts=max_attempts,
        dead=_parse_bool(row.get("dead")),
    )


def validate_queue_rows(rows: list[Row]) -> tuple[list[QueueEntry], list[Row], list[str]]:
    """Split stored queue rows into valid entries and rejected rows.

    Returns ``(entries, rejected_rows, errors)``; each error names its
    sheet row number (header is row 1).
    """
    entries: list[QueueEntry] = []
    rejected: list[Row] = []
    errors: list[str] = []
    for i, row in enumerate(rows):
        try:
            entries.append(queue_entry_from_row(row))
        except ValueError as exc:
            rejected.append(row)
            errors.append(f"Row {i + 2}: {exc}")
    if errors:
        logger.warning("Skipped %d invalid queue row(s)", len(errors))
    return entries, rejected, errors


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

def audit_entry_to_row(entry: AuditEntry) -> Row:
    data = dict(entry.structured_data or {})
    if entry.id:
        data[AUDIT_ID_KEY] = entry.id
    return {
        "Timestamp": entry.timestamp,
        "Type": entry.type,
        "Outcome": entry.outcome,
        "Note": entry.note,
        "Error": entry.error,
        "StructuredDataJSON": json.dumps(data, indent=2, default=str) if data else "",
    }


def audit_ids_from_rows(rows: list[Row]) -> set[str]:
    """Audit ids already persisted (read back out of StructuredDataJSON)."""
    ids: set[str] = set()
    for row in rows:
        raw = row.get("StructuredDataJSON")
        if not raw or not isinstance(raw, str):
            continue
        try:
            data = json.loads(raw)
        except ValueError:
            continue
        if isinstance(data, dict) and data.get(AUDIT_ID_KEY):
            ids.add(str(data[AUDIT_ID_KEY]))
    return ids


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------

def _parse_status(val) -> MemberStatus:
    s = _clean_str(val).lower()
    if s == MemberStatus.EXPIRED.value.lower():
        return MemberStatus.EXPIRED
    return MemberStatus.ACTIVE


def member_from_row(row: Row) -> Member:
    email = _clean_str(row.get("Email"))
    context = f"member {email or '(no email)'}"
    return Member(
        email=email,
        first=_clean_str(row.get("First")),
        last=_clean_str(row.get("Last")),
        phone=_clean_str(row.get("Phone")),
        joined=_parse_date(row.get("Joined"), context),
        period=_parse_int(row.get("Period"), default=1),
        expires=_parse_date(row.get("Expires"), context),
        renewed_on=_parse_date(row.get("Renewed On"), context),
        status=_parse_status(row.get("Status")),
        share_name=_parse_bool(row.get("Directory Share Name")),
        share_email=_parse_bool(row.get("Directory Share Email")),
        share_phone=_parse_bool(row.get("Directory Share Phone")),
        migrated=_parse_date(row.get("Migrated"), context),
    )


def member_to_row(member: Member, base: Row | None = None) -> Row:
    return _merge(base, {
        "Email": member.email,
        "First": member.first,
        "Last": member.last,
        "Phone": member.phone,
        "Joined": member.joined,
        "Period": member.period,
        "Expires": member.expires,
        "Renewed On": member.renewed_on or "",
        "Status": member.status.value,
        "Directory Share Name": member.share_name,
        "Directory Share Email": member.share_email,
        "Directory Share Phone": member.share_phone,
        "Migrated": member.migrated or "",
    })


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

def transaction_from_row(row: Row) -> Transaction:
    email = _clean_str(row.get("Email Address"))
    context = f"transaction {email or '(no email)'}"
    return Transaction(
        email=email,
        first=_clean_str(row.get("First Name")),
        last=_clean_str(row.get("Last Name")),
        phone=_clean_str(row.get("Phone")),
        payment=_clean_str(row.get("Payment")),
        payable_status=_clean_str(row.get("Payable Status")),
        directory=_clean_str(row.get("Directory")),
        processed=_parse_date(row.get("Processed"), context),
        timestamp=_parse_date(row.get("Timestamp"), context),
    )


def transaction_to_row(txn: Transaction, base: Row | None = None) -> Row:
    return _merge(base, {
        "Timestamp": txn.timestamp or "",
        "Email Address": txn.email,
        "First Name": txn.first,
        "Last Name": txn.last,
        "Phone": txn.phone,
        "Payment": txn.payment,
        "Directory": txn.directory,
        "Payable Status": txn.payable_status,
        "Processed": txn.processed or "",
    })


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------

def migration_from_row(row: Row) -> MigrationRecord:
    """A MigratingMembers row; group columns are headed by the group address."""
    groups = [
        key.strip() for key, val in row.items()
        if isinstance(key, str) and "@" in key and _parse_bool(val)
    ]
    directory = _parse_bool(row.get("Directory"))
    member = member_from_row(row)
    if directory:
        member.share_name = member.share_email = member.share_phone = True
    return MigrationRecord(
        member=member,
        migrate_me=_parse_bool(row.get("Migrate Me")),
        groups=groups,
    )


def migration_to_row(record: MigrationRecord, base: Row | None = None) -> Row:
    """Only the Migrated marker is written back to the migration sheet."""
    return _merge(base, {"Migrated": record.member.migrated or ""})


# ---------------------------------------------------------------------------
# Expiry schedule
# ---------------------------------------------------------------------------

def schedule_entry_from_row(row: Row) -> ExpiryScheduleEntry | None:
    email = _clean_str(row.get("Email"))
    when = _parse_date(row.get("Date"), f"schedule entry {email}")
    label = _clean_str(row.get("Type"))
    if not email or when is None or not label:
        logger.warning("Ignoring incomplete expiry schedule row: %s", row)
        return None
    try:
        action = ActionType.from_label(label)
    except ValueError:
        logger.warning("Ignoring expiry schedule row with unknown type %r", label)
        return None
    return ExpiryScheduleEntry(date=when, action=action, email=email)


def schedule_from_rows(rows: list[Row]) -> list[ExpiryScheduleEntry]:
    entries = (schedule_entry_from_row(row) for row in rows)
    return [e for e in entries if e is not None]


def schedule_entry_to_row(entry: ExpiryScheduleEntry) -> Row:
    return {"Date": entry.date, "Type": entry.action.value, "Email": entry.email}


# ---------------------------------------------------------------------------
# Reference tables
# ---------------------------------------------------------------------------

def action_specs_from_rows(rows: list[Row]) -> dict[ActionType, ActionSpec]:
    specs: dict[ActionType, ActionSpec] = {}
    for row in rows:
        label = _clean_str(row.get("Type"))
        if not label:
            continue
        try:
            action = ActionType.from_label(label)
        except ValueError:
            logger.warning("Ignoring action spec with unknown type %r", label)
            continue
        offset = row.get("Offset")
        specs[action] = ActionSpec(
            action=action,
            subject=_clean_str(row.get("Subject")),
            body="" if row.get("Body") is None else str(row.get("Body")),
            offset_days=_parse_int(offset) if _clean_str(offset) else None,
        )
    return specs


def groups_from_rows(rows: list[Row]) -> list[PublicGroup]:
    groups: list[PublicGroup] = []
    for row in rows:
        email = _clean_str(row.get("Email"))
        if not email:
            continue
        groups.append(PublicGroup(
            name=_clean_str(row.get("Name")) or email,
            email=email,
            subscription=_clean_str(row.get("Subscription")) or "manual",
        ))
    return groups


# ---------------------------------------------------------------------------
# Manual review
# ---------------------------------------------------------------------------

def ambiguous_transaction_to_row(
    txn: Transaction,
    kind: str,
    candidate_rows: list[int],
    note: str,
    timestamp: datetime,
) -> Row:
    return {
        "Timestamp": timestamp,
        "Email": txn.email,
        "First": txn.first,
        "Last": txn.last,
        "Phone": txn.phone,
        "Payment": txn.payment,
        "Kind": kind,
        "CandidateRows": ", ".join(str(r) for r in candidate_rows),
        "Note": note,
    }
