"""Membership date and period rules.

Pure helpers shared by the processor: membership period parsing,
expiry date arithmetic, directory sharing flags and expiry schedule
construction.
"""

from __future__ import annotations

import calendar
import re
from datetime import date, datetime, timedelta

from .models import ActionSpec, ActionType, ExpiryScheduleEntry


_PERIOD_PATTERN = re.compile(r"(\d+)\s*year", re.IGNORECASE)


def get_period(payment: str | None) -> int:
    """Membership length in years from a payment description.

    ``"2 year membership"`` -> 2.  Anything without an ``<n> year`` clause
    is a one-year membership.
    """
    if not payment:
        return 1
    match = _PERIOD_PATTERN.search(payment)
    return int(match.group(1)) if match else 1


def as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def add_days(d: date, days: int = 0) -> date:
    return as_date(d) + timedelta(days=days)


def add_years(d: date, years: int = 0) -> date:
    """Add calendar years, clamping Feb 29 to Feb 28 in non-leap years."""
    d = as_date(d)
    year = d.year + years
    day = min(d.day, calendar.monthrange(year, d.month)[1])
    return d.replace(year=year, day=day)


def calculate_expiration_date(
    reference: date | None,
    expires: date | None,
    period: int = 1,
) -> date:
    """Add *period* years to the later of *reference* and *expires*.

    Renewing early extends from the current expiry; renewing late
    extends from today.

    Raises:
        ValueError: If either date is missing.
    """
    if reference is None:
        raise ValueError("No reference date provided")
    if expires is None:
        raise ValueError("No expiration date provided")
    start = max(as_date(reference), as_date(expires))
    return add_years(start, period)


def extract_directory_sharing(directory: str | None) -> dict[str, bool]:
    """Parse the free-text Directory answer into the three sharing flags."""
    text = (directory or "").lower()
    return {
        "share_name": "share name" in text,
        "share_email": "share email" in text,
        "share_phone": "share phone" in text,
    }


def create_schedule_entries(
    email: str,
    expires: date,
    specs: dict[ActionType, ActionSpec],
    today: date,
) -> list[ExpiryScheduleEntry]:
    """One schedule entry per Expiry spec, dated ``expires + offset``.

    Entries that would fall on or before *today* are not created.
    """
    entries: list[ExpiryScheduleEntry] = []
    for spec in specs.values():
        if not spec.action.is_expiry:
            continue
        when = add_days(expires, spec.offset_days or 0)
        if when <= as_date(today):
            continue
        entries.append(ExpiryScheduleEntry(date=when, action=spec.action, email=email))
    entries.sort(key=lambda e: (e.date, e.action.value))
    return entries


def remove_schedule_entries(email: str, schedule: list[ExpiryScheduleEntry]) -> int:
    """Drop every schedule entry for *email* in place; returns how many."""
    before = len(schedule)
    schedule[:] = [e for e in schedule if e.email.lower() != email.lower()]
    return before - len(schedule)
