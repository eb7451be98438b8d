"""
Club Membership -- Audit Trail

One audit row per completed business event (success or terminal
failure), none for in-flight retries.

    AuditLogger  -- builds AuditEntry records stamped from an injected clock
    AuditGuard   -- validates, deduplicates and appends entries to the
                    Audit table

AuditGuard.persist() separates two kinds of trouble:

    contract violations  (non-list input, non-AuditEntry items)
        -> raised; the caller has a bug
    storage trouble      (table corrupt, write fails)
        -> logged, operator alerted, 0 returned; the business work that
           already happened is not rolled back or blocked
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from .models import AuditEntry, AuditOutcome
from .notifier import OperatorNotifier
from .storage import TableStorage
from .tables import AUDIT_HEADERS, audit_entry_to_row, audit_ids_from_rows

logger = logging.getLogger(__name__)


class AuditLogger:
    """Factory for AuditEntry records."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self.clock = clock

    def create_entry(
        self,
        type: str,
        outcome: AuditOutcome | str,
        note: str = "",
        error: str = "",
        data: dict[str, Any] | None = None,
        id: str | None = None,
    ) -> AuditEntry:
        return AuditEntry(
            type=type,
            outcome=outcome,
            timestamp=self.clock(),
            note=note,
            error=error,
            structured_data=data,
            id=id,
        )

    def success(self, type: str, note: str = "", data: dict[str, Any] | None = None,
                id: str | None = None) -> AuditEntry:
        return self.create_entry(type, AuditOutcome.SUCCESS, note=note, data=data, id=id)

    def failure(self, type: str, error: str, note: str = "",
                data: dict[str, Any] | None = None, id: str | None = None) -> AuditEntry:
        return self.create_entry(type, AuditOutcome.FAIL, note=note, error=error, data=data, id=id)


class AuditGuard:
    """The only writer of the Audit table."""

    def __init__(
        self,
        storage: TableStorage,
        notifier: OperatorNotifier | None = None,
        table: str = "Audit",
    ) -> None:
        if storage is None:
            raise ValueError("AuditGuard requires a storage backend")
        self.storage = storage
        self.notifier = notifier
        self.table = table

    def persist(self, entries: list[AuditEntry]) -> int:
        """Append *entries* to the audit table; returns how many were written.

        Entries whose id was already seen (earlier in this call, or in a
        row already in the table) are dropped with a warning.

        Raises:
            TypeError: If *entries* is not a list or holds a non-AuditEntry.
        """
        if not isinstance(entries, list):
            raise TypeError(f"Audit entries must be a list, got {type(entries).__name__}")
        for entry in entries:
            if not isinstance(entry, AuditEntry):
                raise TypeError(f"Not an AuditEntry: {entry!r}")
        if not entries:
            return 0

        try:
            headers = self.storage.table_headers(self.table)
            if headers and headers != AUDIT_HEADERS:
                self._report_corruption(headers)
                return 0

            existing = self.storage.read_table(self.table)
            seen = audit_ids_from_rows(existing)
            fresh: list[AuditEntry] = []
            for entry in entries:
                if entry.id:
                    if entry.id in seen:
                        logger.warning("Dropping duplicate audit entry %s (%s/%s)",
                                       entry.id, entry.type, entry.outcome)
                        continue
                    seen.add(entry.id)
                fresh.append(entry)

            if not fresh:
                return 0
            rows = existing + [audit_entry_to_row(e) for e in fresh]
            self.storage.write_table(self.table, rows, AUDIT_HEADERS)
        except Exception as exc:
            logger.exception("Failed to persist %d audit entr(y/ies)", len(entries))
            if self.notifier is not None:
                self.notifier.report_exception("Audit log persistence", exc)
            return 0

        logger.info("Persisted %d audit entr(y/ies)", len(fresh))
        return len(fresh)

    def _report_corruption(self, headers: list[str]) -> None:
        logger.error(
            "Audit table %s has %d column(s) %s; expected %s -- nothing written",
            self.table, len(headers), headers, AUDIT_HEADERS,
        )
        if self.notifier is not None:
            self.notifier.report_problems(
                "Audit table structure is corrupt",
                [f"Found columns: {', '.join(headers) or '(none)'}",
                 f"Expected columns: {', '.join(AUDIT_HEADERS)}"],
                intro=f"No audit entries were written to '{self.table}' until it is repaired.",
            )
