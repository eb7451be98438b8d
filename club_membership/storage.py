"""
Club Membership -- Table Storage

The membership workbook is the system of record.  Every table is a sheet
whose first row holds the column headers; rows are handed out as
``{header: value}`` dicts and written back with a full replace.

    TableStorage      -- the protocol the engine depends on
    WorkbookStorage   -- openpyxl-backed .xlsx file
    InMemoryStorage   -- dict-backed, for tests and dry runs

Single writer per invocation is assumed (the host scheduler never runs
two batches at once), so there is no locking.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Protocol

import openpyxl
from openpyxl.workbook.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

logger = logging.getLogger(__name__)

Row = dict[str, Any]


class TableStorage(Protocol):
    def read_table(self, name: str) -> list[Row]: ...

    def write_table(self, name: str, rows: list[Row], headers: list[str] | None = None) -> None: ...

    def table_headers(self, name: str) -> list[str]: ...

    def table_names(self) -> list[str]: ...


def _resolve_headers(existing: list[str], requested: list[str] | None, rows: list[Row]) -> list[str]:
    """Column order for a write: requested (or existing) headers, then any new keys."""
    headers = list(requested) if requested else list(existing)
    seen = set(headers)
    for row in rows:
        for key in row:
            if key not in seen:
                headers.append(key)
                seen.add(key)
    return headers


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryStorage:
    """Tables held in a dict.  Reads and writes copy, like a real store."""

    def __init__(self, tables: dict[str, list[Row]] | None = None) -> None:
        self._headers: dict[str, list[str]] = {}
        self._rows: dict[str, list[Row]] = {}
        for name, rows in (tables or {}).items():
            self.write_table(name, rows)

    @classmethod
    def snapshot_of(cls, storage: TableStorage) -> InMemoryStorage:
        """Copy every table of *storage* (used for dry runs)."""
        snapshot = cls()
        for name in storage.table_names():
            snapshot.write_table(name, storage.read_table(name), storage.table_headers(name))
        return snapshot

    def read_table(self, name: str) -> list[Row]:
        return copy.deepcopy(self._rows.get(name, []))

    def write_table(self, name: str, rows: list[Row], headers: list[str] | None = None) -> None:
        self._headers[name] = _resolve_headers(self._headers.get(name, []), headers, rows)
        self._rows[name] = copy.deepcopy(list(rows))

    def table_headers(self, name: str) -> list[str]:
        return list(self._headers.get(name, []))

    def table_names(self) -> list[str]:
        return list(self._rows)


# ---------------------------------------------------------------------------
# Workbook (openpyxl)
# ---------------------------------------------------------------------------

class WorkbookStorage:
    """Tables stored as sheets of an .xlsx workbook.

    Formulas are kept as formula strings (``data_only=False``) so that a
    read-modify-write of a sheet does not flatten them.  Every write
    saves the workbook.
    """

    def __init__(self, path: str | Path, create: bool = False) -> None:
        self.path = Path(path)
        if self.path.exists():
            logger.info("Opening membership workbook: %s", self.path)
            self._wb: Workbook = openpyxl.load_workbook(self.path, data_only=False)
        elif create:
            logger.info("Creating membership workbook: %s", self.path)
            self._wb = openpyxl.Workbook()
            self._wb.remove(self._wb.active)
        else:
            raise FileNotFoundError(f"Membership workbook not found: {self.path}")

    def _sheet(self, name: str) -> Worksheet | None:
        if name in self._wb.sheetnames:
            return self._wb[name]
        return None

    def table_names(self) -> list[str]:
        return list(self._wb.sheetnames)

    def table_headers(self, name: str) -> list[str]:
        ws = self._sheet(name)
        if ws is None or ws.max_row < 1:
            return []
        headers = [
            str(cell.value).strip() if cell.value is not None else ""
            for cell in ws[1]
        ]
        while headers and not headers[-1]:
            headers.pop()
        return headers

    def read_table(self, name: str) -> list[Row]:
        ws = self._sheet(name)
        if ws is None:
            logger.debug("Table %s does not exist; reading as empty", name)
            return []

        headers = self.table_headers(name)
        rows: list[Row] = []
        for values in ws.iter_rows(min_row=2, values_only=True):
            if all(v is None or (isinstance(v, str) and not v.strip()) for v in values):
                continue
            row = {
                header: values[idx] if idx < len(values) else None
                for idx, header in enumerate(headers)
                if header
            }
            rows.append(row)
        logger.debug("Read %d row(s) from %s", len(rows), name)
        return rows

    def write_table(self, name: str, rows: list[Row], headers: list[str] | None = None) -> None:
        ordered = _resolve_headers(self.table_headers(name), headers, rows)

        existing = self._sheet(name)
        if existing is not None:
            position = self._wb.index(existing)
            self._wb.remove(existing)
            ws = self._wb.create_sheet(name, position)
        else:
            ws = self._wb.create_sheet(name)

        ws.append(ordered)
        for row in rows:
            ws.append([row.get(header) for header in ordered])

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._wb.save(self.path)
        logger.debug("Wrote %d row(s) to %s", len(rows), name)
