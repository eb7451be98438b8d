"""Directory group membership.

Both operations are idempotent: adding a member who is already in the
group, or removing one who is not, is not an error.

    GroupDirectory    -- protocol the processor depends on
    TableDirectory    -- group membership kept in a workbook table
    LoggingDirectory  -- test mode wrapper that logs instead of mutating
"""

from __future__ import annotations

import logging
from typing import Protocol

from .storage import TableStorage
from .tables import GROUP_MEMBERSHIP_HEADERS

logger = logging.getLogger(__name__)


class GroupDirectory(Protocol):
    def add_to_group(self, member_email: str, group_email: str) -> None: ...

    def remove_from_group(self, member_email: str, group_email: str) -> None: ...


def _key(member_email: str, group_email: str) -> tuple[str, str]:
    return group_email.strip().lower(), member_email.strip().lower()


class TableDirectory:
    """Group membership rows (``Group``, ``Member``) in a storage table."""

    def __init__(self, storage: TableStorage, table: str = "GroupMembers") -> None:
        self.storage = storage
        self.table = table

    def _load(self) -> list[dict]:
        return self.storage.read_table(self.table)

    def members_of(self, group_email: str) -> list[str]:
        wanted = group_email.strip().lower()
        return [
            str(row.get("Member") or "").strip()
            for row in self._load()
            if str(row.get("Group") or "").strip().lower() == wanted
        ]

    def add_to_group(self, member_email: str, group_email: str) -> None:
        if not member_email or not group_email:
            raise ValueError(
                f"Adding {member_email!r} to {group_email!r}: both addresses are required"
            )
        rows = self._load()
        wanted = _key(member_email, group_email)
        if any(_key(str(r.get("Member") or ""), str(r.get("Group") or "")) == wanted for r in rows):
            logger.debug("Member %s already exists in %s", member_email, group_email)
            return
        rows.append({"Group": group_email.strip(), "Member": member_email.strip()})
        self.storage.write_table(self.table, rows, GROUP_MEMBERSHIP_HEADERS)
        logger.info("Added %s to %s", member_email, group_email)

    def remove_from_group(self, member_email: str, group_email: str) -> None:
        if not member_email or not group_email:
            raise ValueError(
                f"Removing {member_email!r} from {group_email!r}: both addresses are required"
            )
        rows = self._load()
        wanted = _key(member_email, group_email)
        kept = [
            r for r in rows
            if _key(str(r.get("Member") or ""), str(r.get("Group") or "")) != wanted
        ]
        if len(kept) == len(rows):
            logger.debug("%s not found in %s", member_email, group_email)
            return
        self.storage.write_table(self.table, kept, GROUP_MEMBERSHIP_HEADERS)
        logger.info("Removed %s from %s", member_email, group_email)


class LoggingDirectory:
    """Logs adds and/or removes instead of passing them to *inner*."""

    def __init__(
        self,
        inner: GroupDirectory | None = None,
        log_adds: bool = True,
        log_removes: bool = True,
    ) -> None:
        self.inner = inner
        self.log_adds = log_adds or inner is None
        self.log_removes = log_removes or inner is None

    def add_to_group(self, member_email: str, group_email: str) -> None:
        if self.log_adds:
            logger.info("testGroupAdds: would have added %s to group %s", member_email, group_email)
            return
        self.inner.add_to_group(member_email, group_email)

    def remove_from_group(self, member_email: str, group_email: str) -> None:
        if self.log_removes:
            logger.info("testGroupRemoves: would have removed %s from group %s",
                        member_email, group_email)
            return
        self.inner.remove_from_group(member_email, group_email)
