"""Re-invocation scheduling.

The engine never schedules itself; the service reports ``has_more_work``
and calls one of these.  ``StateFileScheduler`` records the next wanted
run in a small JSON file that the host's cron wrapper (or ``status``)
reads; ``LoggingScheduler`` only logs and counts.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class RunScheduler(Protocol):
    def schedule_future_run(self, delay_minutes: int) -> None: ...

    def cancel_scheduled_runs(self) -> None: ...


class StateFileScheduler:
    def __init__(self, path: str | Path, clock: Callable[[], datetime] = datetime.now) -> None:
        self.path = Path(path)
        self.clock = clock

    def schedule_future_run(self, delay_minutes: int) -> None:
        now = self.clock()
        run_at = now + timedelta(minutes=delay_minutes)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({
            "scheduled_at": now.isoformat(timespec="seconds"),
            "next_run_at": run_at.isoformat(timespec="seconds"),
        }, indent=2), encoding="utf-8")
        logger.info("Next run scheduled for %s", run_at.isoformat(timespec="seconds"))

    def cancel_scheduled_runs(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info("Cancelled scheduled runs")

    def next_run_at(self) -> datetime | None:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return datetime.fromisoformat(data["next_run_at"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring unreadable scheduler state in %s", self.path)
            return None

    def is_due(self, now: datetime | None = None) -> bool:
        run_at = self.next_run_at()
        return run_at is not None and run_at <= (now or self.clock())


class LoggingScheduler:
    def __init__(self) -> None:
        self.scheduled: list[int] = []
        self.cancelled = 0

    def schedule_future_run(self, delay_minutes: int) -> None:
        self.scheduled.append(delay_minutes)
        logger.info("Would schedule another run in %d minute(s)", delay_minutes)

    def cancel_scheduled_runs(self) -> None:
        self.cancelled += 1
        logger.info("Would cancel scheduled runs")
