from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.engine import Connection

from bella_napoli.utils.time import format_duration, parse_duration

_CRON_RE = re.compile(r"^\s*USING\s+CRON\s+(.+?)\s+(\S+)\s*$", re.IGNORECASE)


class TaskStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class TaskState(str, Enum):
    STARTED = "STARTED"
    SUSPENDED = "SUSPENDED"


@dataclass(frozen=True)
class TaskContext:
    """What a task body gets: an open transaction plus run metadata."""

    conn: Connection
    task_name: str
    graph_run_id: str
    scheduled_at: datetime
    services: dict[str, Any]


TaskBody = Callable[[TaskContext], Any]
WhenFn = Callable[[Connection], bool]


@dataclass(frozen=True)
class Schedule:
    interval: timedelta | None = None
    cron: str | None = None
    timezone: str | None = None

    @property
    def label(self) -> str:
        if self.interval is not None:
            return format_duration(self.interval).upper()
        return f"USING CRON {self.cron} {self.timezone}"

    def trigger(self, default_timezone: str = "UTC"):
        if self.interval is not None:
            return IntervalTrigger(seconds=int(self.interval.total_seconds()))
        return CronTrigger.from_crontab(
            str(self.cron).lower(), timezone=self.timezone or default_timezone
        )


def parse_schedule(value: str | timedelta) -> Schedule:
    """``"1 MINUTE"``/``"30 MINUTES"`` or ``"USING CRON <5 fields> <tz>"``."""
    if isinstance(value, timedelta):
        return Schedule(interval=value)
    m = _CRON_RE.match(value)
    if m:
        expr = " ".join(m.group(1).split())
        if len(expr.split(" ")) != 5:
            raise ValueError(f"Cron expression needs 5 fields: {value!r}")
        # validate now rather than when the scheduler starts
        CronTrigger.from_crontab(expr.lower(), timezone=m.group(2))
        return Schedule(cron=expr, timezone=m.group(2))
    return Schedule(interval=parse_duration(value))


@dataclass(frozen=True)
class TaskDefinition:
    name: str
    body: TaskBody
    schedule: Schedule | None = None
    after: tuple[str, ...] = ()
    when: WhenFn | None = None
    allow_overlapping: bool = False
    comment: str | None = None

    @property
    def is_root(self) -> bool:
        return not self.after


def task(
    name: str,
    body: TaskBody,
    *,
    schedule: str | timedelta | None = None,
    after: Iterable[str] = (),
    when: WhenFn | None = None,
    allow_overlapping: bool = False,
    comment: str | None = None,
) -> TaskDefinition:
    return TaskDefinition(
        name=name,
        body=body,
        schedule=None if schedule is None else parse_schedule(schedule),
        after=tuple(after),
        when=when,
        allow_overlapping=allow_overlapping,
        comment=comment,
    )
