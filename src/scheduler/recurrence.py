"""Cron-based recurring task definitions registered with Celery beat."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from celery.schedules import crontab

from time_utils import to_utc

# Upper bound for next-fire searches; every supported expression fires within a year.
_SEARCH_DAYS = 366


def parse_cron(expression: str) -> crontab:
    """Parse a five-field cron expression into a Celery crontab.

    Raises:
        ValueError: The expression does not have five fields or a field is invalid.
    """
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Cron expression must have 5 fields: {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


@dataclass(frozen=True)
class RecurringTask:
    """Named Celery task fired on a UTC cron schedule."""

    name: str
    task: str
    cron: str
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def schedule(self) -> crontab:
        return parse_cron(self.cron)

    def beat_entry(self) -> dict[str, Any]:
        """Return the Celery beat schedule entry for this task."""
        entry: dict[str, Any] = {"task": self.task, "schedule": self.schedule}
        if self.options:
            entry["options"] = dict(self.options)
        return entry

    def next_fire_time(self, after: datetime) -> datetime:
        """Return the first UTC minute strictly after ``after`` that matches."""
        schedule = self.schedule
        boundary = to_utc(after)
        start = boundary.replace(second=0, microsecond=0)
        minutes = sorted(schedule.minute)
        hours = sorted(schedule.hour)
        for offset in range(_SEARCH_DAYS + 1):
            day = start + timedelta(days=offset)
            if day.month not in schedule.month_of_year:
                continue
            if day.day not in schedule.day_of_month:
                continue
            # Cron weekdays count from Sunday.
            if (day.weekday() + 1) % 7 not in schedule.day_of_week:
                continue
            for hour in hours:
                for minute in minutes:
                    candidate = day.replace(hour=hour, minute=minute)
                    if candidate > boundary:
                        return candidate
        raise ValueError(f"Cron expression never fires: {self.cron!r}")


def build_beat_schedule(tasks: list[RecurringTask]) -> dict[str, dict[str, Any]]:
    """Map recurring tasks to a Celery ``beat_schedule`` mapping."""
    return {task.name: task.beat_entry() for task in tasks}
