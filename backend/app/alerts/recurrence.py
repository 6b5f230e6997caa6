"""
recurrence.py — Advance recurring scheduled alerts.

    Frequency    Step
    ─────────    ──────────────────────────────────────────────────
    daily        + interval days
    weekly       + 7 × interval days
    monthly      + interval calendar months (day clamped to month end)
    yearly       + interval calendar years  (Feb 29 → Feb 28)

The next occurrence is always computed from the record's own scheduled
date, so a late scan (executor down for an hour) does not drift the
series onto wall-clock time.

    Jan 31 + 1 month  → Feb 28 (Feb 29 in leap years)
    Mar 31 + 1 month  → Apr 30
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta
from typing import Optional

from backend.app.alerts.models import Frequency, RecurrencePattern


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-aware month addition, clamping day-of-month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))


def next_occurrence(scheduled_date: datetime, pattern: RecurrencePattern) -> datetime:
    interval = pattern.interval
    if pattern.frequency is Frequency.DAILY:
        return scheduled_date + timedelta(days=interval)
    if pattern.frequency is Frequency.WEEKLY:
        return scheduled_date + timedelta(days=7 * interval)
    if pattern.frequency is Frequency.MONTHLY:
        return add_months(scheduled_date, interval)
    if pattern.frequency is Frequency.YEARLY:
        return add_months(scheduled_date, 12 * interval)
    raise ValueError(f"Unsupported frequency: {pattern.frequency!r}")


def is_recurrence_finished(
    next_date: datetime,
    pattern: RecurrencePattern,
    executions: int,
) -> bool:
    """
    True when the series should stop instead of scheduling ``next_date``.

    ``executions`` is the count including the run that just happened.
    """
    if pattern.end_date is not None and next_date > pattern.end_date:
        return True
    if pattern.max_occurrences is not None and executions >= pattern.max_occurrences:
        return True
    return False


def plan_next(
    scheduled_date: datetime,
    pattern: Optional[RecurrencePattern],
    executions: int,
) -> Optional[datetime]:
    """Next scheduled date, or None when the series has ended."""
    if pattern is None:
        return None
    candidate = next_occurrence(scheduled_date, pattern)
    if is_recurrence_finished(candidate, pattern, executions):
        return None
    return candidate
