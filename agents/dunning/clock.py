"""Injected clock for dunning runs.

A run reads "today" once from its clock and threads that date through
classification, step resolution and dispatch so one run never sees two
different days.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    def today(self) -> date: ...


class SystemClock:
    """Wall clock normalized to midnight in the configured timezone."""

    def __init__(self, timezone: str = "UTC"):
        self.timezone = ZoneInfo(timezone)

    def today(self) -> date:
        return datetime.now(self.timezone).date()


class FixedClock:
    """Clock pinned to a given date (tests, replays, backfills)."""

    def __init__(self, today: date):
        self._today = today

    def today(self) -> date:
        return self._today


def to_local_date(value: date | datetime, timezone: str = "UTC") -> date:
    """Reduce a date or timestamp to a calendar date in ``timezone``.

    Naive datetimes are taken as already local.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(ZoneInfo(timezone))
        return value.date()
    return value
