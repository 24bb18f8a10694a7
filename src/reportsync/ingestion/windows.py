"""Deterministic date windows.

Every window is a pure function of the trigger instant and the tenant
time zone, so re-running a sweep for the same trigger requests exactly
the same ranges and downstream writes overwrite instead of duplicating.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, tzinfo
from typing import List, Optional

from ..schemas import DateWindow
from ..utils.datetime import to_utc


def local_date(trigger: datetime, tz: Optional[tzinfo] = None) -> date:
    moment = to_utc(trigger)
    return moment.astimezone(tz).date() if tz is not None else moment.date()


def trailing_window(
    trigger: datetime,
    *,
    days: int,
    lag_days: int = 0,
    tz: Optional[tzinfo] = None,
) -> DateWindow:
    """``days`` dates, both ends included, ending ``lag_days`` before the local date."""
    end = local_date(trigger, tz) - timedelta(days=max(lag_days, 0))
    start = end - timedelta(days=max(days, 1) - 1)
    return DateWindow(start=start, end=end)


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def month_window(year: int, month: int) -> DateWindow:
    last_day = calendar.monthrange(year, month)[1]
    return DateWindow(start=date(year, month, 1), end=date(year, month, last_day))


def previous_month_windows(
    trigger: datetime,
    months: int,
    tz: Optional[tzinfo] = None,
) -> List[DateWindow]:
    """The ``months`` whole calendar months before the trigger's month.

    Ordered oldest first; consecutive windows are contiguous and the last
    one ends on the day before the current month begins.
    """
    if months < 1:
        raise ValueError("months must be >= 1")
    today = local_date(trigger, tz)
    windows = []
    for offset in range(months, 0, -1):
        year, month = _shift_month(today.year, today.month, -offset)
        windows.append(month_window(year, month))
    return windows


def span(windows: List[DateWindow]) -> DateWindow:
    return DateWindow(
        start=min(w.start for w in windows),
        end=max(w.end for w in windows),
    )
