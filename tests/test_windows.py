from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from reportsync.ingestion.windows import (
    local_date,
    month_window,
    previous_month_windows,
    span,
    trailing_window,
)

TOKYO = ZoneInfo("Asia/Tokyo")


def test_local_date_uses_tenant_zone():
    trigger = datetime(2025, 6, 14, 18, 0, tzinfo=timezone.utc)
    assert local_date(trigger) == date(2025, 6, 14)
    assert local_date(trigger, TOKYO) == date(2025, 6, 15)


def test_trailing_window_with_lag():
    trigger = datetime(2025, 6, 15, 3, 0, tzinfo=TOKYO)

    plain = trailing_window(trigger, days=30, tz=TOKYO)
    lagged = trailing_window(trigger, days=30, lag_days=3, tz=TOKYO)

    assert plain.end == date(2025, 6, 15)
    assert plain.start == date(2025, 5, 17)
    assert (plain.end - plain.start).days + 1 == 30
    assert lagged.end == date(2025, 6, 12)
    assert lagged.start == date(2025, 5, 14)


def test_single_day_window():
    trigger = datetime(2025, 6, 15, 3, 0, tzinfo=TOKYO)

    one = trailing_window(trigger, days=1, tz=TOKYO)

    assert one.start == one.end == date(2025, 6, 15)


def test_windows_are_deterministic_for_a_trigger():
    trigger = datetime(2025, 6, 15, 3, 0, tzinfo=TOKYO)
    assert trailing_window(trigger, days=7, tz=TOKYO) == trailing_window(trigger, days=7, tz=TOKYO)


def test_month_window_handles_leap_february():
    assert month_window(2024, 2).end == date(2024, 2, 29)
    assert month_window(2025, 2).end == date(2025, 2, 28)


def test_previous_month_windows_are_contiguous_and_end_before_current_month():
    trigger = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)

    windows = previous_month_windows(trigger, 3)

    assert [(w.start, w.end) for w in windows] == [
        (date(2024, 12, 1), date(2024, 12, 31)),
        (date(2025, 1, 1), date(2025, 1, 31)),
        (date(2025, 2, 1), date(2025, 2, 28)),
    ]
    for earlier, later in zip(windows, windows[1:]):
        assert later.start == earlier.end + timedelta(days=1)
    assert span(windows).start == date(2024, 12, 1)
    assert span(windows).end == date(2025, 2, 28)


def test_previous_month_windows_rejects_zero_months():
    with pytest.raises(ValueError):
        previous_month_windows(datetime(2025, 3, 10, tzinfo=timezone.utc), 0)
