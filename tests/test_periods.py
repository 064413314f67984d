from datetime import date

import pytest

from models import Bill, RecurrenceFrequency
from periods import previous_month, previous_year, resolve_period, settlement_label
from recurrence import calculate_next_date, next_due_date

TODAY = date(2026, 10, 16)


def test_resolve_named_periods():
    current = resolve_period(None, None, None, today=TODAY)
    assert (current.slug, current.start, current.end) == (
        "current",
        date(2026, 10, 1),
        TODAY,
    )
    assert resolve_period("last30", None, None, today=TODAY).start == date(2026, 9, 16)
    assert resolve_period("last90", None, None, today=TODAY).start == date(2026, 7, 18)
    assert resolve_period("thisYear", None, None, today=TODAY).start == date(2026, 1, 1)


def test_custom_period_requires_ordered_dates():
    custom = resolve_period("custom", "2026-01-05", "2026-02-01T00:00:00Z", today=TODAY)
    assert (custom.start, custom.end) == (date(2026, 1, 5), date(2026, 2, 1))

    with pytest.raises(ValueError):
        resolve_period("custom", None, "2026-02-01", today=TODAY)
    with pytest.raises(ValueError):
        resolve_period("custom", "2026-03-01", "2026-02-01", today=TODAY)
    with pytest.raises(ValueError):
        resolve_period("custom", "not-a-date", "2026-02-01", today=TODAY)
    with pytest.raises(ValueError):
        resolve_period("fortnight", None, None, today=TODAY)


def test_settlement_windows_and_labels():
    march = previous_month(date(2024, 3, 10))
    assert (march.start, march.end) == (date(2024, 2, 1), date(2024, 2, 29))
    assert settlement_label("monthly", march.start) == "February 2024"

    last_year = previous_year(TODAY)
    assert (last_year.start, last_year.end) == (date(2025, 1, 1), date(2025, 12, 31))
    assert settlement_label("yearly", last_year.start) == "2025"


def test_calculate_next_date_snaps_to_month_end():
    assert calculate_next_date(
        RecurrenceFrequency.monthly, 1, date(2024, 1, 31)
    ) == date(2024, 2, 29)
    assert calculate_next_date(
        RecurrenceFrequency.monthly, 1, date(2024, 2, 29), anchor_day=31
    ) == date(2024, 3, 31)
    assert calculate_next_date(
        RecurrenceFrequency.yearly, 1, date(2024, 2, 29)
    ) == date(2025, 2, 28)


def test_calculate_next_date_daily_and_weekly_intervals():
    assert calculate_next_date(
        RecurrenceFrequency.daily, 3, date(2026, 12, 30)
    ) == date(2027, 1, 2)
    assert calculate_next_date(
        RecurrenceFrequency.weekly, 2, date(2026, 10, 16)
    ) == date(2026, 10, 30)
    with pytest.raises(ValueError):
        calculate_next_date(RecurrenceFrequency.daily, 0, TODAY)


def test_next_due_date_respects_recurrence_settings():
    bill = Bill(
        due_date=date(2026, 10, 15),
        is_recurring=True,
        frequency=RecurrenceFrequency.monthly,
        interval_count=3,
        recurrence_end_date=None,
    )
    assert next_due_date(bill) == date(2027, 1, 15)

    bill.recurrence_end_date = date(2026, 12, 31)
    assert next_due_date(bill) is None

    bill.is_recurring = False
    assert next_due_date(bill) is None
