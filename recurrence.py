from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import Bill, RecurrenceFrequency


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(desired_day, days_in_month(year, month)))


def calculate_next_date(
    frequency: RecurrenceFrequency,
    interval_count: int,
    from_date: date,
    *,
    anchor_day: Optional[int] = None,
) -> date:
    """Step ``from_date`` forward by one recurrence interval.

    Monthly and yearly steps aim for ``anchor_day`` (default: the day of
    ``from_date``) and snap to the last day of shorter months, so a bill due
    on Jan 31 is next due on Feb 28/29.
    """
    if interval_count < 1:
        raise ValueError("Recurrence interval must be at least 1")
    day = anchor_day or from_date.day
    if frequency == RecurrenceFrequency.daily:
        return from_date + timedelta(days=interval_count)
    if frequency == RecurrenceFrequency.weekly:
        return from_date + timedelta(weeks=interval_count)
    if frequency == RecurrenceFrequency.monthly:
        return _add_months(from_date, interval_count, desired_day=day)
    return _add_months(from_date, 12 * interval_count, desired_day=day)


def next_due_date(bill: Bill, anchor_day: Optional[int] = None) -> Optional[date]:
    if not bill.is_recurring or bill.frequency is None:
        return None
    candidate = calculate_next_date(
        bill.frequency, bill.interval_count, bill.due_date, anchor_day=anchor_day
    )
    if bill.recurrence_end_date and candidate > bill.recurrence_end_date:
        return None
    return candidate
