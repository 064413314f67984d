from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


ANALYTICS_PERIODS = ("current", "last30", "last90", "thisYear", "custom")


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    first = month_start(d)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def _parse_date(raw: str, label: str) -> date:
    try:
        return date.fromisoformat(raw[:10])
    except ValueError as exc:
        raise ValueError(f"Invalid {label}: {raw}") from exc


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period or period == "current":
        return Period("current", month_start(today), today)
    if period == "last30":
        return Period("last30", today - timedelta(days=30), today)
    if period == "last90":
        return Period("last90", today - timedelta(days=90), today)
    if period == "thisYear":
        return Period("thisYear", date(today.year, 1, 1), today)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = _parse_date(start, "start date")
        end_date = _parse_date(end, "end date")
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    raise ValueError(
        f"Unknown period '{period}'; expected one of {', '.join(ANALYTICS_PERIODS)}"
    )


def previous_month(today: date) -> Period:
    last_month_end = month_start(today) - date.resolution
    return Period("monthly", month_start(last_month_end), last_month_end)


def previous_year(today: date) -> Period:
    year = today.year - 1
    return Period("yearly", date(year, 1, 1), date(year, 12, 31))


def settlement_label(kind: str, start: date) -> str:
    if kind == "yearly":
        return str(start.year)
    return start.strftime("%B %Y")
