"""ChurnWatch — Month & Day Helpers.

Months are handled as "YYYY-MM" strings throughout; days as datetime.date.
"""

import calendar
import re
from datetime import date, datetime, timedelta, timezone
from typing import Iterator, Optional

MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def validate_month(month: str) -> str:
    """Return the month unchanged if it is a valid YYYY-MM string."""
    if not isinstance(month, str) or not MONTH_PATTERN.match(month):
        raise ValueError(f"Invalid month '{month}', expected YYYY-MM")
    return month


def parse_date(value: str) -> date:
    """Parse a YYYY-MM-DD string."""
    return datetime.strptime(value, "%Y-%m-%d").date()


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def yesterday_utc() -> date:
    return today_utc() - timedelta(days=1)


def month_of(day: date) -> str:
    return day.strftime("%Y-%m")


def _year_month(month: str) -> tuple[int, int]:
    validate_month(month)
    year, month_num = month.split("-")
    return int(year), int(month_num)


def days_in_month(month: str) -> int:
    year, month_num = _year_month(month)
    return calendar.monthrange(year, month_num)[1]


def month_bounds(month: str) -> tuple[date, date]:
    """Return (first day, last day) of a month."""
    year, month_num = _year_month(month)
    return date(year, month_num, 1), date(year, month_num, days_in_month(month))


def month_label(month: str) -> str:
    """Human-readable label, e.g. "August 2025"."""
    year, month_num = _year_month(month)
    return f"{calendar.month_name[month_num]} {year}"


def previous_month(month: str) -> str:
    year, month_num = _year_month(month)
    if month_num == 1:
        return f"{year - 1}-12"
    return f"{year}-{month_num - 1:02d}"


def next_month(month: str) -> str:
    year, month_num = _year_month(month)
    if month_num == 12:
        return f"{year + 1}-01"
    return f"{year}-{month_num + 1:02d}"


def months_since_launch(launched_at: Optional[date], month: str) -> int:
    """Calendar months between the launch month and `month`, floored at 0."""
    if launched_at is None:
        return 0
    year, month_num = _year_month(month)
    diff = (year - launched_at.year) * 12 + (month_num - launched_at.month)
    return max(0, diff)


def month_progress(day_of_month: int, month: str) -> float:
    """Fraction of the month covered by complete days of data.

    `day_of_month` is the day the data is being judged on; the days before it
    are complete, so day 1 has progress 0 and day N+1 of an N-day month has 1.
    """
    return (day_of_month - 1) / days_in_month(month)


def date_range(start: date, end: date) -> Iterator[date]:
    """Yield every day from start to end, inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def months_between(start: date, end: date) -> list[str]:
    """Distinct months touched by the inclusive day range, in order."""
    months: list[str] = []
    if start > end:
        return months
    month = month_of(start)
    last = month_of(end)
    while month <= last:
        months.append(month)
        month = next_month(month)
    return months


def rolling_window_start(reference: date, months_back: int) -> date:
    """First day of the month `months_back` months before the reference month."""
    total = reference.year * 12 + (reference.month - 1) - months_back
    return date(total // 12, total % 12 + 1, 1)
