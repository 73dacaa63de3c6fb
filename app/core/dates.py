"""
Incentive Lens — UTC date helpers
All reporting windows are inclusive UTC calendar days in ``YYYY-MM-DD`` form.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Tuple

REPORT_WINDOW_DAYS = 7


def utc_today(now: Optional[datetime] = None) -> date:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).date()


def yesterday_utc(now: Optional[datetime] = None) -> str:
    """The logical day a freshly built snapshot represents."""
    return (utc_today(now) - timedelta(days=1)).isoformat()


def parse_date(value: str) -> date:
    """Parse ``YYYY-MM-DD``; raises ValueError on anything else."""
    if not isinstance(value, str):
        raise ValueError(f"Expected YYYY-MM-DD string, got {type(value).__name__}")
    return date.fromisoformat(value.strip())


def report_window(now: Optional[datetime] = None, days: int = REPORT_WINDOW_DAYS) -> Tuple[str, str]:
    """Trailing ``days``-day window ending yesterday (inclusive)."""
    end = utc_today(now) - timedelta(days=1)
    start = end - timedelta(days=days - 1)
    return start.isoformat(), end.isoformat()


def period_days(start_date: str, end_date: str) -> int:
    """Inclusive day count; ValueError if the range is inverted."""
    start, end = parse_date(start_date), parse_date(end_date)
    if end < start:
        raise ValueError(f"endDate {end_date} is before startDate {start_date}")
    return (end - start).days + 1


def previous_period(start_date: str, end_date: str) -> Tuple[str, str]:
    """The equally long window immediately before ``start_date``."""
    days = period_days(start_date, end_date)
    prev_end = parse_date(start_date) - timedelta(days=1)
    prev_start = prev_end - timedelta(days=days - 1)
    return prev_start.isoformat(), prev_end.isoformat()


def day_start_ts(value: str) -> int:
    """Unix seconds at 00:00:00Z of the given day."""
    d = parse_date(value)
    return int(datetime(d.year, d.month, d.day, tzinfo=timezone.utc).timestamp())


def day_end_ts(value: str) -> int:
    """Unix seconds at 23:59:59Z of the given day."""
    return day_start_ts(value) + 86399


def short_label(value: str) -> str:
    """``2025-01-07`` → ``01/07`` for CSV headers."""
    if not value:
        return ""
    return parse_date(value).strftime("%m/%d")
