from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_today() -> date:
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).date()


def _month_bounds(anchor: date) -> tuple[date, date]:
    first = anchor.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return first, next_month - date.resolution


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    if period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last":
        last_month_end = today.replace(day=1) - date.resolution
        return Period("last", last_month_end.replace(day=1), last_month_end)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period and period != "current":
        raise ValueError(f"Unknown period: {period}")

    first, last = _month_bounds(today)
    return Period("current", first, last)


def previous_period(period: Period) -> Period:
    """The window just before ``period``.

    Whole calendar months map to the preceding calendar month; any other
    window maps to the same number of days immediately before it.
    """
    month_start, month_end = _month_bounds(period.start)
    if period.start == month_start and period.end == month_end:
        prev_end = month_start - date.resolution
        return Period("previous", prev_end.replace(day=1), prev_end)
    span = period.end - period.start
    prev_end = period.start - date.resolution
    return Period("previous", prev_end - span, prev_end)
