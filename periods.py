from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def start_key(self) -> str:
        return self.start.isoformat()

    @property
    def end_key(self) -> str:
        return self.end.isoformat()


def local_today() -> date:
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).date()


def parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid date '{value}', expected YYYY-MM-DD") from exc


def month_key(value: date | str) -> str:
    if isinstance(value, str):
        return parse_day(value).isoformat()[:7]
    return f"{value.year:04d}-{value.month:02d}"


def parse_month(value: str) -> date:
    try:
        year_str, month_str = value.split("-", 1)
        return date(int(year_str), int(month_str), 1)
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Invalid month '{value}', expected YYYY-MM") from exc


def day_window(day: str, days: int = 1) -> tuple[str, str]:
    """Return the inclusive ``[day - days, day + days]`` range as date strings."""
    center = parse_day(day)
    delta = timedelta(days=days)
    return (center - delta).isoformat(), (center + delta).isoformat()


def month_period(month: str) -> Period:
    first = parse_month(month)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return Period(month, first, next_month - date.resolution)


def current_month(today: Optional[date] = None) -> Period:
    today = today or local_today()
    return month_period(month_key(today))
