"""
Date helpers shared by entities and services.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple, Union

from .exceptions import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Union[str, date, datetime], field_name: str = "date") -> datetime:
    """Parse an ISO date or datetime into an aware UTC datetime.

    Naive values are taken to be UTC. A bare date becomes midnight of that day.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid {field_name}: {value}", details={"field": field_name})
    else:
        raise ValidationError(f"Invalid {field_name}: {value!r}", details={"field": field_name})

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def calendar_day(value: Union[str, date, datetime]) -> str:
    """Calendar day (YYYY-MM-DD) a timestamp falls on."""
    return parse_datetime(value).date().isoformat()


def day_bounds(value: Union[str, date, datetime]) -> Tuple[datetime, datetime]:
    """Half-open [start, end) interval covering the calendar day of value."""
    start = datetime.combine(parse_datetime(value).date(), time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def parse_range(start: Optional[str], end: Optional[str]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Parse optional range bounds; both ends inclusive."""
    start_dt = parse_datetime(start, "startDate") if start else None
    end_dt = parse_datetime(end, "endDate") if end else None
    if start_dt and end_dt and start_dt > end_dt:
        raise ValidationError("startDate must not be after endDate", details={"field": "startDate"})
    return start_dt, end_dt
