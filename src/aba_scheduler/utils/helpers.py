"""
Utility helper functions for the scheduling service
"""

from datetime import date, datetime, time, timedelta
from typing import Any
from uuid import uuid4


def generate_id(prefix: str) -> str:
    """Generate a unique identifier with a readable prefix"""
    return f"{prefix}_{uuid4().hex[:12]}"


def safe_division(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safely divide two numbers, returning default if denominator is zero"""
    try:
        return numerator / denominator if denominator != 0 else default
    except (TypeError, ValueError):
        return default


def clamp(value: float, min_val: float, max_val: float) -> float:
    """Clamp a value between min and max bounds"""
    return max(min_val, min(value, max_val))


def round_to(value: float, decimal_places: int = 2) -> float:
    """Round a metric for reporting"""
    return round(value, decimal_places)


def get_monday_of_week(date_obj: date) -> date:
    """Get the Monday of the week containing the given date"""
    days_since_monday = date_obj.weekday()
    monday = date_obj - timedelta(days=days_since_monday)
    return monday


def start_of_day(moment: datetime) -> datetime:
    """Midnight of the day containing the given moment"""
    return datetime.combine(moment.date(), time(0, 0))


def end_of_day(moment: datetime) -> datetime:
    """First instant of the following day (exclusive bound)"""
    return start_of_day(moment) + timedelta(days=1)


def hours_between(start: datetime, end: datetime) -> float:
    """Signed number of hours from start to end"""
    return (end - start).total_seconds() / 3600


def parse_iso_datetime(value: Any) -> datetime | None:
    """Parse a stored timestamp, returning None for anything malformed"""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None

