# rule_scheduler/utils/clock.py
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the form stored in the database)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def day_of_week(value: datetime) -> int:
    """Day of week with Sunday = 0, matching cron numbering"""
    return (value.weekday() + 1) % 7


def hour_bucket(value: datetime) -> str:
    """Group key for a calendar hour, e.g. ``2024-05-01T14``"""
    return value.strftime("%Y-%m-%dT%H")
