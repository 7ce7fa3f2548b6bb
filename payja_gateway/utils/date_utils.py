"""Date manipulation utilities"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the database"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seconds_from(moment: datetime, seconds: float) -> datetime:
    return moment + timedelta(seconds=seconds)


def is_past(deadline: datetime, now: datetime) -> bool:
    """True once `now` has reached the deadline"""
    return now >= deadline
