"""Date manipulation utilities"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the store keeps DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def overdue_cutoff(grace_days: int, now: datetime | None = None) -> datetime:
    """Due dates strictly before this moment are past the grace period"""
    return (now or utcnow()) - timedelta(days=grace_days)


def add_months(from_date: datetime, months: int, days_per_month: int = 30) -> datetime:
    """Add months as fixed-length blocks of days, not calendar months"""
    return from_date + timedelta(days=months * days_per_month)
