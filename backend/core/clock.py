"""Calendar helpers shared by the site ledger and override counters.

All day and month keys use the UTC calendar. Callers pass `now` explicitly
in tests for deterministic results.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_now(now: Optional[datetime] = None) -> datetime:
    if now is None:
        return utcnow()
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def today_key(now: Optional[datetime] = None) -> str:
    """Calendar date string (YYYY-MM-DD) used as last_reset_date."""
    return resolve_now(now).date().isoformat()


def month_key(now: Optional[datetime] = None) -> str:
    """Monthly stats bucket key (YYYY-MM)."""
    return resolve_now(now).strftime("%Y-%m")


def next_midnight(now: Optional[datetime] = None) -> datetime:
    current = resolve_now(now)
    start_of_day = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return start_of_day + timedelta(days=1)
