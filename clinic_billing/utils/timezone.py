# FILE: clinic_billing/utils/timezone.py
from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Tuple
from zoneinfo import ZoneInfo

from clinic_billing.core.config import settings


def clinic_tz() -> ZoneInfo:
    return ZoneInfo(settings.CLINIC_TIMEZONE)


def now_local() -> datetime:
    """
    Returns a *naive* datetime in clinic-local time.
    All ledger DateTime columns are naive local timestamps.
    """
    return datetime.now(clinic_tz()).replace(tzinfo=None)


def today_local() -> date:
    return now_local().date()


def to_local_naive(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(clinic_tz()).replace(tzinfo=None)


def day_bounds(d: date) -> Tuple[datetime, datetime]:
    """[start, end) of a clinic-local day."""
    start = datetime.combine(d, time.min)
    return start, start + timedelta(days=1)
