"""
Time helpers. Timestamps are stored as naive UTC; day arithmetic happens
on the merchant's wall clock (zoneinfo) and is converted back to naive UTC.
"""
from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.app.core.settings import get_settings


def utcnow() -> datetime:
    """Current time as naive UTC, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def merchant_zone(tz_name: Optional[str]) -> ZoneInfo:
    """Resolve a merchant's IANA zone, falling back to the configured default."""
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return ZoneInfo(get_settings().DEFAULT_MERCHANT_TIMEZONE)


def to_local(moment: datetime, tz: ZoneInfo) -> datetime:
    return moment.replace(tzinfo=timezone.utc).astimezone(tz)


def to_utc_naive(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def local_add_days(moment: datetime, days: int, tz: ZoneInfo) -> datetime:
    """Add calendar days on the local wall clock, so a DST shift keeps the local hour."""
    local = to_local(moment, tz)
    return to_utc_naive(local + timedelta(days=days))


def next_local_midnight(moment: datetime, tz: ZoneInfo) -> datetime:
    """The local midnight that ends the merchant-local day containing `moment`."""
    local_date = to_local(moment, tz).date()
    midnight = datetime.combine(local_date + timedelta(days=1), time.min, tzinfo=tz)
    return to_utc_naive(midnight)
