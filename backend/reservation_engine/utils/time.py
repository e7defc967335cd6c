from datetime import date, datetime, timedelta, timezone
from typing import Iterator, Protocol
from zoneinfo import ZoneInfo

UTC_ZONE = ZoneInfo("UTC")


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock returning naive UTC datetimes, matching the storage convention."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def utc_naive_to_zone(dt: datetime, tz_name: str) -> datetime:
    return dt.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name))


def local_days(starts_at: datetime, ends_at: datetime, tz_name: str) -> Iterator[date]:
    """Yield each calendar day in `tz_name` touched by the UTC range [starts_at, ends_at)."""
    first = utc_naive_to_zone(starts_at, tz_name).date()
    # An appointment ending exactly at local midnight does not touch the next day.
    last = utc_naive_to_zone(max(starts_at, ends_at - timedelta(microseconds=1)), tz_name).date()
    day = first
    while day <= last:
        yield day
        day += timedelta(days=1)
