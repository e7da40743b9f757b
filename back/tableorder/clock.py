from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from .settings import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite hands them back without tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def business_tz() -> ZoneInfo:
    return ZoneInfo(settings.business_timezone)


def business_day(now: datetime) -> str:
    """Calendar day (YYYYMMDD) in the restaurant's own timezone."""
    return as_utc(now).astimezone(business_tz()).strftime("%Y%m%d")


def business_date(now: datetime) -> date:
    return as_utc(now).astimezone(business_tz()).date()


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """UTC [start, end) of a business-timezone calendar day."""
    start = datetime.combine(day, time.min, tzinfo=business_tz())
    end = start + timedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)
