from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from clinic_backend.core import config


def clinic_zone() -> ZoneInfo:
    return ZoneInfo(config.CLINIC_TIMEZONE)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: datetime) -> datetime:
    return ensure_utc(value).replace(tzinfo=None)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def local_date(value: datetime) -> date:
    return ensure_utc(value).astimezone(clinic_zone()).date()


def local_datetime(day: date, wall_time: time) -> datetime:
    """Combine a clinic-local date and wall-clock time into an aware UTC datetime."""
    return datetime.combine(day, wall_time, tzinfo=clinic_zone()).astimezone(timezone.utc)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = local_datetime(day, time(0, 0))
    return start, local_datetime(day + timedelta(days=1), time(0, 0))


def minutes_between(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() // 60)
