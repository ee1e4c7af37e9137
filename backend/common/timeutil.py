from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from common.config import settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def app_timezone():
    tz_name = (settings.APP_TIMEZONE or "").strip() or "UTC"
    try:
        return ZoneInfo(tz_name)
    except ZoneInfoNotFoundError:
        return timezone.utc


def local_now() -> datetime:
    return datetime.now(app_timezone())


def as_aware(value: datetime) -> datetime:
    # Some drivers hand back naive UTC timestamps.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
