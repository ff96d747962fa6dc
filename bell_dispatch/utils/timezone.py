from datetime import datetime, timedelta, timezone as dt_timezone, tzinfo
import logging
from typing import Optional

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from bell_dispatch.core.config import settings

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=dt_timezone.utc)


def get_zoneinfo(tz_name: Optional[str] = None) -> tzinfo:
    """
    Resolve an IANA zone name, falling back to settings.DEFAULT_TIMEZONE and
    finally to UTC when the name is blank or unknown.
    """
    for candidate in (tz_name, settings.DEFAULT_TIMEZONE):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("[Timezone] Unknown timezone %r, falling back", candidate)
    return dt_timezone.utc


def utc_now() -> datetime:
    return datetime.now(dt_timezone.utc)


def to_utc_aware(dt: datetime | None) -> datetime | None:
    """
    Normalize any datetime to UTC-aware (tzinfo=UTC).
    - Aware datetimes are converted to UTC
    - Naive datetimes are assumed UTC and tz attached
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_timezone.utc)
    return dt.astimezone(dt_timezone.utc)


def to_local_naive(dt: datetime, tz: tzinfo) -> datetime:
    """Wall-clock reading of an instant in `tz`, with tzinfo stripped."""
    return to_utc_aware(dt).astimezone(tz).replace(tzinfo=None)


def from_local_naive(local: datetime, tz: tzinfo) -> datetime:
    """Interpret a wall-clock reading in `tz` and return the UTC instant."""
    return local.replace(tzinfo=tz).astimezone(dt_timezone.utc)


def to_epoch_ms(dt: datetime) -> int:
    return (to_utc_aware(dt) - EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(value: float) -> datetime:
    return EPOCH + timedelta(milliseconds=int(value))


def isoformat_utc(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return to_utc_aware(dt).isoformat().replace("+00:00", "Z")
