"""
Datetime helper utilities to ensure consistent timezone handling across the application.

CRITICAL: All persisted timestamps are timezone-naive UTC (DateTime(timezone=False)).
Business rules that depend on local opening hours convert explicitly through the
configured business time zone; nothing relies on server-local time.
"""

from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo
import logging

from config import Config

logger = logging.getLogger(__name__)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def ensure_aware_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and return an aware UTC datetime"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def get_naive_utc_now() -> datetime:
    """
    Get current UTC time as naive datetime.

    This is the recommended way to get timestamps for model fields.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


@lru_cache(maxsize=8)
def get_business_timezone(name: Optional[str] = None) -> ZoneInfo:
    """ZoneInfo for the configured business time zone (or an explicit override)"""
    return ZoneInfo(name or Config.BUSINESS_TIMEZONE)


def to_business_time(dt: datetime, tz_name: Optional[str] = None) -> datetime:
    """Convert any datetime (naive values are UTC) to aware business-local time"""
    return ensure_aware_utc(dt).astimezone(get_business_timezone(tz_name))


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 string with explicit UTC offset, for API snapshots"""
    if dt is None:
        return None
    return ensure_aware_utc(dt).isoformat()
