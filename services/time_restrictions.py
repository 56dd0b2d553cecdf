"""
Closing-hour token release rules.

Purchases made while a location is closed are paid immediately but their tokens are
released at the location's next opening time. Windows are expressed in the business
civil time zone (Config.BUSINESS_TIMEZONE), never UTC or server-local time.

    Cedar Park    closed [03:00, 11:00)            -> release next day 11:00
    Liberty Hill  closed [23:00, 24:00) + [00:00, 10:00)
                                                   -> release 10:00 (next day if evening)

Everything here is pure: callers inject the instant being evaluated.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Dict, Optional

from utils.datetime_helpers import ensure_aware_utc, get_business_timezone

logger = logging.getLogger(__name__)

CLOSING_HOURS_MESSAGE = "Disclaimer: Tokens bought after closing will be added the next business day."


class LocationCategory(Enum):
    """Locations that hold token releases during closing hours"""
    CEDAR_PARK = "cedar_park"
    LIBERTY_HILL = "liberty_hill"


@dataclass(frozen=True)
class ClosingWindow:
    category: LocationCategory
    display_name: str
    keywords: tuple
    closes_at: time
    reopens_at: time
    cutoff_label: str

    @property
    def crosses_midnight(self) -> bool:
        return self.closes_at > self.reopens_at


CLOSING_WINDOWS: Dict[LocationCategory, ClosingWindow] = {
    LocationCategory.CEDAR_PARK: ClosingWindow(
        category=LocationCategory.CEDAR_PARK,
        display_name="Cedar Park",
        keywords=("cedarpark", "cedar"),
        closes_at=time(3, 0),
        reopens_at=time(11, 0),
        cutoff_label="3:00 AM - 11:00 AM",
    ),
    LocationCategory.LIBERTY_HILL: ClosingWindow(
        category=LocationCategory.LIBERTY_HILL,
        display_name="Liberty Hill",
        keywords=("libertyhill", "liberty"),
        closes_at=time(23, 0),
        reopens_at=time(10, 0),
        cutoff_label="11:00 PM - 10:00 AM",
    ),
}


@dataclass(frozen=True)
class TimeRestriction:
    """Outcome of evaluating a location at an instant"""
    should_delay: bool
    release_at: Optional[datetime] = None  # aware, business time zone
    category: Optional[LocationCategory] = None
    message: str = ""
    local_time: Optional[datetime] = None


def normalize_location(location: str) -> str:
    return re.sub(r"[-\s]", "", (location or "").lower())


def categorize_location(location: str) -> Optional[LocationCategory]:
    """Match a free-form location name to a known category; unknown names return None"""
    normalized = normalize_location(location)
    for window in CLOSING_WINDOWS.values():
        if any(keyword in normalized for keyword in window.keywords):
            return window.category
    return None


def _at_local(day: datetime, at: time) -> datetime:
    # Rebuild through the zone so DST offsets are correct for the target day
    return datetime.combine(day.date(), at, tzinfo=day.tzinfo)


def evaluate(location: str, at: datetime, tz_name: Optional[str] = None) -> TimeRestriction:
    """
    Decide whether tokens for a purchase at `location` completed at `at` must wait.

    Args:
        location: Location name as stored on the payment record
        at: Instant being evaluated; naive values are treated as UTC
        tz_name: Override for the business time zone (tests)

    Returns:
        TimeRestriction with release_at in business-local time when delayed
    """
    local = ensure_aware_utc(at).astimezone(get_business_timezone(tz_name))
    category = categorize_location(location)
    if category is None:
        return TimeRestriction(should_delay=False, local_time=local)

    window = CLOSING_WINDOWS[category]
    now_t = local.time()

    if window.crosses_midnight:
        in_evening = now_t >= window.closes_at
        in_morning = now_t < window.reopens_at
        if not (in_evening or in_morning):
            return TimeRestriction(should_delay=False, category=category, local_time=local)
        release_day = local + timedelta(days=1) if in_evening else local
    else:
        if not (window.closes_at <= now_t < window.reopens_at):
            return TimeRestriction(should_delay=False, category=category, local_time=local)
        # Release is always on the next calendar day
        release_day = local + timedelta(days=1)

    release_at = _at_local(release_day, window.reopens_at)
    return TimeRestriction(
        should_delay=True,
        release_at=release_at,
        category=category,
        message=CLOSING_HOURS_MESSAGE,
        local_time=local,
    )


def get_time_restriction_info(location: str, at: datetime, tz_name: Optional[str] = None) -> Optional[Dict[str, str]]:
    """Display info for a location currently inside its closing window, else None"""
    restriction = evaluate(location, at, tz_name)
    if not restriction.should_delay:
        return None
    window = CLOSING_WINDOWS[restriction.category]
    return {
        "type": window.category.value,
        "message": restriction.message,
        "cutoff_time": window.cutoff_label,
    }
