"""Pick the remote browser region closest to a caller's timezone."""

from datetime import datetime, timezone as dt_timezone
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo


class Region(str, Enum):
    US_WEST = "us-west-2"
    US_EAST = "us-east-1"
    EU_CENTRAL = "eu-central-1"
    AP_SOUTHEAST = "ap-southeast-1"


DEFAULT_REGION = Region.US_WEST

# East-coast equivalent zones
EXACT_TIMEZONES = {
    "America/New_York": Region.US_EAST,
    "America/Detroit": Region.US_EAST,
    "America/Toronto": Region.US_EAST,
    "America/Montreal": Region.US_EAST,
    "America/Boston": Region.US_EAST,
    "America/Chicago": Region.US_EAST,
}

CONTINENT_REGIONS = {
    "America": Region.US_WEST,
    "US": Region.US_WEST,
    "Canada": Region.US_WEST,
    "Europe": Region.EU_CENTRAL,
    "Africa": Region.EU_CENTRAL,
    "Asia": Region.AP_SOUTHEAST,
    "Australia": Region.AP_SOUTHEAST,
    "Pacific": Region.AP_SOUTHEAST,
}

# (exclusive upper bound in hours, region), checked in order; the last band is open-ended.
OFFSET_BANDS = [
    (-3.0, Region.US_WEST),      # UTC-4 and further west
    (5.0, Region.EU_CENTRAL),    # UTC-3 .. UTC+4
    (float("inf"), Region.AP_SOUTHEAST),  # UTC+5 and further east
]


def utc_offset_hours(tz_name: str, now: Optional[datetime] = None) -> float:
    """Current UTC offset of ``tz_name`` in hours. Raises for unknown or malformed names."""
    moment = now or datetime.now(dt_timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt_timezone.utc)
    offset = moment.astimezone(ZoneInfo(tz_name)).utcoffset()
    return offset.total_seconds() / 3600 if offset is not None else 0.0


def region_for_offset(hours: float) -> Region:
    for upper, region in OFFSET_BANDS:
        if hours < upper:
            return region
    return DEFAULT_REGION


def select_region(tz_name: Optional[str], *, now: Optional[datetime] = None) -> Region:
    """Map a timezone name to a deployment region. Never raises."""
    if not tz_name:
        return DEFAULT_REGION
    try:
        if tz_name in EXACT_TIMEZONES:
            return EXACT_TIMEZONES[tz_name]

        prefix = tz_name.split("/")[0]
        if prefix in CONTINENT_REGIONS:
            return CONTINENT_REGIONS[prefix]

        return region_for_offset(utc_offset_hours(tz_name, now))
    except Exception:
        return DEFAULT_REGION
