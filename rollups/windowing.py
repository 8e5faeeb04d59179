from __future__ import annotations
from typing import Optional
from rollups.schemas import WindowKind

HOUR_SECONDS = 3600
DAY_SECONDS = 86400
# 1970-01-01 was a Thursday, three days after the Monday that starts its ISO week
_EPOCH_WEEKDAY = 3
# days from 0000-03-01 to 1970-01-01 in the proleptic Gregorian calendar
_EPOCH_SHIFT = 719468
_ERA_DAYS = 146097

ALLTIME_START = -1

def _day_of_month(days: int) -> int:
    """1-based day of month for a count of days since 1970-01-01.

    Years are counted from March so the leap day falls last; no year range
    limit applies.
    """
    z = days + _EPOCH_SHIFT
    doe = z - (z // _ERA_DAYS) * _ERA_DAYS
    yoe = (doe - doe // 1460 + doe // 36524 - doe // 146096) // 365
    doy = doe - (365 * yoe + yoe // 4 - yoe // 100)
    mp = (5 * doy + 2) // 153
    return doy - (153 * mp + 2) // 5 + 1

def window_start(window: WindowKind, timestamp: int) -> int:
    """Truncate a UTC epoch timestamp to the start of its bucket for ``window``.

    ``AllTime`` collapses every timestamp into the ``-1`` sentinel. ``Month``
    returns the first day of the month at 00:00 UTC.
    """
    window = WindowKind(window)
    ts = int(timestamp)
    if window is WindowKind.HOUR:
        return ts - ts % HOUR_SECONDS
    if window is WindowKind.DAY:
        return ts - ts % DAY_SECONDS
    if window is WindowKind.WEEK:
        days = ts // DAY_SECONDS
        return (days - (days + _EPOCH_WEEKDAY) % 7) * DAY_SECONDS
    if window is WindowKind.MONTH:
        days = ts // DAY_SECONDS
        return (days - _day_of_month(days) + 1) * DAY_SECONDS
    return ALLTIME_START

def collection_name(application_id: str, window: Optional[WindowKind] = None) -> str:
    application_id = application_id.lower()
    if window is None:
        return f"{application_id}_all"
    return f"{application_id}_events_{WindowKind(window)}"
