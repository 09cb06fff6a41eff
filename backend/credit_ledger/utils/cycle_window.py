"""Allocation window arithmetic

Windows are always derived as ``anchor + k months`` from a fixed anchor
(signup time, or the billing anchor of a subscription) rather than by
stepping from the previous window end, so an anchor on the 31st keeps
landing on the last day of short months without drifting.
"""
import calendar
from datetime import datetime, timezone
from typing import Optional, Tuple


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by whole calendar months, clamping the day to the target month"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _months_between(start: datetime, end: datetime) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


def window_containing(anchor: datetime, now: datetime) -> Tuple[datetime, datetime]:
    """Return the ``[anchor + k, anchor + k + 1)`` month window that contains ``now``

    ``now`` before the anchor yields the first window.
    """
    anchor = as_utc(anchor)
    now = as_utc(now)
    if now < anchor:
        return anchor, add_months(anchor, 1)

    k = _months_between(anchor, now)
    while k > 0 and add_months(anchor, k) > now:
        k -= 1
    while add_months(anchor, k + 1) <= now:
        k += 1
    return add_months(anchor, k), add_months(anchor, k + 1)


def compute_profile_cycle_window(created_at: datetime, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Fixed monthly period since signup"""
    return window_containing(created_at, now or datetime.now(timezone.utc))


def advance_rolling_window(anchor: datetime, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Subscription window containing ``now``, counted in whole months from the billing anchor"""
    return window_containing(anchor, now or datetime.now(timezone.utc))


def is_anchored_on(anchor: Optional[datetime], value: Optional[datetime]) -> bool:
    """Whether ``value`` is one of the month boundaries of ``anchor``"""
    if anchor is None or value is None:
        return False
    return window_containing(anchor, value)[0] == as_utc(value)


def is_cycle_due(cycle_end: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if cycle_end is None:
        return True
    return as_utc(cycle_end) <= as_utc(now or datetime.now(timezone.utc))
