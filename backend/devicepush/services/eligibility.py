"""Eligibility filter - decides whether a device should receive a notification.

Everything here is a pure function of its arguments: no database access and
no clock reads beyond an explicit ``now``.

Quiet-hours boundary rule: times are compared at minute resolution on a
24-hour clock and both ends of the window are inside it. For a window
22:00-08:00, 22:00 and 08:00 are blocked and 08:01 is allowed. A window whose
start is after its end spans midnight and blocks [start, 24:00) and
[00:00, end].
"""
import logging
import re
from datetime import datetime, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

_CLOCK_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

# Reasons returned by check_eligibility
ALLOWED = "allowed"
INACTIVE = "inactive"
DISABLED = "disabled"
CATEGORY_DISABLED = "category_disabled"
PRIORITY_DISABLED = "priority_disabled"
QUIET_HOURS = "quiet_hours"


def is_valid_clock(value: object) -> bool:
    """True for a zero-padded 24-hour ``HH:MM`` string."""
    return isinstance(value, str) and bool(_CLOCK_RE.match(value))


def clock_to_minutes(value: str) -> int:
    """Convert ``HH:MM`` to minutes after midnight."""
    match = _CLOCK_RE.match(value)
    if not match:
        raise ValueError(f"Invalid clock time: {value!r} (expected HH:MM)")
    return int(match.group(1)) * 60 + int(match.group(2))


def in_quiet_window(current: str, start: str, end: str) -> bool:
    """Check whether ``current`` falls inside the quiet window [start, end]."""
    current_minutes = clock_to_minutes(current)
    start_minutes = clock_to_minutes(start)
    end_minutes = clock_to_minutes(end)

    if start_minutes > end_minutes:
        # Overnight quiet hours (e.g., 22:00 - 08:00)
        return current_minutes >= start_minutes or current_minutes <= end_minutes
    return start_minutes <= current_minutes <= end_minutes


def local_clock(now: datetime, tz_name: Optional[str]) -> str:
    """Format ``now`` as ``HH:MM`` in the device's timezone.

    Naive datetimes are taken to be UTC.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    tz = timezone.utc
    if tz_name and tz_name.upper() != "UTC":
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown device timezone {tz_name!r}, using UTC")

    return now.astimezone(tz).strftime("%H:%M")


def is_in_quiet_hours(quiet_hours: Optional[dict], now: datetime, tz_name: Optional[str] = None) -> bool:
    """Check if ``now`` is inside an enabled quiet-hours window."""
    if not quiet_hours or not quiet_hours.get("enabled"):
        return False

    start = quiet_hours.get("start_time")
    end = quiet_hours.get("end_time")
    if not is_valid_clock(start) or not is_valid_clock(end):
        logger.warning(f"Ignoring malformed quiet hours window {start!r}-{end!r}")
        return False

    return in_quiet_window(local_clock(now, tz_name), start, end)


def check_eligibility(
    device,
    category: str,
    priority: str,
    now: datetime,
    respect_quiet_hours: bool = True,
) -> Tuple[bool, str]:
    """Check if a device may receive a notification.

    ``device`` is anything with ``is_active``, ``preferences`` and
    ``location`` attributes (normally a :class:`Device` row).

    Returns (allowed, reason) tuple.
    """
    if not device.is_active:
        return False, INACTIVE

    preferences = device.preferences or {}
    if not preferences.get("enabled", False):
        return False, DISABLED

    if not (preferences.get("categories") or {}).get(category, False):
        return False, CATEGORY_DISABLED

    if not (preferences.get("priority") or {}).get(priority, False):
        return False, PRIORITY_DISABLED

    if respect_quiet_hours:
        tz_name = (device.location or {}).get("timezone")
        if is_in_quiet_hours(preferences.get("quiet_hours"), now, tz_name):
            return False, QUIET_HOURS

    return True, ALLOWED


def is_eligible(device, category: str, priority: str, now: datetime, respect_quiet_hours: bool = True) -> bool:
    """Predicate form of :func:`check_eligibility`."""
    allowed, _ = check_eligibility(device, category, priority, now, respect_quiet_hours)
    return allowed
