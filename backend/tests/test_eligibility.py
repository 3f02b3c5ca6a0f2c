"""Tests for the eligibility filter and quiet hours."""

from datetime import datetime
from types import SimpleNamespace

import pytest

from devicepush.models.device import default_preferences
from devicepush.services.eligibility import (
    ALLOWED,
    CATEGORY_DISABLED,
    DISABLED,
    INACTIVE,
    PRIORITY_DISABLED,
    QUIET_HOURS,
    check_eligibility,
    clock_to_minutes,
    in_quiet_window,
    is_eligible,
    is_in_quiet_hours,
    is_valid_clock,
    local_clock,
)


def _device(is_active=True, timezone="UTC", **preference_overrides):
    preferences = default_preferences()
    preferences.update(preference_overrides)
    return SimpleNamespace(is_active=is_active, preferences=preferences, location={"timezone": timezone})


def _quiet(start="22:00", end="08:00", enabled=True):
    return {"enabled": enabled, "start_time": start, "end_time": end}


def _at(hour, minute=0):
    return datetime(2024, 3, 10, hour, minute)


class TestClock:

    def test_valid_clock(self):
        assert is_valid_clock("00:00")
        assert is_valid_clock("23:59")
        assert not is_valid_clock("24:00")
        assert not is_valid_clock("7:30")
        assert not is_valid_clock(None)

    def test_clock_to_minutes(self):
        assert clock_to_minutes("00:00") == 0
        assert clock_to_minutes("08:01") == 481
        assert clock_to_minutes("23:59") == 1439

    def test_clock_to_minutes_rejects_garbage(self):
        with pytest.raises(ValueError):
            clock_to_minutes("noon")

    def test_local_clock_converts_timezone(self):
        # 12:00 UTC is 07:00 in New York during EST
        assert local_clock(datetime(2024, 1, 15, 12, 0), "America/New_York") == "07:00"

    def test_local_clock_unknown_zone_falls_back_to_utc(self):
        assert local_clock(_at(12, 30), "Not/AZone") == "12:30"


class TestQuietWindow:
    """22:00-08:00 spans midnight; both ends are inside the window."""

    @pytest.mark.parametrize("current", ["22:00", "23:00", "00:00", "07:59", "08:00"])
    def test_overnight_window_blocks(self, current):
        assert in_quiet_window(current, "22:00", "08:00")

    @pytest.mark.parametrize("current", ["08:01", "12:00", "21:59"])
    def test_overnight_window_allows(self, current):
        assert not in_quiet_window(current, "22:00", "08:00")

    def test_same_day_window(self):
        assert in_quiet_window("13:00", "12:00", "14:00")
        assert in_quiet_window("14:00", "12:00", "14:00")
        assert not in_quiet_window("14:01", "12:00", "14:00")
        assert not in_quiet_window("11:59", "12:00", "14:00")

    def test_disabled_window_never_blocks(self):
        assert not is_in_quiet_hours(_quiet(enabled=False), _at(23), "UTC")

    def test_malformed_window_never_blocks(self):
        assert not is_in_quiet_hours(_quiet(start="late"), _at(23), "UTC")

    def test_window_uses_device_timezone(self):
        # 03:00 UTC is 22:00 the previous evening in New York (EST)
        assert is_in_quiet_hours(_quiet(), datetime(2024, 1, 15, 3, 0), "America/New_York")
        # 14:00 UTC is 09:00 in New York
        assert not is_in_quiet_hours(_quiet(), datetime(2024, 1, 15, 14, 0), "America/New_York")


class TestCheckEligibility:

    def test_defaults_allow_general(self):
        assert check_eligibility(_device(), "general", "normal", _at(12)) == (True, ALLOWED)

    def test_inactive_device(self):
        assert check_eligibility(_device(is_active=False), "general", "normal", _at(12)) == (False, INACTIVE)

    def test_disabled_preferences(self):
        assert check_eligibility(_device(enabled=False), "general", "normal", _at(12)) == (False, DISABLED)

    def test_marketing_off_by_default(self):
        assert check_eligibility(_device(), "marketing", "normal", _at(12)) == (False, CATEGORY_DISABLED)

    def test_priority_disabled(self):
        priority = {"low": False, "normal": True, "high": True, "critical": True}
        assert check_eligibility(_device(priority=priority), "general", "low", _at(12)) == (False, PRIORITY_DISABLED)

    @pytest.mark.parametrize("hour,minute,expected", [
        (23, 0, False),
        (7, 59, False),
        (8, 0, False),
        (8, 1, True),
        (21, 59, True),
    ])
    def test_quiet_hours_boundaries(self, hour, minute, expected):
        device = _device(quiet_hours=_quiet())
        assert is_eligible(device, "general", "normal", _at(hour, minute)) is expected

    def test_quiet_hours_reason(self):
        device = _device(quiet_hours=_quiet())
        assert check_eligibility(device, "general", "normal", _at(23)) == (False, QUIET_HOURS)

    def test_quiet_hours_can_be_ignored(self):
        device = _device(quiet_hours=_quiet())
        assert is_eligible(device, "general", "normal", _at(23), respect_quiet_hours=False)

    def test_unknown_category_is_not_eligible(self):
        assert not is_eligible(_device(), "newsletter", "normal", _at(12))
