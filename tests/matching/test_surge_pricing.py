from datetime import datetime

import pytest

from core.clock import FixedClock
from matching.surge_pricing import SurgeConditions, SurgePricingCalculator

# 2026-10-14 is a Wednesday; Dhaka is UTC+6.
WEEKDAY_NOON_UTC = datetime(2026, 10, 14, 6, 0)
WEEKDAY_8AM_LOCAL = datetime(2026, 10, 14, 2, 0)
SATURDAY_NOON_UTC = datetime(2026, 10, 17, 6, 0)
SATURDAY_6PM_LOCAL = datetime(2026, 10, 17, 12, 0)


@pytest.fixture
def surge():
    return SurgePricingCalculator(clock=FixedClock(WEEKDAY_NOON_UTC))


@pytest.mark.unit
class TestSurgeMultiplier:
    def test_off_peak_weekday(self, surge):
        assert surge.multiplier() == 1.0

    def test_peak_hour(self, surge):
        assert surge.multiplier(at=WEEKDAY_8AM_LOCAL) == 1.5

    def test_weekend(self, surge):
        assert surge.multiplier(at=SATURDAY_NOON_UTC) == 1.1

    def test_weekend_peak(self, surge):
        assert surge.multiplier(at=SATURDAY_6PM_LOCAL) == 1.65

    @pytest.mark.parametrize(
        "conditions,expected",
        [
            (SurgeConditions(bad_weather=True), 1.3),
            (SurgeConditions(high_demand=True), 1.5),
            (SurgeConditions(bad_weather=True, high_demand=True), 1.95),
        ],
    )
    def test_reported_conditions(self, surge, conditions, expected):
        assert surge.multiplier(conditions) == expected

    def test_never_below_one(self, surge):
        for hour in range(24):
            at = datetime(2026, 10, 14, hour, 0)
            assert surge.multiplier(at=at) >= 1.0

    def test_peak_window_end_is_exclusive(self):
        assert SurgePricingCalculator.is_peak_hour(datetime(2026, 10, 14, 9, 0)) is False
        assert SurgePricingCalculator.is_peak_hour(datetime(2026, 10, 14, 8, 59)) is True
