from datetime import UTC, datetime, timedelta, timezone

import pytest

from core.clock import FixedClock, as_naive_utc, utc_now


@pytest.mark.unit
class TestClock:
    def test_utc_now_is_naive(self):
        assert utc_now().tzinfo is None

    def test_as_naive_utc_converts_offsets(self):
        dhaka = timezone(timedelta(hours=6))
        value = datetime(2026, 10, 14, 12, 0, tzinfo=dhaka)
        assert as_naive_utc(value) == datetime(2026, 10, 14, 6, 0)
        assert as_naive_utc(datetime(2026, 1, 1)) == datetime(2026, 1, 1)

    def test_fixed_clock_advances(self):
        clock = FixedClock(datetime(2026, 10, 14, 6, 0, tzinfo=UTC))
        assert clock() == datetime(2026, 10, 14, 6, 0)
        clock.advance(seconds=90)
        assert clock() == datetime(2026, 10, 14, 6, 1, 30)
        clock.set(datetime(2027, 1, 1))
        assert clock() == datetime(2027, 1, 1)
