from dataclasses import dataclass
from datetime import datetime, timedelta

from core.clock import Clock, utc_now

PEAK_HOURS: tuple[tuple[int, int], ...] = ((7, 9), (17, 19))
PEAK_HOUR_MULTIPLIER = 1.5
WEEKEND_MULTIPLIER = 1.1
BAD_WEATHER_MULTIPLIER = 1.3
HIGH_DEMAND_MULTIPLIER = 1.5


@dataclass(frozen=True)
class SurgeConditions:
    """Externally reported demand signals for a request."""

    bad_weather: bool = False
    high_demand: bool = False


class SurgePricingCalculator:
    """Derives a surge multiplier from local time and reported conditions.

    ``utc_offset_hours`` converts the engine's UTC clock into the service
    area's local time for the peak-hour and weekend rules.
    """

    def __init__(self, clock: Clock = utc_now, utc_offset_hours: float = 6.0) -> None:
        self._clock = clock
        self._utc_offset_hours = utc_offset_hours

    def multiplier(
        self,
        conditions: SurgeConditions | None = None,
        at: datetime | None = None,
    ) -> float:
        local = self._to_local(at or self._clock())
        conditions = conditions or SurgeConditions()

        multiplier = 1.0
        if self.is_peak_hour(local):
            multiplier *= PEAK_HOUR_MULTIPLIER
        if self.is_weekend(local):
            multiplier *= WEEKEND_MULTIPLIER
        if conditions.bad_weather:
            multiplier *= BAD_WEATHER_MULTIPLIER
        if conditions.high_demand:
            multiplier *= HIGH_DEMAND_MULTIPLIER

        return round(multiplier, 2)

    @staticmethod
    def is_peak_hour(local: datetime) -> bool:
        return any(start <= local.hour < end for start, end in PEAK_HOURS)

    @staticmethod
    def is_weekend(local: datetime) -> bool:
        # Saturday and Sunday
        return local.weekday() >= 5

    def _to_local(self, value: datetime) -> datetime:
        return value + timedelta(hours=self._utc_offset_hours)
