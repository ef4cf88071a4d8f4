import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

import h3

from core.clock import Clock, as_naive_utc, utc_now
from fare import VehicleType
from geo.cells import cell_for, ring_count_for_radius
from geo.distance import haversine_distance_km


@dataclass(frozen=True)
class DriverPresence:
    driver_id: str
    latitude: float
    longitude: float
    last_seen: datetime
    cell: str
    available: bool = True
    vehicle_type: VehicleType | None = None


@dataclass(frozen=True)
class NearbyDriver:
    driver_id: str
    distance_km: float
    presence: DriverPresence


class GeoIndex:
    """Spatial index of driver presence using H3 hexagonal cells.

    Thread-safe: all state is guarded by one lock; every operation touches a
    single driver's entry except queries, which only read.
    """

    def __init__(
        self,
        h3_resolution: int = 8,
        staleness_threshold_seconds: float = 60.0,
        clock: Clock = utc_now,
    ):
        self._h3_resolution = h3_resolution
        self._staleness = timedelta(seconds=staleness_threshold_seconds)
        self._clock = clock
        self._h3_cells: dict[str, set[str]] = {}
        self._presence: dict[str, DriverPresence] = {}
        # Drivers on an active ride; survives eviction so a returning ping stays busy
        self._busy: set[str] = set()
        self._lock = threading.Lock()

    @property
    def staleness_threshold(self) -> timedelta:
        return self._staleness

    def upsert_driver_position(
        self,
        driver_id: str,
        lat: float,
        lon: float,
        timestamp: datetime | None = None,
        vehicle_type: VehicleType | None = None,
    ) -> bool:
        """Record a position ping; returns False when an older ping arrives late."""
        seen_at = as_naive_utc(timestamp) if timestamp else self._clock()
        new_cell = cell_for(lat, lon, self._h3_resolution)

        with self._lock:
            current = self._presence.get(driver_id)
            if current is not None and seen_at < current.last_seen:
                return False

            if current is None:
                presence = DriverPresence(
                    driver_id=driver_id,
                    latitude=lat,
                    longitude=lon,
                    last_seen=seen_at,
                    cell=new_cell,
                    available=driver_id not in self._busy,
                    vehicle_type=vehicle_type,
                )
            else:
                if current.cell != new_cell:
                    self._discard_from_cell(driver_id, current.cell)
                presence = replace(
                    current,
                    latitude=lat,
                    longitude=lon,
                    last_seen=seen_at,
                    cell=new_cell,
                    vehicle_type=vehicle_type or current.vehicle_type,
                )

            self._h3_cells.setdefault(new_cell, set()).add(driver_id)
            self._presence[driver_id] = presence
            return True

    def mark_unavailable(self, driver_id: str) -> None:
        self._set_available(driver_id, False)

    def mark_available(self, driver_id: str) -> None:
        self._set_available(driver_id, True)

    def get_presence(self, driver_id: str) -> DriverPresence | None:
        with self._lock:
            return self._presence.get(driver_id)

    def remove_driver(self, driver_id: str) -> None:
        with self._lock:
            presence = self._presence.pop(driver_id, None)
            if presence is not None:
                self._discard_from_cell(driver_id, presence.cell)

    def query_nearby(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        vehicle_type: VehicleType | None = None,
        available_only: bool = True,
    ) -> list[NearbyDriver]:
        """Fresh drivers within radius_km, nearest first, ties broken by driver_id."""
        cutoff = self._clock() - self._staleness
        center_cell = cell_for(lat, lon, self._h3_resolution)
        max_k = ring_count_for_radius(radius_km, self._h3_resolution)

        with self._lock:
            if not self._presence:
                return []

            candidates: list[NearbyDriver] = []
            for cell in h3.grid_disk(center_cell, max_k):
                for driver_id in self._h3_cells.get(cell, ()):
                    presence = self._presence[driver_id]
                    if presence.last_seen < cutoff:
                        continue
                    if available_only and not presence.available:
                        continue
                    if vehicle_type is not None and presence.vehicle_type != vehicle_type:
                        continue
                    distance = haversine_distance_km(
                        lat, lon, presence.latitude, presence.longitude
                    )
                    if distance <= radius_km:
                        candidates.append(NearbyDriver(driver_id, distance, presence))

        candidates.sort(key=lambda c: (c.distance_km, c.driver_id))
        return candidates

    def evict_stale(self, max_age_seconds: float) -> list[str]:
        """Drop presences not seen for max_age_seconds; returns evicted driver ids."""
        cutoff = self._clock() - timedelta(seconds=max_age_seconds)
        with self._lock:
            evicted = [d for d, p in self._presence.items() if p.last_seen < cutoff]
            for driver_id in evicted:
                presence = self._presence.pop(driver_id)
                self._discard_from_cell(driver_id, presence.cell)
        return evicted

    def clear(self) -> None:
        with self._lock:
            self._h3_cells.clear()
            self._presence.clear()
            self._busy.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._presence)

    def _set_available(self, driver_id: str, available: bool) -> None:
        with self._lock:
            if available:
                self._busy.discard(driver_id)
            else:
                self._busy.add(driver_id)
            presence = self._presence.get(driver_id)
            if presence is not None and presence.available != available:
                self._presence[driver_id] = replace(presence, available=available)

    def _discard_from_cell(self, driver_id: str, cell: str) -> None:
        # Caller holds the lock
        members = self._h3_cells.get(cell)
        if members is None:
            return
        members.discard(driver_id)
        if not members:
            del self._h3_cells[cell]
