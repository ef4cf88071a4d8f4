from datetime import timedelta

import pytest

from fare import VehicleType
from tests.factories import DESTINATION, DRIVER_NEAR_PICKUP, FAR_AWAY, PICKUP


@pytest.mark.unit
class TestUpsert:
    def test_insert_and_query(self, geo_index):
        geo_index.upsert_driver_position("d1", *DRIVER_NEAR_PICKUP)
        results = geo_index.query_nearby(*PICKUP, radius_km=1.0)
        assert [r.driver_id for r in results] == ["d1"]
        assert results[0].distance_km < 0.1

    def test_moving_between_cells_keeps_one_entry(self, geo_index):
        geo_index.upsert_driver_position("d1", *PICKUP)
        geo_index.upsert_driver_position("d1", *FAR_AWAY)
        assert len(geo_index) == 1
        assert geo_index.query_nearby(*PICKUP, radius_km=2.0) == []
        assert [r.driver_id for r in geo_index.query_nearby(*FAR_AWAY, radius_km=1.0)] == ["d1"]

    def test_older_ping_is_ignored(self, geo_index, clock):
        now = clock()
        assert geo_index.upsert_driver_position("d1", *PICKUP, timestamp=now)
        assert not geo_index.upsert_driver_position(
            "d1", *FAR_AWAY, timestamp=now - timedelta(seconds=5)
        )
        presence = geo_index.get_presence("d1")
        assert (presence.latitude, presence.longitude) == PICKUP

    def test_vehicle_type_is_kept_when_omitted(self, geo_index):
        geo_index.upsert_driver_position("d1", *PICKUP, vehicle_type=VehicleType.CNG)
        geo_index.upsert_driver_position("d1", *DRIVER_NEAR_PICKUP)
        assert geo_index.get_presence("d1").vehicle_type == VehicleType.CNG


@pytest.mark.unit
class TestQuery:
    def test_sorted_by_distance_then_id(self, geo_index):
        geo_index.upsert_driver_position("d3", *DESTINATION)
        geo_index.upsert_driver_position("d2", *PICKUP)
        geo_index.upsert_driver_position("d1", *PICKUP)
        results = geo_index.query_nearby(*PICKUP, radius_km=5.0)
        assert [r.driver_id for r in results] == ["d1", "d2", "d3"]

    def test_stale_drivers_excluded(self, geo_index, clock):
        geo_index.upsert_driver_position("d1", *PICKUP)
        clock.advance(seconds=61)
        assert geo_index.query_nearby(*PICKUP, radius_km=1.0) == []

    def test_fresh_at_threshold(self, geo_index, clock):
        geo_index.upsert_driver_position("d1", *PICKUP)
        clock.advance(seconds=60)
        assert len(geo_index.query_nearby(*PICKUP, radius_km=1.0)) == 1

    def test_unavailable_drivers_excluded(self, geo_index):
        geo_index.upsert_driver_position("d1", *PICKUP)
        geo_index.mark_unavailable("d1")
        assert geo_index.query_nearby(*PICKUP, radius_km=1.0) == []
        assert len(geo_index.query_nearby(*PICKUP, radius_km=1.0, available_only=False)) == 1
        geo_index.mark_available("d1")
        assert len(geo_index.query_nearby(*PICKUP, radius_km=1.0)) == 1

    def test_busy_flag_applies_to_later_first_ping(self, geo_index):
        geo_index.mark_unavailable("d1")
        geo_index.upsert_driver_position("d1", *PICKUP)
        assert geo_index.get_presence("d1").available is False

    def test_vehicle_type_filter(self, geo_index):
        geo_index.upsert_driver_position("bike-1", *PICKUP, vehicle_type=VehicleType.BIKE)
        geo_index.upsert_driver_position("car-1", *PICKUP, vehicle_type=VehicleType.CAR)
        results = geo_index.query_nearby(*PICKUP, radius_km=1.0, vehicle_type=VehicleType.CAR)
        assert [r.driver_id for r in results] == ["car-1"]

    def test_empty_index(self, geo_index):
        assert geo_index.query_nearby(*PICKUP, radius_km=5.0) == []


@pytest.mark.unit
class TestEviction:
    def test_evict_stale(self, geo_index, clock):
        geo_index.upsert_driver_position("old", *PICKUP)
        clock.advance(seconds=700)
        geo_index.upsert_driver_position("new", *PICKUP)
        assert geo_index.evict_stale(600) == ["old"]
        assert geo_index.get_presence("old") is None
        assert len(geo_index) == 1

    def test_remove_and_clear(self, geo_index):
        geo_index.upsert_driver_position("d1", *PICKUP)
        geo_index.upsert_driver_position("d2", *PICKUP)
        geo_index.remove_driver("d1")
        assert geo_index.get_presence("d1") is None
        geo_index.clear()
        assert len(geo_index) == 0
