import h3
import pytest

from geo.cells import cell_for, cells_within, ring_count_for_radius
from geo.distance import haversine_distance_km
from tests.factories import DESTINATION, FAR_AWAY, PICKUP


@pytest.mark.unit
class TestCells:
    def test_cell_for_matches_resolution(self):
        cell = cell_for(*PICKUP, 8)
        assert h3.get_resolution(cell) == 8

    def test_ring_count_grows_with_radius(self):
        assert ring_count_for_radius(0.1, 8) == 1
        assert ring_count_for_radius(5, 8) > ring_count_for_radius(1, 8)

    def test_cells_within_contains_center(self):
        assert cell_for(*PICKUP, 6) in cells_within(*PICKUP, 1.0, 6)

    def test_cells_within_covers_points_inside_radius(self):
        radius = haversine_distance_km(*PICKUP, *DESTINATION) + 0.1
        for resolution in (6, 8):
            cells = cells_within(*PICKUP, radius, resolution)
            assert cell_for(*DESTINATION, resolution) in cells

    def test_cells_within_excludes_far_points_for_small_radius(self):
        assert cell_for(*FAR_AWAY, 8) not in cells_within(*PICKUP, 1.0, 8)
