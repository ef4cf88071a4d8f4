"""H3 cell helpers shared by the driver presence index and the ride pickup index."""

import h3

# Approximate hexagon edge length in km per H3 resolution.
_EDGE_LENGTH_KM = {
    5: 8.544,
    6: 3.229,
    7: 1.220,
    8: 0.461,
    9: 0.174,
    10: 0.066,
}


def cell_for(lat: float, lon: float, resolution: int) -> str:
    return h3.latlng_to_cell(lat, lon, resolution)


def ring_count_for_radius(radius_km: float, resolution: int) -> int:
    """Number of k-rings around a center cell needed to cover radius_km."""
    edge_km = _EDGE_LENGTH_KM.get(resolution) or h3.average_hexagon_edge_length(
        resolution, unit="km"
    )
    return max(1, int(radius_km / edge_km) + 1)


def cells_within(lat: float, lon: float, radius_km: float, resolution: int) -> set[str]:
    """All cells whose area may contain a point within radius_km of (lat, lon).

    This is a superset; callers still filter candidates by exact distance.
    """
    center = cell_for(lat, lon, resolution)
    return set(h3.grid_disk(center, ring_count_for_radius(radius_km, resolution)))
