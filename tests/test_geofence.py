import pytest

from delivery_hub.services.geofence import GeofenceError, geofence_hash, same_geofence
from tests.fixtures_seed import square


def test_hash_ignores_start_vertex_and_orientation():
    ring = square(10.7, 59.9)["coordinates"][0]
    rotated = {"type": "Polygon", "coordinates": [ring[1:] + ring[1:2]]}
    reversed_ring = {"type": "Polygon", "coordinates": [list(reversed(ring))]}

    assert same_geofence(square(10.7, 59.9), rotated)
    assert same_geofence(square(10.7, 59.9), reversed_ring)


def test_polygon_and_single_member_multipolygon_hash_equal():
    poly = square(5.31, 60.39)
    multi = {"type": "MultiPolygon", "coordinates": [poly["coordinates"]]}
    assert geofence_hash(poly) == geofence_hash(multi)


def test_sub_grid_jitter_is_ignored_but_real_moves_are_not():
    base = square(10.7, 59.9)
    jittered = square(10.7 + 1e-9, 59.9)
    moved = square(10.71, 59.9)

    assert same_geofence(base, jittered)
    assert not same_geofence(base, moved)


def test_feature_wrapper_and_missing_geofence():
    poly = square(10.7, 59.9)
    assert geofence_hash({"type": "Feature", "geometry": poly, "properties": {}}) == geofence_hash(poly)
    assert geofence_hash(None) is None
    assert geofence_hash({"type": "Feature", "geometry": None}) is None


@pytest.mark.parametrize("raw", [
    {"type": "Point", "coordinates": [10.7, 59.9]},
    {"type": "LineString", "coordinates": [[10.7, 59.9], [10.8, 59.9]]},
    "POLYGON((0 0, 1 0, 1 1, 0 0))",
])
def test_non_polygonal_or_malformed_geofence_raises(raw):
    with pytest.raises(GeofenceError):
        geofence_hash(raw)
