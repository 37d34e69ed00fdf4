import random
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from feed_parsing import Anchor, compute_bounds  # noqa: E402
from geo_math import Bounds, haversine_m  # noqa: E402
from spatial_index import SpatialIndex  # noqa: E402


WELLINGTON = Bounds(min_lat=-41.35, max_lat=-41.20, min_lon=174.70, max_lon=174.90)


def _random_anchors(rng: random.Random, count: int):
    return [
        Anchor(
            anchor_id=f"S{i}",
            lat=rng.uniform(WELLINGTON.min_lat, WELLINGTON.max_lat),
            lon=rng.uniform(WELLINGTON.min_lon, WELLINGTON.max_lon),
        )
        for i in range(count)
    ]


def test_radius_query_never_misses_anchors_within_radius():
    rng = random.Random(42)
    anchors = _random_anchors(rng, 600)
    index = SpatialIndex(compute_bounds(anchors), grid_size=50)
    for anchor in anchors:
        index.add_item(anchor.lat, anchor.lon, anchor)

    for _ in range(300):
        lat = rng.uniform(WELLINGTON.min_lat - 0.01, WELLINGTON.max_lat + 0.01)
        lon = rng.uniform(WELLINGTON.min_lon - 0.01, WELLINGTON.max_lon + 0.01)
        radius = rng.uniform(10.0, 2500.0)
        exact = {a.anchor_id for a in anchors if haversine_m(lat, lon, a.lat, a.lon) <= radius}
        found = {a.anchor_id for a in index.get_items_in_radius(lat, lon, radius)}
        assert exact <= found


def test_radius_query_is_local():
    rng = random.Random(7)
    anchors = _random_anchors(rng, 400)
    index = SpatialIndex(compute_bounds(anchors), grid_size=50)
    for anchor in anchors:
        index.add_item(anchor.lat, anchor.lon, anchor)

    found = index.get_items_in_radius(-41.28, 174.78, 200.0)
    assert len(found) < len(anchors)


def test_results_are_deduplicated():
    anchor = Anchor("5016", -41.30, 174.78)
    index = SpatialIndex(WELLINGTON, grid_size=10)
    index.add_item(anchor.lat, anchor.lon, anchor)
    index.add_item(anchor.lat, anchor.lon, anchor)
    assert len(index) == 1
    assert index.get_items_in_radius(anchor.lat, anchor.lon, 5000.0) == [anchor]


def test_out_of_bounds_points_clamp_to_edge_cells():
    index = SpatialIndex(WELLINGTON, grid_size=10)
    assert index.cell_coords(-50.0, 100.0) == (0, 0)
    assert index.cell_coords(0.0, 200.0) == (9, 9)

    anchor = Anchor("edge", -41.0, 175.5)
    index.add_item(anchor.lat, anchor.lon, anchor)
    assert index.get_items_in_cell(WELLINGTON.max_lat, WELLINGTON.max_lon) == [anchor]


def test_single_anchor_bounds_still_index():
    anchor = Anchor("only", -41.30, 174.78)
    index = SpatialIndex(compute_bounds([anchor]), grid_size=50)
    index.add_item(anchor.lat, anchor.lon, anchor)
    assert index.get_items_in_radius(-41.3005, 174.7805, 200.0) == [anchor]


def test_clear_and_stats():
    rng = random.Random(3)
    anchors = _random_anchors(rng, 50)
    index = SpatialIndex(WELLINGTON, grid_size=5)
    for anchor in anchors:
        index.add_item(anchor.lat, anchor.lon, anchor)

    stats = index.get_stats()
    assert stats["total_items"] == 50
    assert stats["total_cells"] == 25
    assert 0 < stats["occupied_cells"] <= 25

    index.clear()
    assert len(index) == 0
    assert index.get_items_in_radius(-41.28, 174.78, 10000.0) == []
