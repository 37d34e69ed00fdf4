import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from feed_parsing import VehicleReport  # noqa: E402
from position_history import HistoryStore, Sample  # noqa: E402
from synth_config import HistoryConfig  # noqa: E402


def _sample(entity_id, ts, lat=-41.30, lon=174.78, bearing=0.0, group_id="14"):
    return Sample(entity_id=entity_id, lat=lat, lon=lon, bearing=bearing, group_id=group_id, timestamp=ts)


def _store(**overrides):
    return HistoryStore(HistoryConfig(**overrides))


class TestInterpolation:
    def test_midpoint_lies_strictly_between_samples(self):
        store = _store()
        store.append("B1", _sample("B1", 0, lat=-41.30, lon=174.78, bearing=90))
        store.append("B1", _sample("B1", 10000, lat=-41.29, lon=174.79, bearing=180))

        pos = store.interpolate_at("B1", 5000)
        assert pos is not None
        assert -41.30 < pos.lat < -41.29
        assert 174.78 < pos.lon < 174.79
        assert pos.lat == pytest.approx(-41.295)
        assert pos.bearing == pytest.approx(135.0)
        assert pos.timestamp == 5000

    def test_endpoints_return_exact_bearing(self):
        store = _store()
        store.append("B1", _sample("B1", 0, bearing=12.3))
        store.append("B1", _sample("B1", 10000, lat=-41.29, bearing=271.7))

        start = store.interpolate_at("B1", 0)
        end = store.interpolate_at("B1", 10000)
        assert start.bearing == 12.3
        assert start.lat == -41.30
        assert end.bearing == 271.7
        assert end.lat == -41.29

    def test_bearing_crosses_north_the_short_way(self):
        store = _store()
        store.append("B1", _sample("B1", 0, bearing=350))
        store.append("B1", _sample("B1", 10000, bearing=10))

        bearing = store.interpolate_at("B1", 5000).bearing
        assert min(bearing, 360.0 - bearing) < 1e-9

    def test_smoothstep_eases_progress(self):
        store = _store()
        store.append("B1", _sample("B1", 0, lat=0.0))
        store.append("B1", _sample("B1", 1000, lat=1.0))
        # progress 0.25 -> 3(0.25)^2 - 2(0.25)^3
        assert store.interpolate_at("B1", 250).lat == pytest.approx(0.15625)

    def test_single_sample_within_tolerance(self):
        store = _store()
        store.append("new", _sample("new", 50000))
        assert store.interpolate_at("new", 25000) is not None
        assert store.interpolate_at("new", 10000) is None
        assert store.interpolate_at("new", 10000, tolerance_ms=45000) is not None

    def test_falls_back_to_most_recent_when_display_time_is_ahead(self):
        store = _store()
        store.append("B1", _sample("B1", 0, lat=-41.30))
        store.append("B1", _sample("B1", 10000, lat=-41.29))
        pos = store.interpolate_at("B1", 20000)
        assert pos.lat == -41.29

    def test_absent_when_every_sample_is_too_far_ahead(self):
        store = _store()
        store.append("B1", _sample("B1", 100000))
        store.append("B1", _sample("B1", 110000))
        assert store.interpolate_at("B1", 0) is None

    def test_two_samples_before_display_lag_has_no_position(self):
        store = _store(display_lag_ms=60000)
        store.append("B1", _sample("B1", 0, lat=-41.30, lon=174.78))
        store.append("B1", _sample("B1", 20000, lat=-41.29, lon=174.78))

        now = 25000
        display_time = now - store.config.display_lag_ms
        assert display_time == -35000
        assert store.interpolate_at("B1", display_time) is None

    def test_unknown_entity_is_absent(self):
        assert _store().interpolate_at("ghost", 0) is None

    def test_interpolate_all_uses_one_display_time(self):
        store = _store()
        for entity_id, group_id in (("A", "1"), ("B", "1"), ("C", "2")):
            store.append(entity_id, _sample(entity_id, 0, group_id=group_id))
            store.append(entity_id, _sample(entity_id, 10000, group_id=group_id))

        positions = store.interpolate_all(4000)
        assert set(positions) == {"A", "B", "C"}
        assert {p.timestamp for p in positions.values()} == {4000}

        grouped = store.current_positions_by_group()
        assert sorted(p.entity_id for p in grouped["1"]) == ["A", "B"]
        assert [p.entity_id for p in grouped["2"]] == ["C"]


class TestBuffers:
    def test_buffer_cap_drops_oldest(self):
        store = _store(max_samples_per_entity=5)
        for i in range(10):
            store.append("B1", _sample("B1", i * 1000))
        history = store.history("B1")
        assert len(history) == 5
        assert history[0].timestamp == 5000

    def test_out_of_order_samples_are_kept_sorted(self):
        store = _store()
        store.append("B1", _sample("B1", 10000))
        store.append("B1", _sample("B1", 30000))
        store.append("B1", _sample("B1", 20000))
        assert [s.timestamp for s in store.history("B1")] == [10000, 20000, 30000]

    def test_prune_removes_stale_samples_and_entities(self):
        store = _store()
        removed_ids = []
        store.add_removal_listener(removed_ids.append)
        for ts in (0, 100000, 200000):
            store.append("A", _sample("A", ts))
        store.append("B", _sample("B", 10000))

        now = 250000
        removed = store.prune(now, 180000)

        assert removed == ["B"]
        assert removed_ids == ["B"]
        assert "B" not in store
        assert store.interpolate_at("B", 200000) is None
        cutoff = now - 180000
        for entity_id in store.entity_ids():
            assert all(s.timestamp >= cutoff for s in store.history(entity_id))
            assert store.latest(entity_id).timestamp >= cutoff

    def test_remove_clears_current_position(self):
        store = _store()
        store.append("A", _sample("A", 0))
        store.interpolate_all(0)
        assert "A" in store.current_positions()
        assert store.remove("A") is True
        assert "A" not in store.current_positions()
        assert store.remove("A") is False

    def test_trail_only_includes_passed_samples(self):
        store = _store()
        for ts in range(0, 100000, 10000):
            store.append("A", _sample("A", ts))
        trail = store.trail("A", 45000, length=3)
        assert [s.timestamp for s in trail] == [20000, 30000, 40000]


class TestIngestion:
    def _reports(self, *ids):
        return [VehicleReport(entity_id=i, group_id="14", lat=-41.3, lon=174.78, bearing=0.0) for i in ids]

    def test_historical_batches_are_spread_before_now(self):
        store = _store()
        now = 1_000_000
        for _ in range(3):
            assert store.ingest_reports(self._reports("A"), now, historical=True) == []
        assert [s.timestamp for s in store.history("A")] == [now - 80000, now - 70000, now - 60000]

    def test_historical_timestamps_never_exceed_now(self):
        store = _store()
        assert store.historical_timestamp(1_000_000, 12) == 1_000_000

    def test_live_batch_uses_now_and_resets_spread(self):
        store = _store()
        now = 1_000_000
        store.ingest_reports(self._reports("A"), now, historical=True)
        store.ingest_reports(self._reports("A"), now)
        assert store.historical_batch_count == 0
        assert store.latest("A").timestamp == now
        assert store.has_live_data is True

        store.ingest_reports(self._reports("A"), now + 10000, historical=True)
        assert store.historical_batch_count == 1

    def test_live_batch_evicts_missing_vehicles(self):
        store = _store()
        store.ingest_reports(self._reports("A", "B"), 1000)
        evicted = store.ingest_reports(self._reports("A"), 2000)
        assert evicted == ["B"]
        assert store.entity_ids() == ["A"]

    def test_historical_batch_does_not_evict(self):
        store = _store()
        store.ingest_reports(self._reports("A", "B"), 1000)
        store.ingest_reports(self._reports("A"), 2000, historical=True)
        assert sorted(store.entity_ids()) == ["A", "B"]
