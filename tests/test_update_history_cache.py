import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from scheduler import VirtualScheduler  # noqa: E402
from synth_config import HistoryCacheConfig  # noqa: E402
from update_history_cache import UpdateHistoryCache  # noqa: E402


def _cache(start_ms=0.0, **overrides):
    scheduler = VirtualScheduler(start_ms=start_ms)
    return scheduler, UpdateHistoryCache(scheduler, HistoryCacheConfig(**overrides))


def test_drain_returns_historical_messages_oldest_first():
    scheduler, cache = _cache()
    cache.record([{"id": "a"}], [{"u": 1}])
    scheduler.advance(10000)
    cache.record([{"id": "b"}], [])

    drained = cache.drain()
    assert [m["buses"][0]["id"] for m in drained] == ["a", "b"]
    assert all(m["type"] == "bus_update" for m in drained)
    assert all(m["isHistorical"] is True for m in drained)
    assert drained[0]["timestamp"] == 0.0
    assert drained[0]["updates"] == [{"u": 1}]


def test_drain_never_returns_entries_older_than_max_age():
    scheduler, cache = _cache(max_age_ms=90000.0, cleanup_interval_ms=1_000_000.0)
    cache.record([{"id": "old"}], [])
    scheduler.advance(50000)
    cache.record([{"id": "new"}], [])
    scheduler.advance(50000)

    drained = cache.drain()
    now = scheduler.now_ms()
    assert [m["buses"][0]["id"] for m in drained] == ["new"]
    assert all(now - m["timestamp"] <= 90000.0 for m in drained)


def test_burst_never_exceeds_max_entries():
    scheduler, cache = _cache(max_entries=5)
    for i in range(12):
        cache.record([{"i": i}], [])
        assert len(cache) <= 5
        scheduler.advance(1)

    drained = cache.drain()
    assert [m["buses"][0]["i"] for m in drained] == [7, 8, 9, 10, 11]


def test_periodic_cleanup_runs_without_drain():
    scheduler, cache = _cache(max_age_ms=90000.0, cleanup_interval_ms=30000.0)
    cache.record([{"id": "a"}], [])
    scheduler.advance(90000)
    assert len(cache) == 1
    scheduler.advance(30000)
    assert len(cache) == 0


def test_non_list_payloads_are_stored_empty():
    _, cache = _cache()
    entry = cache.record(None, {"not": "a list"})
    assert entry.buses == []
    assert entry.updates == []


def test_stats():
    scheduler, cache = _cache(start_ms=1000.0)
    assert cache.get_stats() == {
        "entry_count": 0,
        "oldest_age_ms": 0,
        "newest_age_ms": 0,
        "total_buses": 0,
        "time_span_ms": 0,
    }
    cache.record([1, 2, 3], [])
    scheduler.advance(20000)
    cache.record([4], [])
    scheduler.advance(5000)

    stats = cache.get_stats()
    assert stats["entry_count"] == 2
    assert stats["oldest_age_ms"] == 25000.0
    assert stats["newest_age_ms"] == 5000.0
    assert stats["total_buses"] == 4
    assert stats["time_span_ms"] == 20000.0


def test_dispose_stops_cleanup_and_clears():
    scheduler, cache = _cache()
    cache.record([1], [])
    assert scheduler.pending_count() == 1
    cache.dispose()
    assert len(cache) == 0
    assert scheduler.pending_count() == 0
