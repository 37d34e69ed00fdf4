import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from delay_tracker import DelayTracker  # noqa: E402
from feed_parsing import Anchor, DelayUpdate  # noqa: E402
from scheduler import VirtualScheduler  # noqa: E402
from synth_config import DelayConfig  # noqa: E402


NOW = 1_000_000.0
STOP = Anchor("5016", -41.30, 174.78)


def _tracker(**overrides):
    scheduler = VirtualScheduler(start_ms=NOW)
    tracker = DelayTracker(scheduler, DelayConfig(**overrides), {STOP.anchor_id: STOP})
    return scheduler, tracker


def _update(delay, group_id="14", anchor_id="5016", effective_ms=NOW - 1000.0):
    return DelayUpdate(anchor_id=anchor_id, group_id=group_id, delay_seconds=delay, effective_ms=effective_ms)


def test_small_delays_and_missing_routes_are_ignored():
    _, tracker = _tracker()
    assert tracker.ingest([_update(5), _update(-10), _update(300, group_id=None)]) == 0
    assert len(tracker) == 0


def test_delay_magnitude_is_stored_last_write_wins():
    _, tracker = _tracker()
    tracker.ingest([_update(-120)])
    assert tracker.get("5016").delay_seconds == 120
    tracker.ingest([_update(45)])
    assert tracker.get("5016").delay_seconds == 45
    assert len(tracker) == 1


def test_delay_for_requires_matching_route():
    _, tracker = _tracker()
    tracker.ingest([_update(200, group_id="14")])
    assert tracker.delay_for("5016", "14") == 200
    assert tracker.delay_for("5016", "2") == 0
    assert tracker.delay_for("5016", None) == 0
    assert tracker.delay_for("unknown", "14") == 0


def test_delay_for_expires_after_retention():
    scheduler, tracker = _tracker(retention_s=3600.0)
    tracker.ingest([_update(200)])
    scheduler.advance(3599_000)
    assert tracker.delay_for("5016", "14") == 200
    scheduler.advance(1000)
    assert tracker.delay_for("5016", "14") == 0


def test_future_update_fires_delay_event_at_effective_time():
    scheduler, tracker = _tracker()
    events = []
    tracker.add_listener(events.append)

    tracker.ingest([_update(90, effective_ms=NOW + 5000.0)])
    assert tracker.pending_count == 1

    scheduler.advance(4999)
    assert events == []
    scheduler.advance(1)
    assert len(events) == 1
    event = events[0]
    assert event.group_id == "14"
    assert event.delay_seconds == 90
    assert (event.anchor_lat, event.anchor_lon) == (STOP.lat, STOP.lon)
    assert event.fired_at == NOW + 5000.0
    assert tracker.pending_count == 0


def test_future_update_for_unknown_stop_is_stored_but_not_scheduled():
    _, tracker = _tracker()
    tracker.ingest([_update(90, anchor_id="nowhere", effective_ms=NOW + 5000.0)])
    assert tracker.pending_count == 0
    assert tracker.delay_for("nowhere", "14") == 90


def test_cancel_pending_disruptions():
    scheduler, tracker = _tracker()
    events = []
    tracker.add_listener(events.append)
    tracker.ingest([_update(90, effective_ms=NOW + 5000.0)])
    assert tracker.cancel_pending() == 1
    scheduler.advance(10000)
    assert events == []


def test_listener_failure_does_not_stop_others():
    scheduler, tracker = _tracker()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    tracker.add_listener(broken)
    tracker.add_listener(seen.append)
    tracker.ingest([_update(90, effective_ms=NOW + 100.0)])
    scheduler.advance(100)
    assert len(seen) == 1


def test_periodic_cleanup_drops_expired_records():
    scheduler, tracker = _tracker(retention_s=120.0, cleanup_interval_ms=60000.0)
    tracker.start()
    tracker.ingest([_update(200)])
    scheduler.advance(120000)
    assert len(tracker) == 1
    scheduler.advance(60000)
    assert len(tracker) == 0

    tracker.stop()
    assert scheduler.pending_count() == 0
