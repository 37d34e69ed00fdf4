"""Consumer-side engine: feed messages in, lagged positions, arrivals and audio parameters out.

One engine corresponds to one connected consumer. It owns its history,
spatial index, arrival detector, delay tracker and route audio model, and
drives them from a ``Scheduler`` so the whole pipeline can be run on a virtual
clock.
"""
from __future__ import annotations

from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional

from arrival_detector import ArrivalDetector, ArrivalEvent
from delay_tracker import DelayEvent, DelayTracker
from feed_parsing import (
    Anchor,
    GroupIdNormalizer,
    compute_bounds,
    normalize_group_id,
    parse_trip_updates,
    parse_vehicle_positions,
)
from geo_math import Bounds
from position_history import HistoryStore, InterpolatedPosition, Sample
from route_audio import ArrivalPlayer, AudioSink, RouteAudioModel
from scheduler import AsyncioScheduler, Scheduler, TaskHandle
from spatial_index import SpatialIndex
from synth_config import AudioConfig, DelayConfig, HistoryConfig, ProximityConfig


RECENT_EVENTS_MAXLEN = 10

ArrivalCallback = Callable[[ArrivalEvent, float], None]
DelayCallback = Callable[[DelayEvent], None]
RemovalCallback = Callable[[str], None]


class BusSynthEngine:
    def __init__(
        self,
        scheduler: Optional[Scheduler] = None,
        history_config: Optional[HistoryConfig] = None,
        proximity_config: Optional[ProximityConfig] = None,
        delay_config: Optional[DelayConfig] = None,
        audio_config: Optional[AudioConfig] = None,
        audio_sink: Optional[AudioSink] = None,
        normalizer: GroupIdNormalizer = normalize_group_id,
    ):
        self.scheduler = scheduler or AsyncioScheduler()
        self.normalizer = normalizer
        self.history_config = history_config or HistoryConfig()
        self.proximity_config = proximity_config or ProximityConfig()
        self.audio_config = audio_config or AudioConfig()

        self.history = HistoryStore(self.history_config)
        self.detector = ArrivalDetector(None, self.proximity_config, self.scheduler)
        self.delays = DelayTracker(self.scheduler, delay_config)
        self.audio = RouteAudioModel(self.scheduler, audio_sink, None, self.audio_config)
        self.player = ArrivalPlayer(self.audio, self.scheduler, self.proximity_config)

        self.anchors: Dict[str, Anchor] = {}
        self.bounds: Optional[Bounds] = None
        self.spatial_index: Optional[SpatialIndex] = None

        self._recent_arrivals: Deque[Dict[str, Any]] = deque(maxlen=RECENT_EVENTS_MAXLEN)
        self._recent_delays: Deque[Dict[str, Any]] = deque(maxlen=RECENT_EVENTS_MAXLEN)
        self._arrival_callbacks: List[ArrivalCallback] = []
        self._delay_callbacks: List[DelayCallback] = []
        self._removal_callbacks: List[RemovalCallback] = []

        self._tick_task: Optional[TaskHandle] = None
        self._route_cleanup_task: Optional[TaskHandle] = None
        self._last_tick_ms: Optional[float] = None
        self.running = False

        self.messages_processed = 0
        self.historical_messages = 0
        self.arrivals_detected = 0
        self.gap_resets = 0
        self.ticks = 0

        self.history.add_removal_listener(self._on_history_removed)
        self.delays.add_listener(self._on_delay_event)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    def load_anchors(self, anchors: Iterable[Anchor]) -> int:
        anchor_list = list(anchors)
        if not anchor_list:
            print("[engine] no stops supplied; arrival detection disabled")
            return 0
        self.anchors = {anchor.anchor_id: anchor for anchor in anchor_list}
        self.bounds = compute_bounds(self.anchors.values())
        index = SpatialIndex(self.bounds, self.proximity_config.grid_size)
        for anchor in self.anchors.values():
            index.add_item(anchor.lat, anchor.lon, anchor)
        self.spatial_index = index
        self.detector.spatial_index = index
        self.delays.set_anchors(self.anchors.values())
        self.audio.bounds = self.bounds

        stats = index.get_stats()
        print(
            f"[spatial] stop index created: {stats['total_items']} stops, "
            f"{stats['avg_items_per_cell']:.1f} avg per cell, ~{stats['approx_cell_size_m']:.0f}m cells"
        )
        return len(self.anchors)

    def on_arrival(self, callback: ArrivalCallback) -> None:
        """``callback(event, delay_seconds)`` for every arrival detected on live data."""
        self._arrival_callbacks.append(callback)

    def on_delay(self, callback: DelayCallback) -> None:
        self._delay_callbacks.append(callback)

    def on_entity_removed(self, callback: RemovalCallback) -> None:
        self._removal_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Feed ingestion
    # ------------------------------------------------------------------
    def handle_message(self, message: Mapping[str, Any]) -> None:
        """Consume one ``bus_update`` message from the distribution layer.

        Historical messages only feed the history (spread across the intro
        window). Live messages also drive arrival detection on the raw
        positions, delay tracking and the route voices.
        """
        if not isinstance(message, Mapping) or message.get("type") != "bus_update":
            return
        now = self.scheduler.now_ms()
        historical = bool(message.get("isHistorical"))
        reports = parse_vehicle_positions(message.get("buses") or [], self.normalizer)
        self.messages_processed += 1

        if historical:
            self.historical_messages += 1
            self.history.ingest_reports(reports, now, historical=True)
            return

        self.history.ingest_reports(reports, now)

        for report in reports:
            try:
                events = self.detector.check(report.entity_id, report.lat, report.lon, now, report.group_id)
            except Exception as exc:
                print(f"[engine] arrival check failed for bus {report.entity_id}: {exc}")
                continue
            for event in events:
                self._emit_arrival(event, now)

        updates = parse_trip_updates(message.get("updates") or [], now, self.normalizer)
        self.delays.ingest(updates, now)

        self.audio.update_routes(self.history.current_positions_by_group(), now)

    def _emit_arrival(self, event: ArrivalEvent, now: float) -> None:
        self.arrivals_detected += 1
        delay = self.delays.delay_for(event.anchor_id, event.group_id, now)
        record = event.to_dict()
        record["delay"] = delay
        record["age_ms"] = now - event.crossing_time
        self._recent_arrivals.appendleft(record)

        if event.group_id:
            try:
                self.player.schedule(event, delay, now)
            except Exception as exc:
                print(f"[audio] failed to schedule arrival blast for route {event.group_id}: {exc}")

        for callback in list(self._arrival_callbacks):
            try:
                callback(event, delay)
            except Exception as exc:
                print(f"[engine] arrival callback failed: {exc}")

    def _on_delay_event(self, event: DelayEvent) -> None:
        self.audio.disruption(event.group_id, event.delay_seconds, event.anchor_lat, event.anchor_lon)
        self._recent_delays.appendleft(event.to_dict())
        for callback in list(self._delay_callbacks):
            try:
                callback(event)
            except Exception as exc:
                print(f"[engine] delay callback failed: {exc}")

    def _on_history_removed(self, entity_id: str) -> None:
        self.detector.forget(entity_id)
        for callback in list(self._removal_callbacks):
            try:
                callback(entity_id)
            except Exception as exc:
                print(f"[engine] removal callback failed for {entity_id}: {exc}")

    # ------------------------------------------------------------------
    # Animation tick
    # ------------------------------------------------------------------
    def display_time(self, now_ms: Optional[float] = None) -> float:
        if now_ms is None:
            now_ms = self.scheduler.now_ms()
        return now_ms - self.history_config.display_lag_ms

    def tick(self) -> Dict[str, InterpolatedPosition]:
        now = self.scheduler.now_ms()
        if self._last_tick_ms is not None:
            gap = now - self._last_tick_ms
            if gap > self.history_config.max_time_gap_ms:
                print(f"[engine] large time gap detected ({gap / 1000:.1f}s) - resetting transient state")
                self.reset_transient_state()
        self._last_tick_ms = now
        positions = self.history.interpolate_all(self.display_time(now))
        self.history.prune(now)
        self.ticks += 1
        return positions

    def reset_transient_state(self) -> None:
        self.gap_resets += 1
        self.history.clear()
        self.detector.reset()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._last_tick_ms = self.scheduler.now_ms()
        self._tick_task = self.scheduler.call_every(self.history_config.tick_interval_ms, self.tick)
        self._route_cleanup_task = self.scheduler.call_every(
            self.audio_config.route_cleanup_interval_ms, self.audio.cleanup_inactive_routes
        )
        self.detector.start()
        self.delays.start()
        print(f"[engine] started (tick every {self.history_config.tick_interval_ms:.0f}ms)")

    def stop(self) -> None:
        if self._tick_task is not None:
            self._tick_task.cancel()
            self._tick_task = None
        if self._route_cleanup_task is not None:
            self._route_cleanup_task.cancel()
            self._route_cleanup_task = None
        self.detector.stop()
        self.delays.stop()
        self.player.cancel_pending()
        self.audio.cancel_pending()
        if self.running:
            print("[engine] stopped")
        self.running = False
        self._last_tick_ms = None

    def dispose(self) -> None:
        self.stop()
        self.history.clear()
        self.detector.reset()
        self.delays.clear()
        self.audio.dispose()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def lagged_positions(self) -> Dict[str, InterpolatedPosition]:
        return self.history.current_positions()

    def lagged_positions_by_group(self) -> Dict[Optional[str], List[InterpolatedPosition]]:
        return self.history.current_positions_by_group()

    def trail(self, entity_id: str, length: int = 15) -> List[Sample]:
        return self.history.trail(entity_id, self.display_time(), length)

    def recent_arrivals(self) -> List[Dict[str, Any]]:
        return list(self._recent_arrivals)

    def recent_delays(self) -> List[Dict[str, Any]]:
        return list(self._recent_delays)

    def stats(self) -> Dict[str, Any]:
        positions = self.history.current_positions()
        groups = {p.group_id for p in positions.values()}
        return {
            "running": self.running,
            "tracked_buses": len(self.history),
            "lagged_buses": len(positions),
            "lagged_routes": len(groups),
            "stops": len(self.anchors),
            "delay_records": len(self.delays),
            "pending_disruptions": self.delays.pending_count,
            "pending_arrival_blasts": self.player.pending_count,
            "active_voices": self.audio.active_route_count(),
            "messages_processed": self.messages_processed,
            "historical_messages": self.historical_messages,
            "arrivals_detected": self.arrivals_detected,
            "suppressed_arrivals": self.player.suppressed,
            "gap_resets": self.gap_resets,
            "ticks": self.ticks,
            "display_lag_ms": self.history_config.display_lag_ms,
        }
