"""Turn raw vehicle position updates into debounced stop-arrival events."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from feed_parsing import Anchor
from geo_math import clamp, haversine_m
from scheduler import Scheduler, TaskHandle
from spatial_index import SpatialIndex
from synth_config import ProximityConfig


@dataclass(frozen=True)
class ArrivalEvent:
    entity_id: str
    anchor_id: str
    group_id: Optional[str]
    crossing_time: float
    intensity: float
    distance_m: float
    detected_at: float
    anchor_lat: float
    anchor_lon: float

    def to_dict(self) -> dict:
        return {
            "bus_id": self.entity_id,
            "stop_id": self.anchor_id,
            "route_id": self.group_id,
            "crossing_time": self.crossing_time,
            "intensity": round(self.intensity, 3),
            "distance_m": round(self.distance_m, 1),
            "detected_at": self.detected_at,
            "stop_lat": self.anchor_lat,
            "stop_lon": self.anchor_lon,
        }


@dataclass(frozen=True)
class RawPosition:
    lat: float
    lon: float
    timestamp: float


def crossing_time(
    prev_distance: float,
    cur_distance: float,
    threshold: float,
    prev_ts: float,
    cur_ts: float,
) -> float:
    """Estimate when the distance to an anchor dropped below ``threshold``.

    Distance is assumed to shrink linearly between the two samples.
    """
    if prev_distance <= threshold:
        return prev_ts
    closing = prev_distance - cur_distance
    if closing <= 0:
        return cur_ts
    fraction = clamp((prev_distance - threshold) / closing, 0.0, 1.0)
    return prev_ts + fraction * (cur_ts - prev_ts)


class ArrivalDetector:
    """
    Compares each vehicle's new raw position with its previous one against
    nearby anchors. An arrival fires when the vehicle is inside the stop
    threshold, got closer by more than the approach threshold, and has not
    arrived at the same anchor within the debounce window.
    """

    def __init__(
        self,
        spatial_index: Optional[SpatialIndex] = None,
        config: Optional[ProximityConfig] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self.spatial_index = spatial_index
        self.config = config or ProximityConfig()
        self.scheduler = scheduler
        self.last_positions: Dict[str, RawPosition] = {}
        self._recent_arrivals: Dict[Tuple[str, str], float] = {}
        self._cleanup_task: Optional[TaskHandle] = None

    def check(
        self,
        entity_id: str,
        lat: float,
        lon: float,
        timestamp: float,
        group_id: Optional[str] = None,
    ) -> List[ArrivalEvent]:
        current = RawPosition(lat=lat, lon=lon, timestamp=timestamp)
        previous = self.last_positions.get(entity_id)
        self.last_positions[entity_id] = current
        if previous is None or self.spatial_index is None:
            return []

        threshold = self.config.stop_threshold_m
        radius = threshold * self.config.search_radius_multiplier
        events: List[ArrivalEvent] = []
        for anchor in self.spatial_index.get_items_in_radius(lat, lon, radius):
            try:
                event = self._check_anchor(entity_id, group_id, anchor, previous, current)
            except Exception as exc:
                print(f"[arrivals] error checking stop {getattr(anchor, 'anchor_id', '?')} for bus {entity_id}: {exc}")
                continue
            if event is not None:
                events.append(event)
        return events

    def _check_anchor(
        self,
        entity_id: str,
        group_id: Optional[str],
        anchor: Anchor,
        previous: RawPosition,
        current: RawPosition,
    ) -> Optional[ArrivalEvent]:
        threshold = self.config.stop_threshold_m
        distance_now = haversine_m(current.lat, current.lon, anchor.lat, anchor.lon)
        if distance_now >= threshold:
            return None
        distance_prev = haversine_m(previous.lat, previous.lon, anchor.lat, anchor.lon)
        if distance_now >= distance_prev:
            return None
        if distance_prev - distance_now <= self.config.approach_threshold_m:
            return None

        key = (entity_id, anchor.anchor_id)
        last = self._recent_arrivals.get(key)
        if last is not None and current.timestamp - last < self.config.arrival_debounce_ms:
            return None
        self._recent_arrivals[key] = current.timestamp

        crossed_at = crossing_time(
            distance_prev, distance_now, threshold, previous.timestamp, current.timestamp
        )
        print(f"[arrivals] bus {entity_id} arriving at stop {anchor.anchor_id} (distance: {distance_now:.0f}m)")
        return ArrivalEvent(
            entity_id=entity_id,
            anchor_id=anchor.anchor_id,
            group_id=group_id,
            crossing_time=crossed_at,
            intensity=max(0.5, 1.0 - distance_now / threshold),
            distance_m=distance_now,
            detected_at=current.timestamp,
            anchor_lat=anchor.lat,
            anchor_lon=anchor.lon,
        )

    def cleanup(self, now_ms: float) -> int:
        """Forget debounce entries older than twice the debounce window."""
        cutoff = now_ms - 2 * self.config.arrival_debounce_ms
        stale = [key for key, ts in self._recent_arrivals.items() if ts < cutoff]
        for key in stale:
            del self._recent_arrivals[key]
        return len(stale)

    def start(self) -> None:
        if self.scheduler is None or self._cleanup_task is not None:
            return
        self._cleanup_task = self.scheduler.call_every(
            self.config.debounce_cleanup_interval_ms,
            lambda: self.cleanup(self.scheduler.now_ms()),
        )

    def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    def forget(self, entity_id: str) -> None:
        self.last_positions.pop(entity_id, None)

    def reset(self) -> None:
        self.last_positions.clear()
        self._recent_arrivals.clear()

    @property
    def debounce_size(self) -> int:
        return len(self._recent_arrivals)
