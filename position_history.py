"""Per-vehicle position history and lagged interpolation.

Display time deliberately trails the wall clock (``display_lag_ms``, one
minute by default) so that under normal feed cadence there is always a pair of
samples bracketing it. Positions between the pair are eased with smoothstep,
which hides the irregular 8-15s feed interval behind a smooth animation.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from feed_parsing import VehicleReport
from geo_math import lerp, lerp_angle, smoothstep
from synth_config import HistoryConfig


@dataclass(frozen=True)
class Sample:
    """One observed state of a vehicle."""
    entity_id: str
    lat: float
    lon: float
    bearing: float
    group_id: Optional[str]
    timestamp: float  # epoch milliseconds


@dataclass(frozen=True)
class InterpolatedPosition:
    """Position of a vehicle at a specific display time. Recomputed every tick."""
    entity_id: str
    lat: float
    lon: float
    bearing: float
    group_id: Optional[str]
    timestamp: float

    def to_dict(self) -> dict:
        return {
            "id": self.entity_id,
            "lat": self.lat,
            "lon": self.lon,
            "bearing": self.bearing,
            "route_id": self.group_id,
            "timestamp": self.timestamp,
        }


RemovalListener = Callable[[str], None]


class HistoryStore:
    """
    Bounded, time-ordered sample buffers keyed by vehicle id.

    Invariants:
    - each buffer holds at most ``max_samples_per_entity`` samples (oldest dropped)
    - after ``prune(now)`` no buffer holds a sample older than ``now - max_age``,
      and vehicles whose newest sample is older than that are gone entirely
    """

    def __init__(self, config: Optional[HistoryConfig] = None):
        self.config = config or HistoryConfig()
        self._history: Dict[str, List[Sample]] = {}
        self._current: Dict[str, InterpolatedPosition] = {}
        self._removal_listeners: List[RemovalListener] = []
        # Number of backfilled batches seen since the last live batch
        self.historical_batch_count = 0
        self.has_live_data = False

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------
    def append(self, entity_id: str, sample: Sample) -> None:
        history = self._history.setdefault(entity_id, [])
        if not history or sample.timestamp >= history[-1].timestamp:
            history.append(sample)
        else:
            # Backfilled samples can land behind live ones
            idx = len(history)
            while idx > 0 and history[idx - 1].timestamp > sample.timestamp:
                idx -= 1
            history.insert(idx, sample)
        overflow = len(history) - self.config.max_samples_per_entity
        if overflow > 0:
            del history[:overflow]

    def ingest_reports(
        self,
        reports: Sequence[VehicleReport],
        now_ms: float,
        historical: bool = False,
    ) -> List[str]:
        """Append one feed batch. Returns the ids evicted because they left the feed.

        Live batches are stamped with ``now_ms``. Historical (replayed) batches
        are spread across a synthetic timeline ending at ``now_ms`` so a burst
        of backfill animates smoothly instead of landing on a single instant.
        Vehicles missing from a live batch are evicted; historical batches
        never evict.
        """
        if historical:
            self.historical_batch_count += 1
            timestamp = self.historical_timestamp(now_ms, self.historical_batch_count)
        else:
            self.historical_batch_count = 0
            if not self.has_live_data and reports:
                self.has_live_data = True
                print("[history] real-time data started - historical backfill complete")
            timestamp = float(now_ms)

        for report in reports:
            try:
                self.append(
                    report.entity_id,
                    Sample(
                        entity_id=report.entity_id,
                        lat=report.lat,
                        lon=report.lon,
                        bearing=report.bearing,
                        group_id=report.group_id,
                        timestamp=timestamp,
                    ),
                )
            except Exception as exc:
                print(f"[history] failed to append sample for {report.entity_id}: {exc}")

        if historical:
            print(
                f"[history] processed historical batch {self.historical_batch_count} "
                f"with {len(reports)} vehicles at adjusted time {timestamp:.0f}"
            )
            return []
        return self.retain_only(report.entity_id for report in reports)

    def historical_timestamp(self, now_ms: float, batch_number: int) -> float:
        spread = self.config.historical_spread_ms
        interval = self.config.historical_interval_ms
        return min(float(now_ms), now_ms - (spread - batch_number * interval))

    # ------------------------------------------------------------------
    # Interpolation
    # ------------------------------------------------------------------
    def interpolate_at(
        self,
        entity_id: str,
        display_time: float,
        tolerance_ms: Optional[float] = None,
    ) -> Optional[InterpolatedPosition]:
        """Position of ``entity_id`` at ``display_time``, or None if it has none to show.

        The fallback paths (single sample, or display time outside every
        bracketing pair) accept a sample only if it is no more than
        ``tolerance_ms`` ahead of the display time.
        """
        history = self._history.get(entity_id)
        if not history:
            return None
        if tolerance_ms is None:
            tolerance_ms = self.config.single_sample_tolerance_ms

        if len(history) == 1:
            only = history[0]
            if only.timestamp <= display_time + tolerance_ms:
                return self._at_sample(only, display_time)
            return None

        before: Optional[Sample] = None
        after: Optional[Sample] = None
        for i in range(len(history) - 1):
            if history[i].timestamp <= display_time <= history[i + 1].timestamp:
                before = history[i]
                after = history[i + 1]
                break

        if before is None or after is None:
            most_recent = history[-1]
            if most_recent.timestamp <= display_time + tolerance_ms:
                return self._at_sample(most_recent, display_time)
            return None

        total = after.timestamp - before.timestamp
        progress = (display_time - before.timestamp) / total if total > 0 else 0.0
        eased = smoothstep(progress)
        if eased <= 0.0:
            return self._at_sample(before, display_time)
        if eased >= 1.0:
            return self._at_sample(after, display_time, group_id=before.group_id)
        return InterpolatedPosition(
            entity_id=entity_id,
            lat=lerp(before.lat, after.lat, eased),
            lon=lerp(before.lon, after.lon, eased),
            bearing=lerp_angle(before.bearing, after.bearing, eased),
            group_id=before.group_id,
            timestamp=display_time,
        )

    def interpolate_all(self, display_time: float) -> Dict[str, InterpolatedPosition]:
        """Recompute the current position of every vehicle against one display time."""
        current: Dict[str, InterpolatedPosition] = {}
        for entity_id in list(self._history.keys()):
            try:
                position = self.interpolate_at(entity_id, display_time)
            except Exception as exc:
                print(f"[history] interpolation failed for {entity_id}: {exc}")
                continue
            if position is not None:
                current[entity_id] = position
        self._current = current
        return dict(current)

    @staticmethod
    def _at_sample(sample: Sample, display_time: float, group_id: Optional[str] = None) -> InterpolatedPosition:
        return InterpolatedPosition(
            entity_id=sample.entity_id,
            lat=sample.lat,
            lon=sample.lon,
            bearing=sample.bearing,
            group_id=group_id if group_id is not None else sample.group_id,
            timestamp=display_time,
        )

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------
    def prune(self, now_ms: float, max_age_ms: Optional[float] = None) -> List[str]:
        """Drop samples older than ``now - max_age``; remove vehicles left with nothing recent."""
        if max_age_ms is None:
            max_age_ms = self.config.max_history_age_ms
        cutoff = now_ms - max_age_ms
        removed: List[str] = []
        for entity_id, history in list(self._history.items()):
            drop = 0
            while drop < len(history) and history[drop].timestamp < cutoff:
                drop += 1
            if drop:
                del history[:drop]
            if not history or history[-1].timestamp < cutoff:
                self.remove(entity_id)
                removed.append(entity_id)
        if removed:
            print(f"[history] pruned {len(removed)} stale vehicles")
        return removed

    def remove(self, entity_id: str) -> bool:
        existed = self._history.pop(entity_id, None) is not None
        self._current.pop(entity_id, None)
        for listener in list(self._removal_listeners):
            try:
                listener(entity_id)
            except Exception as exc:
                print(f"[history] removal listener failed for {entity_id}: {exc}")
        return existed

    def retain_only(self, active_ids: Iterable[str]) -> List[str]:
        active: Set[str] = set(active_ids)
        removed = [entity_id for entity_id in list(self._history.keys()) if entity_id not in active]
        for entity_id in removed:
            self.remove(entity_id)
        return removed

    def clear(self) -> None:
        for entity_id in list(self._history.keys()):
            self.remove(entity_id)
        self._current.clear()
        self.historical_batch_count = 0

    def add_removal_listener(self, listener: RemovalListener) -> None:
        self._removal_listeners.append(listener)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------
    def history(self, entity_id: str) -> List[Sample]:
        return list(self._history.get(entity_id, ()))

    def latest(self, entity_id: str) -> Optional[Sample]:
        history = self._history.get(entity_id)
        return history[-1] if history else None

    def trail(self, entity_id: str, display_time: float, length: int = 15) -> List[Sample]:
        """Samples already passed at ``display_time``, newest last, for trail rendering."""
        passed = [s for s in self._history.get(entity_id, ()) if s.timestamp <= display_time]
        return passed[-length:] if length > 0 else []

    def entity_ids(self) -> List[str]:
        return list(self._history.keys())

    def current_positions(self) -> Dict[str, InterpolatedPosition]:
        return dict(self._current)

    def current_positions_by_group(self) -> Dict[Optional[str], List[InterpolatedPosition]]:
        groups: Dict[Optional[str], List[InterpolatedPosition]] = {}
        for position in self._current.values():
            groups.setdefault(position.group_id, []).append(position)
        return groups

    def __len__(self) -> int:
        return len(self._history)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._history
