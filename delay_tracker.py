"""Stop delay records from trip updates, and scheduled route disruptions."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from feed_parsing import Anchor, DelayUpdate
from scheduler import Scheduler, TaskHandle
from synth_config import DelayConfig


@dataclass
class DelayRecord:
    """Latest known delay at one stop. ``delay_seconds`` is the magnitude."""
    anchor_id: str
    delay_seconds: float
    group_id: str
    observed_at: float  # epoch ms the update applies to
    recorded_at: float  # epoch ms the update was ingested

    def to_dict(self) -> dict:
        return {
            "stop_id": self.anchor_id,
            "delay": self.delay_seconds,
            "route_id": self.group_id,
            "observed_at": self.observed_at,
            "recorded_at": self.recorded_at,
        }


@dataclass(frozen=True)
class DelayEvent:
    group_id: str
    delay_seconds: float
    anchor_id: str
    anchor_lat: float
    anchor_lon: float
    fired_at: float

    def to_dict(self) -> dict:
        return {
            "route_id": self.group_id,
            "delay": self.delay_seconds,
            "stop_id": self.anchor_id,
            "stop_lat": self.anchor_lat,
            "stop_lon": self.anchor_lon,
            "fired_at": self.fired_at,
        }


DelayListener = Callable[[DelayEvent], None]


class DelayTracker:
    def __init__(
        self,
        scheduler: Scheduler,
        config: Optional[DelayConfig] = None,
        anchors: Optional[Dict[str, Anchor]] = None,
    ):
        self.scheduler = scheduler
        self.config = config or DelayConfig()
        self.anchors: Dict[str, Anchor] = dict(anchors or {})
        self._records: Dict[str, DelayRecord] = {}
        self._pending: List[TaskHandle] = []
        self._listeners: List[DelayListener] = []
        self._cleanup_task: Optional[TaskHandle] = None

    def set_anchors(self, anchors: Iterable[Anchor]) -> None:
        self.anchors = {anchor.anchor_id: anchor for anchor in anchors}

    def add_listener(self, listener: DelayListener) -> None:
        self._listeners.append(listener)

    def ingest(self, updates: Iterable[DelayUpdate], now_ms: Optional[float] = None) -> int:
        """Store significant delays and schedule disruptions for future-dated ones.

        Returns the number of records written.
        """
        if now_ms is None:
            now_ms = self.scheduler.now_ms()
        stored = 0
        scheduled = 0
        for update in updates:
            delay = abs(update.delay_seconds)
            if delay <= self.config.min_abs_delay_s or not update.group_id:
                continue
            self._records[update.anchor_id] = DelayRecord(
                anchor_id=update.anchor_id,
                delay_seconds=delay,
                group_id=update.group_id,
                observed_at=update.effective_ms,
                recorded_at=now_ms,
            )
            stored += 1

            if update.effective_ms > now_ms:
                anchor = self.anchors.get(update.anchor_id)
                if anchor is None:
                    continue
                self._schedule_disruption(update.group_id, delay, anchor, update.effective_ms - now_ms)
                scheduled += 1

        if stored:
            print(f"[delays] stored {stored} delay records, {len(self._records)} total, {scheduled} disruptions scheduled")
        return stored

    def _schedule_disruption(self, group_id: str, delay: float, anchor: Anchor, wait_ms: float) -> None:
        handle: Optional[TaskHandle] = None

        def fire() -> None:
            if handle is not None and handle in self._pending:
                self._pending.remove(handle)
            event = DelayEvent(
                group_id=group_id,
                delay_seconds=delay,
                anchor_id=anchor.anchor_id,
                anchor_lat=anchor.lat,
                anchor_lon=anchor.lon,
                fired_at=self.scheduler.now_ms(),
            )
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception as exc:
                    print(f"[delays] delay listener failed for route {group_id}: {exc}")

        handle = self.scheduler.call_later(wait_ms, fire)
        self._pending.append(handle)

    def delay_for(self, anchor_id: str, group_id: Optional[str], now_ms: Optional[float] = None) -> float:
        """Delay (seconds) to attach to an arrival, or 0 if nothing recent matches the route."""
        record = self._records.get(anchor_id)
        if record is None or group_id is None or record.group_id != group_id:
            return 0.0
        if now_ms is None:
            now_ms = self.scheduler.now_ms()
        if now_ms - record.recorded_at >= self.config.retention_s * 1000.0:
            return 0.0
        return record.delay_seconds

    def cleanup(self, now_ms: Optional[float] = None) -> int:
        if now_ms is None:
            now_ms = self.scheduler.now_ms()
        cutoff = now_ms - self.config.retention_s * 1000.0
        expired = [anchor_id for anchor_id, record in self._records.items() if record.recorded_at < cutoff]
        for anchor_id in expired:
            del self._records[anchor_id]
        if expired:
            print(f"[delays] cleaned up {len(expired)} old delay records")
        return len(expired)

    def start(self) -> None:
        if self._cleanup_task is None:
            self._cleanup_task = self.scheduler.call_every(self.config.cleanup_interval_ms, self.cleanup)

    def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        self.cancel_pending()

    def cancel_pending(self) -> int:
        pending = [handle for handle in self._pending if not handle.cancelled]
        for handle in pending:
            handle.cancel()
        self._pending.clear()
        return len(pending)

    def clear(self) -> None:
        self._records.clear()

    def get(self, anchor_id: str) -> Optional[DelayRecord]:
        return self._records.get(anchor_id)

    def records(self) -> List[DelayRecord]:
        return list(self._records.values())

    @property
    def pending_count(self) -> int:
        return sum(1 for handle in self._pending if not handle.cancelled)

    def __len__(self) -> int:
        return len(self._records)
