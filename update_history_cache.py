"""Short replay window of raw feed batches for newly connected stream consumers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from scheduler import Scheduler, TaskHandle
from synth_config import HistoryCacheConfig


@dataclass
class HistoryWindowEntry:
    timestamp: float
    buses: List[Any] = field(default_factory=list)
    updates: List[Any] = field(default_factory=list)

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "bus_update",
            "timestamp": self.timestamp,
            "buses": self.buses,
            "updates": self.updates,
            "isHistorical": True,
        }


class UpdateHistoryCache:
    """
    Time- and count-bounded list of recent broadcasts.

    Entries older than ``max_age_ms`` are dropped on a periodic cleanup and
    before every ``drain()``. The entry count never exceeds ``max_entries``:
    recording past the cap trims the oldest entries immediately.
    """

    def __init__(self, scheduler: Scheduler, config: Optional[HistoryCacheConfig] = None):
        self.scheduler = scheduler
        self.config = config or HistoryCacheConfig()
        self._entries: List[HistoryWindowEntry] = []
        self._cleanup_task: Optional[TaskHandle] = self.scheduler.call_every(
            self.config.cleanup_interval_ms, self.cleanup
        )
        print(
            f"[history_cache] initialized: {self.config.max_age_ms:.0f}ms retention, "
            f"cleanup every {self.config.cleanup_interval_ms:.0f}ms"
        )

    def record(self, buses: Any, updates: Any) -> HistoryWindowEntry:
        entry = HistoryWindowEntry(
            timestamp=self.scheduler.now_ms(),
            buses=list(buses) if isinstance(buses, list) else [],
            updates=list(updates) if isinstance(updates, list) else [],
        )
        self._entries.append(entry)
        if len(self._entries) > self.config.max_entries:
            self.cleanup()
        print(
            f"[history_cache] added entry: {len(entry.buses)} buses, {len(entry.updates)} updates "
            f"(total: {len(self._entries)} entries)"
        )
        return entry

    def drain(self) -> List[Dict[str, Any]]:
        """Retained entries, oldest first, as ``bus_update`` messages flagged historical."""
        self.cleanup()
        return [entry.to_message() for entry in self._entries]

    def cleanup(self) -> int:
        cutoff = self.scheduler.now_ms() - self.config.max_age_ms
        initial = len(self._entries)
        entries = [entry for entry in self._entries if entry.timestamp >= cutoff]
        overflow = len(entries) - self.config.max_entries
        if overflow > 0:
            entries = entries[overflow:]
        self._entries = entries
        removed = initial - len(entries)
        if removed > 0:
            print(f"[history_cache] cleanup: removed {removed} old entries, {len(entries)} remaining")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        if not self._entries:
            return {"entry_count": 0, "oldest_age_ms": 0, "newest_age_ms": 0, "total_buses": 0, "time_span_ms": 0}
        now = self.scheduler.now_ms()
        oldest = min(entry.timestamp for entry in self._entries)
        newest = max(entry.timestamp for entry in self._entries)
        return {
            "entry_count": len(self._entries),
            "oldest_age_ms": now - oldest,
            "newest_age_ms": now - newest,
            "total_buses": sum(len(entry.buses) for entry in self._entries),
            "time_span_ms": newest - oldest,
        }

    def clear(self) -> None:
        self._entries = []
        print("[history_cache] cleared")

    def dispose(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        self.clear()
        print("[history_cache] disposed")

    def __len__(self) -> int:
        return len(self._entries)
