"""Keyed TTL cache for upstream feed fetches."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional
import asyncio
import time


@dataclass
class _Slot:
    value: Any = None
    ts: float = 0.0
    has_value: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    inflight: Optional[asyncio.Task] = None


class FeedCache:
    """
    One slot per key. A fresh value is returned straight from the slot;
    otherwise concurrent callers share a single fetch. If the fetch fails and
    the slot already holds a value, that stale value is returned instead of
    the error.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._slots: Dict[str, _Slot] = {}

    def _slot(self, key: str) -> _Slot:
        slot = self._slots.get(key)
        if slot is None:
            slot = _Slot()
            self._slots[key] = slot
        return slot

    async def get_or_fetch(self, key: str, fetcher: Callable[[], Awaitable[Any]], ttl_s: float) -> Any:
        slot = self._slot(key)
        async with slot.lock:
            if slot.has_value and self._clock() - slot.ts < ttl_s:
                return slot.value
            # Singleflight: reuse in-flight fetch task
            if slot.inflight is not None:
                inflight_task = slot.inflight
            else:
                inflight_task = asyncio.create_task(fetcher())
                slot.inflight = inflight_task

        try:
            data = await inflight_task
        except Exception as exc:
            async with slot.lock:
                if slot.inflight is inflight_task:
                    slot.inflight = None
                if slot.has_value:
                    print(f"[feed_cache] fetch failed for {key}, returning stale data: {exc}")
                    return slot.value
            raise

        async with slot.lock:
            if slot.inflight is inflight_task:
                slot.value = data
                slot.ts = self._clock()
                slot.has_value = True
                slot.inflight = None
        return data

    def peek(self, key: str) -> Any:
        slot = self._slots.get(key)
        return slot.value if slot is not None and slot.has_value else None

    def delete(self, key: str) -> bool:
        return self._slots.pop(key, None) is not None

    def clear(self) -> None:
        self._slots.clear()

    def size(self) -> int:
        return sum(1 for slot in self._slots.values() if slot.has_value)
