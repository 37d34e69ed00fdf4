"""Cancellable one-shot and periodic tasks driven by a pluggable clock.

The animation tick, cache cleanup and delayed arrival playback all hang off a
``Scheduler`` instead of raw timers. Production code uses ``AsyncioScheduler``;
tests use ``VirtualScheduler`` and move time forward with ``advance()``.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional
import asyncio
import heapq
import itertools
import time


def wall_clock_ms() -> float:
    return time.time() * 1000.0


@dataclass
class TaskHandle:
    """Handle returned for every scheduled callback."""
    task_id: int
    callback: Callable[[], Any]
    interval_ms: Optional[float] = None
    cancelled: bool = False
    _timer: Any = field(default=None, repr=False)

    @property
    def periodic(self) -> bool:
        return self.interval_ms is not None

    def cancel(self) -> None:
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class Scheduler(ABC):
    """Minimal timer interface shared by the engine components."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._handles: List[TaskHandle] = []

    @abstractmethod
    def now_ms(self) -> float:
        pass

    @abstractmethod
    def _arm(self, handle: TaskHandle, delay_ms: float) -> None:
        pass

    def call_later(self, delay_ms: float, callback: Callable[[], Any]) -> TaskHandle:
        handle = TaskHandle(task_id=next(self._ids), callback=callback)
        self._track(handle)
        self._arm(handle, max(0.0, float(delay_ms)))
        return handle

    def call_every(self, interval_ms: float, callback: Callable[[], Any]) -> TaskHandle:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        handle = TaskHandle(task_id=next(self._ids), callback=callback, interval_ms=float(interval_ms))
        self._track(handle)
        self._arm(handle, float(interval_ms))
        return handle

    def cancel_all(self) -> None:
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()

    def _track(self, handle: TaskHandle) -> None:
        # Forget finished one-shots so the handle list stays bounded
        self._handles = [h for h in self._handles if not h.cancelled]
        self._handles.append(handle)

    def _run(self, handle: TaskHandle) -> None:
        if handle.cancelled:
            return
        if not handle.periodic:
            handle.cancelled = True
        try:
            handle.callback()
        except Exception as exc:
            print(f"[scheduler] task {handle.task_id} failed: {exc}")


class VirtualScheduler(Scheduler):
    """Deterministic scheduler whose clock only moves when ``advance`` is called."""

    def __init__(self, start_ms: float = 0.0) -> None:
        super().__init__()
        self._now = float(start_ms)
        self._queue: List[tuple] = []
        self._seq = itertools.count()

    def now_ms(self) -> float:
        return self._now

    def _arm(self, handle: TaskHandle, delay_ms: float) -> None:
        heapq.heappush(self._queue, (self._now + delay_ms, next(self._seq), handle))

    def advance(self, ms: float) -> None:
        """Move the clock forward, running every task that falls due on the way."""
        target = self._now + max(0.0, float(ms))
        while self._queue and self._queue[0][0] <= target:
            due, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, due)
            self._run(handle)
            if handle.periodic and not handle.cancelled:
                self._arm(handle, handle.interval_ms)
        self._now = target

    def set_time(self, now_ms: float) -> None:
        self.advance(now_ms - self._now)

    def pending_count(self) -> int:
        return sum(1 for _, _, h in self._queue if not h.cancelled)


class AsyncioScheduler(Scheduler):
    """Wall-clock scheduler backed by ``loop.call_later``."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        super().__init__()
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now_ms(self) -> float:
        return wall_clock_ms()

    def _arm(self, handle: TaskHandle, delay_ms: float) -> None:
        def fire() -> None:
            handle._timer = None
            self._run(handle)
            if handle.periodic and not handle.cancelled:
                self._arm(handle, handle.interval_ms)

        handle._timer = self.loop.call_later(delay_ms / 1000.0, fire)
