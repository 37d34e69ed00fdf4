"""Per-route audio parameters derived from vehicle positions, arrivals and delays.

Nothing here produces sound. The model computes what a synthesis layer should
be doing (pulse rate, pitch, pan, volume, arrival blasts, disruptions) and
hands it to an ``AudioSink``.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from arrival_detector import ArrivalEvent
from geo_math import Bounds, clamp, map_range
from scheduler import Scheduler, TaskHandle
from synth_config import AudioConfig, ProximityConfig


def _string_hash(value: str) -> int:
    """31-multiplier rolling hash over UTF-16 code units, wrapped to signed 32 bits."""
    data = value.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (((h << 5) - h) + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def route_base_frequency(group_id: object, config: Optional[AudioConfig] = None) -> float:
    """Stable base frequency for a route, spread over the configured range."""
    config = config or AudioConfig()
    normalized = (_string_hash(str(group_id)) % 1000) / 1000.0
    return config.base_freq_min_hz + normalized * (config.base_freq_max_hz - config.base_freq_min_hz)


@dataclass
class RouteVoice:
    group_id: str
    base_frequency: float
    bus_count: int = 0
    frequency: float = 0.0
    pulse_rate_hz: float = 0.0
    pan: float = 0.0
    volume_db: float = 0.0
    is_playing: bool = False
    disrupted: bool = False
    last_update: float = 0.0

    def to_dict(self) -> dict:
        return {
            "route_id": self.group_id,
            "bus_count": self.bus_count,
            "base_frequency": round(self.base_frequency, 2),
            "frequency": round(self.frequency, 2),
            "pulse_rate_hz": round(self.pulse_rate_hz, 3),
            "pan": round(self.pan, 3),
            "volume_db": round(self.volume_db, 2),
            "is_playing": self.is_playing,
            "disrupted": self.disrupted,
        }


@dataclass(frozen=True)
class BitcrushLevel:
    label: str
    intensity: float


BITCRUSH_NONE = BitcrushLevel("clean", 0.0)
BITCRUSH_LIGHT = BitcrushLevel("light crunch", 0.3)
BITCRUSH_MEDIUM = BitcrushLevel("medium crunch", 0.6)
BITCRUSH_HEAVY = BitcrushLevel("heavy crunch", 1.0)


@dataclass(frozen=True)
class ArrivalBlast:
    group_id: Optional[str]
    anchor_id: str
    delay_seconds: float
    duration_s: float
    filter_freq_hz: float
    bitcrush: BitcrushLevel
    pan: float

    def to_dict(self) -> dict:
        return {
            "route_id": self.group_id,
            "stop_id": self.anchor_id,
            "delay": self.delay_seconds,
            "duration_s": round(self.duration_s, 3),
            "filter_freq_hz": round(self.filter_freq_hz, 1),
            "bitcrush": self.bitcrush.label,
            "bitcrush_intensity": self.bitcrush.intensity,
            "pan": round(self.pan, 3),
        }


@dataclass(frozen=True)
class Disruption:
    group_id: str
    delay_seconds: float
    duration_s: float
    slowed_pulse_rate_hz: float
    anchor_lat: Optional[float] = None
    anchor_lon: Optional[float] = None


class AudioSink(ABC):
    """Synthesis collaborator that turns parameters into sound."""

    @abstractmethod
    def set_voice(self, voice: RouteVoice) -> None:
        pass

    @abstractmethod
    def play_arrival(self, blast: ArrivalBlast) -> None:
        pass

    @abstractmethod
    def disrupt(self, disruption: Disruption) -> None:
        pass

    def remove_voice(self, group_id: str) -> None:
        return None


@dataclass
class RecordingAudioSink(AudioSink):
    """In-memory sink keeping the most recent calls, for the server engine and tests."""
    maxlen: int = 100
    voices: Dict[str, RouteVoice] = field(default_factory=dict)
    arrivals: Deque[ArrivalBlast] = field(init=False)
    disruptions: Deque[Disruption] = field(init=False)
    removed: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.arrivals = deque(maxlen=self.maxlen)
        self.disruptions = deque(maxlen=self.maxlen)

    def set_voice(self, voice: RouteVoice) -> None:
        self.voices[voice.group_id] = voice

    def play_arrival(self, blast: ArrivalBlast) -> None:
        self.arrivals.append(blast)

    def disrupt(self, disruption: Disruption) -> None:
        self.disruptions.append(disruption)

    def remove_voice(self, group_id: str) -> None:
        self.voices.pop(group_id, None)
        self.removed.append(group_id)


class RouteAudioModel:
    def __init__(
        self,
        scheduler: Scheduler,
        sink: Optional[AudioSink] = None,
        bounds: Optional[Bounds] = None,
        config: Optional[AudioConfig] = None,
    ):
        self.scheduler = scheduler
        self.sink = sink or RecordingAudioSink()
        self.bounds = bounds
        self.config = config or AudioConfig()
        self.voices: Dict[str, RouteVoice] = {}
        self._restore_tasks: Dict[str, TaskHandle] = {}

    def _pulse_rate(self, bus_count: int) -> float:
        cfg = self.config
        return map_range(
            min(bus_count, cfg.max_buses_per_route),
            (1, cfg.max_buses_per_route),
            (cfg.pulse_rate_min_hz, cfg.pulse_rate_max_hz),
        )

    def _pan_for(self, lon: float) -> float:
        if self.bounds is None:
            return 0.0
        return map_range(lon, self.bounds.lon_range, (-self.config.pan_range, self.config.pan_range))

    def update_route(
        self,
        group_id: str,
        positions: Iterable[object],
        now_ms: Optional[float] = None,
    ) -> RouteVoice:
        """Refresh one route's voice from its current lagged positions.

        ``positions`` only needs ``lat``/``lon`` attributes. An empty list
        silences the voice but keeps it for ``cleanup_inactive_routes``.
        """
        if now_ms is None:
            now_ms = self.scheduler.now_ms()
        voice = self.voices.get(group_id)
        if voice is None:
            voice = RouteVoice(group_id=group_id, base_frequency=route_base_frequency(group_id, self.config))
            self.voices[group_id] = voice

        coords: List[Tuple[float, float]] = [(p.lat, p.lon) for p in positions]
        voice.bus_count = len(coords)
        voice.last_update = now_ms

        if not coords:
            voice.is_playing = False
            voice.pulse_rate_hz = 0.0
        else:
            cfg = self.config
            avg_lat = sum(lat for lat, _ in coords) / len(coords)
            avg_lon = sum(lon for _, lon in coords) / len(coords)
            pitch_mod = 0.0
            if self.bounds is not None:
                pitch_mod = map_range(
                    avg_lat, self.bounds.lat_range, (-cfg.pitch_modulation_range, cfg.pitch_modulation_range)
                )
            voice.frequency = voice.base_frequency * (1 + pitch_mod)
            voice.pan = self._pan_for(avg_lon)
            voice.volume_db = map_range(voice.bus_count, (1, cfg.max_buses_per_route), (cfg.route_min_db, cfg.route_max_db))
            if not voice.disrupted:
                voice.pulse_rate_hz = self._pulse_rate(voice.bus_count)
            voice.is_playing = True

        try:
            self.sink.set_voice(voice)
        except Exception as exc:
            print(f"[audio] failed to update route {group_id}: {exc}")
        return voice

    def update_routes(self, grouped: Dict[Optional[str], List[object]], now_ms: Optional[float] = None) -> None:
        """Refresh every route in ``grouped`` and silence known routes missing from it."""
        for group_id, positions in grouped.items():
            if group_id:
                self.update_route(group_id, positions, now_ms)
        for group_id in list(self.voices.keys()):
            if group_id not in grouped and self.voices[group_id].is_playing:
                self.update_route(group_id, [], now_ms)

    def cleanup_inactive_routes(self, now_ms: Optional[float] = None) -> List[str]:
        if now_ms is None:
            now_ms = self.scheduler.now_ms()
        threshold = self.config.inactive_route_cleanup_ms
        stale = [
            group_id
            for group_id, voice in self.voices.items()
            if voice.bus_count == 0 and now_ms - voice.last_update > threshold
        ]
        for group_id in stale:
            self.remove_route(group_id)
        return stale

    def remove_route(self, group_id: str) -> None:
        self.voices.pop(group_id, None)
        task = self._restore_tasks.pop(group_id, None)
        if task is not None:
            task.cancel()
        try:
            self.sink.remove_voice(group_id)
        except Exception as exc:
            print(f"[audio] failed to remove route {group_id}: {exc}")

    def arrival_blast(
        self,
        delay_seconds: float,
        group_id: Optional[str] = None,
        anchor_id: str = "",
        lon: Optional[float] = None,
    ) -> ArrivalBlast:
        """Blast parameters: later arrivals are longer, brighter and crunchier."""
        cfg = self.config
        clamped = clamp(delay_seconds, 0.0, cfg.max_delay_s)
        normalized = clamped / cfg.max_delay_s if cfg.max_delay_s > 0 else 0.0
        duration = cfg.noise_duration_min_s + normalized * (cfg.noise_duration_max_s - cfg.noise_duration_min_s)
        filter_freq = map_range(normalized, (0.0, 1.0), (cfg.filter_freq_min_hz, cfg.filter_freq_max_hz))
        if clamped >= cfg.heavy_bitcrush_s:
            level = BITCRUSH_HEAVY
        elif clamped >= cfg.medium_bitcrush_s:
            level = BITCRUSH_MEDIUM
        elif clamped >= cfg.light_bitcrush_s:
            level = BITCRUSH_LIGHT
        else:
            level = BITCRUSH_NONE
        return ArrivalBlast(
            group_id=group_id,
            anchor_id=anchor_id,
            delay_seconds=delay_seconds,
            duration_s=duration,
            filter_freq_hz=filter_freq,
            bitcrush=level,
            pan=self._pan_for(lon) if lon is not None else 0.0,
        )

    def play_arrival(self, event: ArrivalEvent, delay_seconds: float) -> ArrivalBlast:
        blast = self.arrival_blast(delay_seconds, event.group_id, event.anchor_id, event.anchor_lon)
        self.sink.play_arrival(blast)
        return blast

    def disruption(
        self,
        group_id: str,
        delay_seconds: float,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
    ) -> Optional[Disruption]:
        """Slow a playing route's pulse for up to ``disruption_max_s``, then restore it."""
        voice = self.voices.get(group_id)
        if voice is None or not voice.is_playing:
            return None
        cfg = self.config
        duration = min(abs(delay_seconds) / 50.0, cfg.disruption_max_s)
        disruption = Disruption(
            group_id=group_id,
            delay_seconds=delay_seconds,
            duration_s=duration,
            slowed_pulse_rate_hz=cfg.disruption_slow_hz,
            anchor_lat=lat,
            anchor_lon=lon,
        )
        voice.disrupted = True
        voice.pulse_rate_hz = cfg.disruption_slow_hz
        try:
            self.sink.disrupt(disruption)
        except Exception as exc:
            print(f"[audio] failed to trigger delay event for route {group_id}: {exc}")

        previous = self._restore_tasks.pop(group_id, None)
        if previous is not None:
            previous.cancel()
        self._restore_tasks[group_id] = self.scheduler.call_later(
            duration * 1000.0, lambda: self._restore(group_id)
        )
        return disruption

    def _restore(self, group_id: str) -> None:
        self._restore_tasks.pop(group_id, None)
        voice = self.voices.get(group_id)
        if voice is None:
            return
        voice.disrupted = False
        if voice.is_playing and voice.bus_count > 0:
            voice.pulse_rate_hz = self._pulse_rate(voice.bus_count)
            self.sink.set_voice(voice)

    def active_route_count(self) -> int:
        return sum(1 for voice in self.voices.values() if voice.is_playing)

    def cancel_pending(self) -> None:
        for task in self._restore_tasks.values():
            task.cancel()
        self._restore_tasks.clear()

    def dispose(self) -> None:
        self.cancel_pending()
        for group_id in list(self.voices.keys()):
            self.remove_route(group_id)


class ArrivalPlayer:
    """
    Plays arrival blasts offset by how long ago the crossing happened, so a
    batch of arrivals detected at once is spread back out in time. Arrivals
    older than ``max_playable_age_ms`` are dropped.
    """

    def __init__(self, model: RouteAudioModel, scheduler: Scheduler, config: Optional[ProximityConfig] = None):
        self.model = model
        self.scheduler = scheduler
        self.config = config or ProximityConfig()
        self._pending: List[TaskHandle] = []
        self.suppressed = 0

    def schedule(self, event: ArrivalEvent, delay_seconds: float, now_ms: Optional[float] = None) -> str:
        """Returns ``"suppressed"``, ``"immediate"`` or ``"scheduled"``."""
        if now_ms is None:
            now_ms = self.scheduler.now_ms()
        age = now_ms - event.crossing_time
        if age > self.config.max_playable_age_ms:
            self.suppressed += 1
            print(f"[audio] skipping arrival blast for stop {event.anchor_id} - too old ({age / 1000:.1f}s ago)")
            return "suppressed"

        play_delay = min(max(age, 0.0), self.config.max_play_delay_ms)
        if play_delay <= self.config.immediate_play_window_ms:
            self.model.play_arrival(event, delay_seconds)
            return "immediate"

        self._pending = [h for h in self._pending if not h.cancelled]
        self._pending.append(
            self.scheduler.call_later(play_delay, lambda: self.model.play_arrival(event, delay_seconds))
        )
        return "scheduled"

    @property
    def pending_count(self) -> int:
        return sum(1 for h in self._pending if not h.cancelled)

    def cancel_pending(self) -> int:
        pending = [h for h in self._pending if not h.cancelled]
        for handle in pending:
            handle.cancel()
        self._pending.clear()
        return len(pending)
