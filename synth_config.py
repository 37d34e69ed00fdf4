from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import os


# Configuration constants
DEFAULT_DISPLAY_LAG_MS = 60000.0  # 1 minute lag behind wall clock
DEFAULT_MAX_HISTORY_AGE_MS = 180000.0
DEFAULT_MAX_SAMPLES_PER_ENTITY = 100
DEFAULT_SINGLE_SAMPLE_TOLERANCE_MS = 30000.0
DEFAULT_HISTORICAL_SPREAD_MS = 90000.0
DEFAULT_HISTORICAL_INTERVAL_MS = 10000.0
DEFAULT_MAX_TIME_GAP_MS = 30000.0

# Proximity thresholds (meters)
STOP_THRESHOLD_M = 100.0
APPROACH_THRESHOLD_M = 20.0

# 50x50 grid over Wellington gives roughly 800m cells
SPATIAL_GRID_SIZE = 50
SEARCH_RADIUS_MULTIPLIER = 2.0

ARRIVAL_DEBOUNCE_MS = 30000.0
# Arrivals older than this are never played
MAX_PLAYABLE_AGE_MS = 15000.0

# Trip updates with |delay| at or below this are noise
MIN_ABS_DELAY_S = 10.0
DELAY_RETENTION_S = 3600.0

METLINK_BASE = "https://api.opendata.metlink.org.nz/v1"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        print(f"[config] ignoring invalid {name}={raw!r}, using {default}")
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


@dataclass
class HistoryConfig:
    """Position history retention and display-lag settings."""
    display_lag_ms: float = DEFAULT_DISPLAY_LAG_MS
    max_history_age_ms: float = DEFAULT_MAX_HISTORY_AGE_MS
    max_samples_per_entity: int = DEFAULT_MAX_SAMPLES_PER_ENTITY
    # Tolerance for the single-sample and most-recent-sample fallbacks. Tuned
    # for a ~10s feed cadence; adjust when retargeting to another feed.
    single_sample_tolerance_ms: float = DEFAULT_SINGLE_SAMPLE_TOLERANCE_MS
    historical_spread_ms: float = DEFAULT_HISTORICAL_SPREAD_MS
    historical_interval_ms: float = DEFAULT_HISTORICAL_INTERVAL_MS
    max_time_gap_ms: float = DEFAULT_MAX_TIME_GAP_MS
    tick_interval_ms: float = 1000.0 / 60.0

    @classmethod
    def from_env(cls) -> "HistoryConfig":
        return cls(
            display_lag_ms=_env_float("DISPLAY_LAG_MS", DEFAULT_DISPLAY_LAG_MS),
            max_history_age_ms=_env_float("MAX_HISTORY_AGE_MS", DEFAULT_MAX_HISTORY_AGE_MS),
            max_samples_per_entity=_env_int("MAX_SAMPLES_PER_ENTITY", DEFAULT_MAX_SAMPLES_PER_ENTITY),
            single_sample_tolerance_ms=_env_float(
                "SINGLE_SAMPLE_TOLERANCE_MS", DEFAULT_SINGLE_SAMPLE_TOLERANCE_MS
            ),
            historical_spread_ms=_env_float("HISTORICAL_SPREAD_MS", DEFAULT_HISTORICAL_SPREAD_MS),
            historical_interval_ms=_env_float("HISTORICAL_INTERVAL_MS", DEFAULT_HISTORICAL_INTERVAL_MS),
            max_time_gap_ms=_env_float("MAX_TIME_GAP_MS", DEFAULT_MAX_TIME_GAP_MS),
            tick_interval_ms=_env_float("TICK_INTERVAL_MS", 1000.0 / 60.0),
        )


@dataclass
class ProximityConfig:
    """Arrival detection thresholds."""
    stop_threshold_m: float = STOP_THRESHOLD_M
    approach_threshold_m: float = APPROACH_THRESHOLD_M
    grid_size: int = SPATIAL_GRID_SIZE
    search_radius_multiplier: float = SEARCH_RADIUS_MULTIPLIER
    arrival_debounce_ms: float = ARRIVAL_DEBOUNCE_MS
    max_playable_age_ms: float = MAX_PLAYABLE_AGE_MS
    max_play_delay_ms: float = 5000.0
    immediate_play_window_ms: float = 100.0
    debounce_cleanup_interval_ms: float = 60000.0

    @classmethod
    def from_env(cls) -> "ProximityConfig":
        return cls(
            stop_threshold_m=_env_float("STOP_THRESHOLD_M", STOP_THRESHOLD_M),
            approach_threshold_m=_env_float("APPROACH_THRESHOLD_M", APPROACH_THRESHOLD_M),
            grid_size=_env_int("SPATIAL_GRID_SIZE", SPATIAL_GRID_SIZE),
            search_radius_multiplier=_env_float("SEARCH_RADIUS_MULTIPLIER", SEARCH_RADIUS_MULTIPLIER),
            arrival_debounce_ms=_env_float("ARRIVAL_DEBOUNCE_MS", ARRIVAL_DEBOUNCE_MS),
            max_playable_age_ms=_env_float("MAX_PLAYABLE_AGE_MS", MAX_PLAYABLE_AGE_MS),
            max_play_delay_ms=_env_float("MAX_PLAY_DELAY_MS", 5000.0),
            immediate_play_window_ms=_env_float("IMMEDIATE_PLAY_WINDOW_MS", 100.0),
            debounce_cleanup_interval_ms=_env_float("DEBOUNCE_CLEANUP_INTERVAL_MS", 60000.0),
        )


@dataclass
class DelayConfig:
    min_abs_delay_s: float = MIN_ABS_DELAY_S
    retention_s: float = DELAY_RETENTION_S
    cleanup_interval_ms: float = 60000.0

    @classmethod
    def from_env(cls) -> "DelayConfig":
        return cls(
            min_abs_delay_s=_env_float("MIN_ABS_DELAY_S", MIN_ABS_DELAY_S),
            retention_s=_env_float("DELAY_RETENTION_S", DELAY_RETENTION_S),
            cleanup_interval_ms=_env_float("DELAY_CLEANUP_INTERVAL_MS", 60000.0),
        )


@dataclass
class HistoryCacheConfig:
    """Replay window kept by the server for newly connected consumers."""
    max_age_ms: float = 90000.0
    cleanup_interval_ms: float = 30000.0
    max_entries: int = 50

    @classmethod
    def from_env(cls) -> "HistoryCacheConfig":
        return cls(
            max_age_ms=_env_float("HISTORICAL_MAX_AGE_MS", 90000.0),
            cleanup_interval_ms=_env_float("HISTORICAL_CLEANUP_INTERVAL_MS", 30000.0),
            max_entries=_env_int("HISTORICAL_MAX_ENTRIES", 50),
        )


@dataclass
class AudioConfig:
    """Parameters fed to the generative audio layer."""
    base_freq_min_hz: float = 100.0
    base_freq_max_hz: float = 800.0
    pitch_modulation_range: float = 0.5
    pulse_rate_min_hz: float = 0.3
    pulse_rate_max_hz: float = 5.0
    max_buses_per_route: int = 20
    route_min_db: float = -8.0
    route_max_db: float = 0.0
    pan_range: float = 0.8
    noise_duration_min_s: float = 0.05
    noise_duration_max_s: float = 0.6
    max_delay_s: float = 600.0
    filter_freq_min_hz: float = 800.0
    filter_freq_max_hz: float = 20000.0
    light_bitcrush_s: float = 120.0
    medium_bitcrush_s: float = 300.0
    heavy_bitcrush_s: float = 480.0
    disruption_max_s: float = 2.0
    disruption_slow_hz: float = 1.0
    inactive_route_cleanup_ms: float = 30000.0
    route_cleanup_interval_ms: float = 60000.0

    @classmethod
    def from_env(cls) -> "AudioConfig":
        return cls(
            base_freq_min_hz=_env_float("AUDIO_BASE_FREQ_MIN_HZ", 100.0),
            base_freq_max_hz=_env_float("AUDIO_BASE_FREQ_MAX_HZ", 800.0),
            pulse_rate_min_hz=_env_float("AUDIO_PULSE_RATE_MIN_HZ", 0.3),
            pulse_rate_max_hz=_env_float("AUDIO_PULSE_RATE_MAX_HZ", 5.0),
            max_buses_per_route=_env_int("AUDIO_MAX_BUSES_PER_ROUTE", 20),
        )


@dataclass
class ServerConfig:
    """Upstream polling and distribution settings."""
    metlink_base: str = METLINK_BASE
    metlink_api_key: Optional[str] = None
    buses_ttl_s: float = 8.0
    stops_ttl_s: float = 86400.0
    updates_ttl_s: float = 30.0
    broadcast_interval_s: float = 10.0
    startup_delay_s: float = 2.0
    subscriber_queue_size: int = 20
    run_server_engine: bool = True
    # Tick rate of the server-side query engine
    engine_tick_interval_ms: float = 1000.0

    @classmethod
    def from_env(cls) -> "ServerConfig":
        api_key = (os.getenv("METLINK_API_KEY") or "").strip() or None
        return cls(
            metlink_base=(os.getenv("METLINK_BASE") or METLINK_BASE).strip().rstrip("/"),
            metlink_api_key=api_key,
            buses_ttl_s=_env_float("BUSES_TTL_S", 8.0),
            stops_ttl_s=_env_float("STOPS_TTL_S", 86400.0),
            updates_ttl_s=_env_float("UPDATES_TTL_S", 30.0),
            broadcast_interval_s=_env_float("BROADCAST_INTERVAL_S", 10.0),
            startup_delay_s=_env_float("STARTUP_DELAY_S", 2.0),
            subscriber_queue_size=_env_int("SUBSCRIBER_QUEUE_SIZE", 20),
            run_server_engine=os.getenv("RUN_SERVER_ENGINE", "1").strip().lower() not in {"0", "false", "no"},
            engine_tick_interval_ms=_env_float("ENGINE_TICK_INTERVAL_MS", 1000.0),
        )
