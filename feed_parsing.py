"""Parsing helpers for the GTFS-realtime JSON feeds and the static stop list.

Every ingress point runs route identifiers through the same normalizer so
vehicles and delay updates for one route always group together. Malformed
entities are dropped here and never reach the engine state.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Mapping, Optional
import math
import re

from geo_math import Bounds


GroupIdNormalizer = Callable[[Any], Optional[str]]

_NUMERIC_TRAILING_ZERO_RE = re.compile(r"^\d+0$")


def normalize_group_id(value: Any) -> Optional[str]:
    """Apply the Metlink route id convention: strip one trailing zero from numeric ids.

    ``140`` and ``"140"`` both become ``"14"``; ``"HVL"`` passes through.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int):
        if value != 0 and value % 10 == 0:
            return str(value // 10)
        return str(value)
    text = str(value).strip()
    if not text:
        return None
    if len(text) > 1 and _NUMERIC_TRAILING_ZERO_RE.match(text):
        return text[:-1]
    return text


def identity_group_id(value: Any) -> Optional[str]:
    """Normalizer for feeds that do not use the trailing-zero convention."""
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class Anchor:
    """A static point of interest, e.g. a stop."""
    anchor_id: str
    lat: float
    lon: float
    name: Optional[str] = None

    def to_dict(self) -> dict:
        return {"stop_id": self.anchor_id, "stop_lat": self.lat, "stop_lon": self.lon, "stop_name": self.name}


@dataclass(frozen=True)
class VehicleReport:
    """One vehicle entry from a vehicle-positions batch, before it is timestamped."""
    entity_id: str
    group_id: Optional[str]
    lat: float
    lon: float
    bearing: float = 0.0


@dataclass(frozen=True)
class DelayUpdate:
    anchor_id: str
    group_id: Optional[str]
    delay_seconds: float
    effective_ms: float


def _parse_float(value: Optional[object]) -> Optional[float]:
    """Parse a value as a float, returning None on failure."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(result):
        return None
    return result


def _normalize_id(value: Optional[object]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        return text if text else None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _get(mapping: Any, key: str) -> Any:
    if isinstance(mapping, Mapping):
        return mapping.get(key)
    return None


def parse_vehicle_positions(
    entities: Iterable[Any],
    normalizer: GroupIdNormalizer = normalize_group_id,
) -> List[VehicleReport]:
    """Extract vehicle reports; entities without an id or a position are skipped."""
    reports: List[VehicleReport] = []
    seen: set = set()
    for entity in entities or []:
        vehicle = _get(entity, "vehicle")
        position = _get(vehicle, "position")
        if not position:
            continue
        entity_id = _normalize_id(_get(_get(vehicle, "vehicle"), "id"))
        if entity_id is None or entity_id in seen:
            continue
        lat = _parse_float(_get(position, "latitude"))
        lon = _parse_float(_get(position, "longitude"))
        if lat is None or lon is None:
            continue
        bearing = _parse_float(_get(position, "bearing")) or 0.0
        seen.add(entity_id)
        reports.append(
            VehicleReport(
                entity_id=entity_id,
                group_id=normalizer(_get(_get(vehicle, "trip"), "route_id")),
                lat=lat,
                lon=lon,
                bearing=bearing % 360.0,
            )
        )
    return reports


def parse_trip_updates(
    entities: Iterable[Any],
    now_ms: float,
    normalizer: GroupIdNormalizer = normalize_group_id,
) -> List[DelayUpdate]:
    """Extract per-stop arrival delays from a trip-updates batch.

    ``stop_time_update`` may be a single object or a list. Updates without a
    stop id or a non-zero arrival delay are skipped. The effective time comes
    from ``arrival.time`` (epoch seconds) and falls back to ``now_ms``.
    """
    updates: List[DelayUpdate] = []
    for entity in entities or []:
        trip_update = _get(entity, "trip_update")
        if not trip_update:
            continue
        group_id = normalizer(_get(_get(trip_update, "trip"), "route_id"))
        stop_time_updates = _get(trip_update, "stop_time_update")
        if isinstance(stop_time_updates, Mapping):
            stop_time_updates = [stop_time_updates]
        if not isinstance(stop_time_updates, list):
            continue
        for stu in stop_time_updates:
            anchor_id = _normalize_id(_get(stu, "stop_id"))
            arrival = _get(stu, "arrival")
            delay = _parse_float(_get(arrival, "delay"))
            if anchor_id is None or not delay:
                continue
            arrival_time = _parse_float(_get(arrival, "time"))
            effective_ms = arrival_time * 1000.0 if arrival_time else float(now_ms)
            updates.append(
                DelayUpdate(
                    anchor_id=anchor_id,
                    group_id=group_id,
                    delay_seconds=delay,
                    effective_ms=effective_ms,
                )
            )
    return updates


def parse_stops(raw: Any) -> List[Anchor]:
    """Build anchors from the GTFS stops list, skipping entries without coordinates."""
    if isinstance(raw, Mapping):
        raw = raw.get("stops") or raw.get("data") or []
    anchors: List[Anchor] = []
    seen: set = set()
    for stop in raw or []:
        anchor_id = _normalize_id(_get(stop, "stop_id"))
        if anchor_id is None or anchor_id in seen:
            continue
        lat = _parse_float(_get(stop, "stop_lat"))
        lon = _parse_float(_get(stop, "stop_lon"))
        if lat is None or lon is None:
            continue
        seen.add(anchor_id)
        name = _get(stop, "stop_name")
        anchors.append(Anchor(anchor_id=anchor_id, lat=lat, lon=lon, name=str(name).strip() if name else None))
    return anchors


def compute_bounds(anchors: Iterable[Anchor]) -> Bounds:
    """Bounding box of the anchor set, used to size the spatial grid."""
    return Bounds.from_points((a.lat, a.lon) for a in anchors)
