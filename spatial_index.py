"""Uniform lat/lon grid over a fixed bounding box for cheap radius lookups.

The radius query is deliberately over-inclusive: it returns every item stored
in the block of cells that covers the search circle. Callers must still run an
exact distance check on the results.
"""
from __future__ import annotations

from typing import Any, Dict, Hashable, List, Set, Tuple
import math

from geo_math import Bounds, METERS_PER_DEGREE, meters_to_lat_degrees, meters_to_lon_degrees


# Smallest cell extent in degrees, used when every item shares a latitude or longitude
MIN_CELL_DEGREES = 1e-6


class SpatialIndex:
    def __init__(self, bounds: Bounds, grid_size: int = 50):
        if grid_size < 1:
            raise ValueError("grid_size must be at least 1")
        self.bounds = bounds
        self.grid_size = int(grid_size)
        self.cell_lat_size = max((bounds.max_lat - bounds.min_lat) / self.grid_size, MIN_CELL_DEGREES)
        self.cell_lon_size = max((bounds.max_lon - bounds.min_lon) / self.grid_size, MIN_CELL_DEGREES)
        # (lat_index, lon_index) -> items; cells are created on first insert
        self._grid: Dict[Tuple[int, int], Dict[Hashable, Any]] = {}
        self._count = 0

    def cell_coords(self, lat: float, lon: float) -> Tuple[int, int]:
        """Grid cell for a point; out-of-bounds points clamp to the nearest edge cell."""
        lat_index = math.floor((lat - self.bounds.min_lat) / self.cell_lat_size)
        lon_index = math.floor((lon - self.bounds.min_lon) / self.cell_lon_size)
        last = self.grid_size - 1
        return (max(0, min(last, lat_index)), max(0, min(last, lon_index)))

    def add_item(self, lat: float, lon: float, item: Any) -> None:
        cell = self._grid.setdefault(self.cell_coords(lat, lon), {})
        key = self._item_key(item)
        if key not in cell:
            self._count += 1
        cell[key] = item

    def get_items_in_radius(self, lat: float, lon: float, radius_m: float) -> List[Any]:
        lat_radius = meters_to_lat_degrees(radius_m)
        # Use the latitude furthest from the equator inside the window so the
        # longitude span is never underestimated.
        widest_lat = max(abs(lat - lat_radius), abs(lat + lat_radius))
        lon_radius = meters_to_lon_degrees(radius_m, min(widest_lat, 89.0))
        cells_to_check = math.ceil(
            max(lat_radius / self.cell_lat_size, lon_radius / self.cell_lon_size)
        )
        cells_to_check = min(max(cells_to_check, 0), self.grid_size)

        center_lat, center_lon = self.cell_coords(lat, lon)
        seen: Set[Hashable] = set()
        results: List[Any] = []
        for lat_offset in range(-cells_to_check, cells_to_check + 1):
            lat_index = center_lat + lat_offset
            if lat_index < 0 or lat_index >= self.grid_size:
                continue
            for lon_offset in range(-cells_to_check, cells_to_check + 1):
                lon_index = center_lon + lon_offset
                if lon_index < 0 or lon_index >= self.grid_size:
                    continue
                cell = self._grid.get((lat_index, lon_index))
                if not cell:
                    continue
                for key, item in cell.items():
                    if key in seen:
                        continue
                    seen.add(key)
                    results.append(item)
        return results

    def get_items_in_cell(self, lat: float, lon: float) -> List[Any]:
        cell = self._grid.get(self.cell_coords(lat, lon))
        return list(cell.values()) if cell else []

    def clear(self) -> None:
        self._grid.clear()
        self._count = 0

    def __len__(self) -> int:
        return self._count

    def get_stats(self) -> Dict[str, Any]:
        cell_counts = [len(cell) for cell in self._grid.values()]
        occupied = len(cell_counts)
        total_cells = self.grid_size * self.grid_size
        return {
            "total_items": self._count,
            "occupied_cells": occupied,
            "total_cells": total_cells,
            "occupancy_rate": occupied / total_cells if total_cells else 0.0,
            "max_items_per_cell": max(cell_counts) if cell_counts else 0,
            "avg_items_per_cell": (self._count / occupied) if occupied else 0.0,
            "cell_size_lat_deg": self.cell_lat_size,
            "cell_size_lon_deg": self.cell_lon_size,
            "approx_cell_size_m": self.cell_lat_size * METERS_PER_DEGREE,
        }

    @staticmethod
    def _item_key(item: Any) -> Hashable:
        anchor_id = getattr(item, "anchor_id", None)
        if anchor_id is not None:
            return ("anchor", anchor_id)
        try:
            hash(item)
            return item
        except TypeError:
            return ("id", id(item))
