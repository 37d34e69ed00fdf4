"""
Bus Synth Feed Service - Metlink proxy and replay stream (FastAPI)

Purpose
=======
Proxy the Metlink GTFS / GTFS-realtime feeds for the generative bus audio
client, keep a short replay window of recent broadcasts so a newly connected
client can start with smooth motion, and run a server-side engine that answers
position and arrival queries.

Key features
------------
- Cached upstream proxies for vehicle positions, trip updates and stops.
- Broadcast loop every 10s: fetch, record into the replay window, fan out.
- Server-Sent Events (SSE) stream that replays history before going live.
- Lagged, interpolated positions and recent arrivals from the server engine.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx
- METLINK_API_KEY (required for upstream data)
"""

from __future__ import annotations
from typing import Any, AsyncIterator, Dict, List, Optional
import asyncio, json, os
from dataclasses import replace

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse

from bus_synth_engine import BusSynthEngine
from feed_cache import FeedCache
from feed_parsing import parse_stops
from metlink_client import MetlinkClient
from route_audio import RecordingAudioSink
from scheduler import AsyncioScheduler, wall_clock_ms
from synth_config import (
    AudioConfig,
    DelayConfig,
    HistoryCacheConfig,
    HistoryConfig,
    ProximityConfig,
    ServerConfig,
)
from update_history_cache import UpdateHistoryCache

# ---------------------------
# Config
# ---------------------------
SERVER_CONFIG = ServerConfig.from_env()
PORT = int(os.getenv("PORT", "8080"))

# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Bus Synth Feed Service")

FEED_CACHE = FeedCache()
BUS_UPDATE_SUBS: set[asyncio.Queue] = set()


def _get_client() -> Optional[MetlinkClient]:
    return getattr(app.state, "metlink_client", None)


def _get_history_cache() -> Optional[UpdateHistoryCache]:
    return getattr(app.state, "history_cache", None)


def _get_engine() -> Optional[BusSynthEngine]:
    return getattr(app.state, "engine", None)


def _require_client() -> MetlinkClient:
    client = _get_client()
    if client is None:
        raise RuntimeError("metlink client not configured")
    return client


async def get_buses_cached() -> List[Any]:
    client = _require_client()
    return await FEED_CACHE.get_or_fetch("buses", client.get_buses, SERVER_CONFIG.buses_ttl_s)


async def get_updates_cached() -> List[Any]:
    client = _require_client()
    return await FEED_CACHE.get_or_fetch("updates", client.get_updates, SERVER_CONFIG.updates_ttl_s)


async def get_stops_cached() -> List[Any]:
    client = _require_client()
    return await FEED_CACHE.get_or_fetch("stops", client.get_stops, SERVER_CONFIG.stops_ttl_s)


# ---------------------------
# Broadcast
# ---------------------------
def fan_out(message: Dict[str, Any]) -> int:
    """Send one message to every SSE subscriber. Returns how many accepted it."""
    encoded = f"data: {json.dumps(message)}\n\n"
    delivered = 0
    for q in list(BUS_UPDATE_SUBS):
        try:
            q.put_nowait(encoded)
            delivered += 1
        except asyncio.QueueFull:
            pass  # Drop update for slow clients
    return delivered


async def _load_engine_stops(engine: BusSynthEngine) -> None:
    try:
        stops = await get_stops_cached()
        engine.load_anchors(parse_stops(stops))
    except Exception as exc:
        print(f"[startup] failed to load stops for server engine: {exc}")


async def broadcast_bus_update() -> Optional[Dict[str, Any]]:
    """Fetch the latest feeds, record them for replay and push them to subscribers."""
    try:
        buses, updates = await asyncio.gather(get_buses_cached(), get_updates_cached())
    except Exception as exc:
        print(f"[broadcaster] failed to fetch feeds: {exc}")
        return None

    engine = _get_engine()
    if engine is not None and not engine.anchors:
        await _load_engine_stops(engine)

    # Recording and fan-out happen without an await in between, so a stream
    # that subscribes concurrently sees this batch exactly once.
    cache = _get_history_cache()
    if cache is not None:
        try:
            cache.record(buses, updates)
        except Exception as exc:
            print(f"[broadcaster] failed to record update for replay: {exc}")
    message = {
        "type": "bus_update",
        "timestamp": wall_clock_ms(),
        "buses": buses,
        "updates": updates,
        "isHistorical": False,
    }
    if engine is not None:
        try:
            engine.handle_message(message)
        except Exception as exc:
            print(f"[broadcaster] server engine failed to process update: {exc}")
    delivered = fan_out(message)
    print(f"[broadcaster] sent {len(buses)} buses, {len(updates)} updates to {delivered} subscribers")
    return message


async def _broadcast_once() -> Optional[Dict[str, Any]]:
    try:
        return await broadcast_bus_update()
    except Exception as exc:
        print(f"[broadcaster] error: {exc}")
        return None


async def broadcaster() -> None:
    await _broadcast_once()
    # A second early broadcast gives new clients two samples to interpolate between
    await asyncio.sleep(SERVER_CONFIG.startup_delay_s)
    await _broadcast_once()
    while True:
        await asyncio.sleep(SERVER_CONFIG.broadcast_interval_s)
        await _broadcast_once()


# ---------------------------
# Lifecycle
# ---------------------------
@app.on_event("startup")
async def init_metlink_client() -> None:
    try:
        app.state.metlink_client = MetlinkClient.from_env()
    except RuntimeError as exc:
        print(f"[metlink] client not configured: {exc}")
        app.state.metlink_client = None


@app.on_event("startup")
async def startup() -> None:
    scheduler = AsyncioScheduler(asyncio.get_running_loop())
    app.state.scheduler = scheduler
    app.state.history_cache = UpdateHistoryCache(scheduler, HistoryCacheConfig.from_env())

    app.state.engine = None
    if SERVER_CONFIG.run_server_engine:
        history_config = replace(HistoryConfig.from_env(), tick_interval_ms=SERVER_CONFIG.engine_tick_interval_ms)
        engine = BusSynthEngine(
            scheduler=scheduler,
            history_config=history_config,
            proximity_config=ProximityConfig.from_env(),
            delay_config=DelayConfig.from_env(),
            audio_config=AudioConfig.from_env(),
            audio_sink=RecordingAudioSink(),
        )
        engine.start()
        app.state.engine = engine

    app.state.broadcaster_task = asyncio.create_task(broadcaster())
    print(
        f"[startup] broadcasting every {SERVER_CONFIG.broadcast_interval_s:.0f}s, "
        f"server engine {'on' if app.state.engine is not None else 'off'}"
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    task = getattr(app.state, "broadcaster_task", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    cache = _get_history_cache()
    if cache is not None:
        cache.dispose()
    engine = _get_engine()
    if engine is not None:
        engine.dispose()
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.cancel_all()
    client = _get_client()
    if client is not None:
        await client.aclose()


# ---------------------------
# Upstream proxies
# ---------------------------
async def _proxy(fetch, label: str) -> List[Any]:
    if _get_client() is None:
        raise HTTPException(status_code=503, detail="metlink client not configured")
    try:
        return await fetch()
    except Exception as exc:
        print(f"[metlink] {label} fetch failed: {exc}")
        detail = {
            "message": f"{label} unavailable",
            "reason": str(exc),
        }
        raise HTTPException(status_code=502, detail=detail) from exc


@app.get("/api/buses")
async def api_buses():
    return await _proxy(get_buses_cached, "buses")


@app.get("/api/stops")
async def api_stops():
    return await _proxy(get_stops_cached, "stops")


@app.get("/api/updates")
async def api_updates():
    return await _proxy(get_updates_cached, "updates")


# ---------------------------
# SSE: Bus updates with replay
# ---------------------------
async def bus_update_events(cache: Optional[UpdateHistoryCache]) -> AsyncIterator[str]:
    """Replay retained history (oldest first, flagged historical), then stream live updates."""
    q: asyncio.Queue = asyncio.Queue(maxsize=SERVER_CONFIG.subscriber_queue_size)
    BUS_UPDATE_SUBS.add(q)
    try:
        history = cache.drain() if cache is not None else []
        if history:
            print(f"[broadcaster] replaying {len(history)} historical entries to new subscriber")
        for message in history:
            yield f"data: {json.dumps(message)}\n\n"
        while True:
            encoded = await q.get()
            yield encoded
    finally:
        BUS_UPDATE_SUBS.discard(q)


@app.get("/v1/stream/bus_updates")
async def stream_bus_updates():
    return StreamingResponse(bus_update_events(_get_history_cache()), media_type="text/event-stream")


@app.get("/api/history/stats")
async def history_stats():
    cache = _get_history_cache()
    if cache is None:
        raise HTTPException(status_code=503, detail="history cache unavailable")
    return cache.get_stats()


# ---------------------------
# Server engine queries
# ---------------------------
def _require_engine() -> BusSynthEngine:
    engine = _get_engine()
    if engine is None:
        raise HTTPException(status_code=503, detail="server engine disabled")
    return engine


@app.get("/api/positions")
async def positions():
    engine = _require_engine()
    lagged = engine.lagged_positions()
    return {
        "display_time": engine.display_time(),
        "count": len(lagged),
        "positions": [p.to_dict() for p in lagged.values()],
    }


@app.get("/api/positions/by_route")
async def positions_by_route():
    engine = _require_engine()
    grouped = engine.lagged_positions_by_group()
    return {
        "display_time": engine.display_time(),
        "routes": {
            str(route_id): [p.to_dict() for p in group]
            for route_id, group in grouped.items()
            if route_id is not None
        },
    }


@app.get("/api/positions/{bus_id}/trail")
async def position_trail(bus_id: str, length: int = 15):
    engine = _require_engine()
    samples = engine.trail(bus_id, max(0, min(length, 100)))
    return {
        "bus_id": bus_id,
        "trail": [{"lat": s.lat, "lon": s.lon, "bearing": s.bearing, "timestamp": s.timestamp} for s in samples],
    }


@app.get("/api/arrivals")
async def arrivals():
    engine = _require_engine()
    return {
        "arrivals": engine.recent_arrivals(),
        "delays": engine.recent_delays(),
    }


@app.get("/health")
async def health():
    cache = _get_history_cache()
    engine = _get_engine()
    return {
        "status": "ok",
        "timestamp": wall_clock_ms(),
        "metlink_configured": _get_client() is not None,
        "subscribers": len(BUS_UPDATE_SUBS),
        "history": cache.get_stats() if cache is not None else None,
        "engine": engine.stats() if engine is not None else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app:app", host="0.0.0.0", port=PORT)
