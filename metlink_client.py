"""Async client for the Metlink open data API (GTFS and GTFS-realtime as JSON)."""
from __future__ import annotations

import os
from typing import Any, List, Optional

import httpx

from synth_config import METLINK_BASE


class MetlinkClient:
    """Fetches vehicle positions, trip updates and the stop list."""

    def __init__(
        self,
        api_key: str,
        base_url: str = METLINK_BASE,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_env(cls) -> "MetlinkClient":
        """Build a ``MetlinkClient`` from environment configuration.

        Required:
        * ``METLINK_API_KEY`` - API key from https://opendata.metlink.org.nz

        Optional:
        * ``METLINK_BASE`` - defaults to ``https://api.opendata.metlink.org.nz/v1``
        """
        api_key = (os.getenv("METLINK_API_KEY") or "").strip()
        if not api_key:
            raise RuntimeError("Missing required environment variables: METLINK_API_KEY")
        base_url = (os.getenv("METLINK_BASE") or "").strip() or METLINK_BASE
        return cls(api_key=api_key, base_url=base_url)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str) -> Any:
        client = await self._ensure_client()
        headers = {
            "accept": "application/json",
            "x-api-key": self._api_key,
        }
        response = await client.get(path, headers=headers)
        response.raise_for_status()
        return response.json()

    async def get_buses(self) -> List[Any]:
        data = await self._get_json("/gtfs-rt/vehiclepositions")
        entities = data.get("entity") if isinstance(data, dict) else None
        return entities if isinstance(entities, list) else []

    async def get_updates(self) -> List[Any]:
        data = await self._get_json("/gtfs-rt/tripupdates")
        entities = data.get("entity") if isinstance(data, dict) else None
        return entities if isinstance(entities, list) else []

    async def get_stops(self) -> List[Any]:
        data = await self._get_json("/gtfs/stops")
        return data if isinstance(data, list) else []
