import asyncio
import os
import sys
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from metlink_client import MetlinkClient  # noqa: E402
from synth_config import METLINK_BASE  # noqa: E402


def _client(handler) -> MetlinkClient:
    return MetlinkClient(
        api_key="secret",
        base_url="https://api.example.com/v1/",
        transport=httpx.MockTransport(handler),
    )


def _run(client: MetlinkClient, method: str):
    async def call():
        try:
            return await getattr(client, method)()
        finally:
            await client.aclose()

    return asyncio.run(call())


def test_requests_carry_api_key_and_hit_feed_paths():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/gtfs-rt/vehiclepositions"):
            return httpx.Response(200, json={"entity": [{"id": "1"}]})
        if request.url.path.endswith("/gtfs-rt/tripupdates"):
            return httpx.Response(200, json={"entity": [{"id": "u1"}, {"id": "u2"}]})
        return httpx.Response(200, json=[{"stop_id": "5016"}])

    assert _run(_client(handler), "get_buses") == [{"id": "1"}]
    assert len(_run(_client(handler), "get_updates")) == 2
    assert _run(_client(handler), "get_stops") == [{"stop_id": "5016"}]

    assert [r.url.path for r in seen] == [
        "/v1/gtfs-rt/vehiclepositions",
        "/v1/gtfs-rt/tripupdates",
        "/v1/gtfs/stops",
    ]
    for request in seen:
        assert request.headers["x-api-key"] == "secret"
        assert request.headers["accept"] == "application/json"


def test_unexpected_payload_shapes_become_empty_lists():
    def handler(request: httpx.Request) -> httpx.Response:
        if "gtfs-rt" in request.url.path:
            return httpx.Response(200, json={"header": {}})
        return httpx.Response(200, json={"not": "a list"})

    assert _run(_client(handler), "get_buses") == []
    assert _run(_client(handler), "get_updates") == []
    assert _run(_client(handler), "get_stops") == []


def test_http_errors_propagate():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"message": "Forbidden"})

    with pytest.raises(httpx.HTTPStatusError):
        _run(_client(handler), "get_buses")


def test_from_env_requires_api_key():
    with patch.dict(os.environ, {"METLINK_API_KEY": "  "}, clear=False):
        with pytest.raises(RuntimeError, match="METLINK_API_KEY"):
            MetlinkClient.from_env()


def test_from_env_reads_key_and_base():
    with patch.dict(os.environ, {"METLINK_API_KEY": "abc", "METLINK_BASE": ""}, clear=False):
        client = MetlinkClient.from_env()
    assert client._api_key == "abc"
    assert client._base_url == METLINK_BASE

    with patch.dict(os.environ, {"METLINK_API_KEY": "abc", "METLINK_BASE": "https://proxy.example.com/"}):
        client = MetlinkClient.from_env()
    assert client._base_url == "https://proxy.example.com"
