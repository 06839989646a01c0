"""Tests for telemetry collection and graceful degradation."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from session_relay import telemetry
from session_relay.base.data_structures import IP_GEO_ACCURACY, UNKNOWN_IP
from session_relay.schemas import Coordinates, IpGeo, TelemetryPayload
from session_relay.telemetry import DEFAULT_FIXED_ACCURACY, TelemetryCollector

IPAPI_RESPONSE = {
    "ip": "203.0.113.7",
    "city": "São Paulo",
    "region": "São Paulo",
    "country_name": "Brazil",
    "org": "Example Telecom",
    "latitude": -23.55,
    "longitude": -46.63,
}


@pytest.fixture
def ip_lookup(monkeypatch):
    """Route the collector's HTTP client through a mock transport."""
    state = {"status": 200, "body": IPAPI_RESPONSE, "error": None, "requests": []}
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        state["requests"].append(str(request.url))
        if state["error"] is not None:
            raise state["error"]
        return httpx.Response(state["status"], json=state["body"])

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(telemetry.httpx, "AsyncClient", client_factory)
    return state


@pytest.fixture
def collector(config, monkeypatch):
    config.viewport = (1280, 720)
    collector = TelemetryCollector(config)
    monkeypatch.setattr(collector, "_get_battery_level", AsyncMock(return_value=77))
    monkeypatch.setattr(collector, "_get_gpu_info", AsyncMock(return_value="NVIDIA GeForce RTX 3060"))
    monkeypatch.setattr(collector, "_get_connection_type", AsyncMock(return_value="wifi"))
    monkeypatch.setattr(collector, "_get_device_memory", AsyncMock(return_value=15.5))
    return collector


class TestCollect:
    """Test a full snapshot."""

    @pytest.mark.asyncio
    async def test_full_snapshot(self, collector, ip_lookup):
        payload = await collector.collect()

        assert ip_lookup["requests"] == ["https://ip.test/json/"]
        assert payload.ip == "203.0.113.7"
        assert payload.user_agent.startswith("SessionRelay/")
        assert payload.screen_width == 1280
        assert payload.screen_height == 720
        assert payload.battery == 77
        assert payload.gpu == "NVIDIA GeForce RTX 3060"
        assert payload.connection_type == "wifi"
        assert payload.device_memory == 15.5
        assert payload.ip_geo == IpGeo(city="São Paulo", region="São Paulo", country="Brazil", isp="Example Telecom")
        assert payload.is_reduced is False

    @pytest.mark.asyncio
    async def test_wire_format(self, collector, ip_lookup):
        payload = await collector.collect()

        encoded = json.loads(json.dumps(payload.to_dict()))

        assert encoded["userAgent"] == payload.user_agent
        assert encoded["ipGeo"]["country"] == "Brazil"
        assert TelemetryPayload.from_dict(encoded) == payload

    @pytest.mark.asyncio
    async def test_no_coords_without_fix(self, collector, ip_lookup):
        payload = await collector.collect()

        assert payload.coords is None

    @pytest.mark.asyncio
    async def test_configured_coords(self, config, collector, ip_lookup):
        config.latitude = 10.0
        config.longitude = 20.0

        payload = await collector.collect()

        assert payload.coords == Coordinates(10.0, 20.0, DEFAULT_FIXED_ACCURACY)


class TestReducedMode:
    """Test reduced collection."""

    @pytest.mark.asyncio
    async def test_ip_derived_coords(self, config, collector, ip_lookup):
        config.latitude = 10.0
        config.longitude = 20.0

        payload = await collector.collect(reduced=True)

        assert payload.coords == Coordinates(-23.55, -46.63, IP_GEO_ACCURACY)
        assert payload.is_reduced is True

    @pytest.mark.asyncio
    async def test_no_coords_when_lookup_lacks_position(self, collector, ip_lookup):
        ip_lookup["body"] = {"ip": "203.0.113.7"}

        payload = await collector.collect(reduced=True)

        assert payload.coords is None
        assert payload.ip_geo is None


class TestDegradation:
    """Test that failing sources only leave their fields absent."""

    @pytest.mark.asyncio
    async def test_lookup_http_error(self, collector, ip_lookup):
        ip_lookup["status"] = 503

        payload = await collector.collect(reduced=True)

        assert payload.ip == UNKNOWN_IP
        assert payload.ip_geo is None
        assert payload.coords is None
        assert payload.battery == 77

    @pytest.mark.asyncio
    async def test_lookup_connection_error(self, collector, ip_lookup):
        ip_lookup["error"] = httpx.ConnectError("unreachable")

        payload = await collector.collect()

        assert payload.ip == UNKNOWN_IP

    @pytest.mark.asyncio
    async def test_lookup_unexpected_body(self, collector, ip_lookup):
        ip_lookup["body"] = ["not", "an", "object"]

        payload = await collector.collect()

        assert payload.ip == UNKNOWN_IP

    @pytest.mark.asyncio
    async def test_optional_source_failure(self, collector, ip_lookup, monkeypatch):
        monkeypatch.setattr(collector, "_get_battery_level", AsyncMock(side_effect=RuntimeError("no battery api")))
        monkeypatch.setattr(collector, "_get_gpu_info", AsyncMock(side_effect=OSError("driver missing")))

        payload = await collector.collect()

        assert payload.battery is None
        assert payload.gpu is None
        assert payload.connection_type == "wifi"
        assert "battery" not in payload.to_dict()
