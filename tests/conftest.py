"""
Shared fixtures for Traffic Monitor tests.
"""

import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from traffic_monitor.errors import GeoLookupError
from traffic_monitor.geo_cache import GeoCache
from traffic_monitor.state import GeoRecord


class FakeGeoLookup:
    """Deterministic lookup backend: known IPs resolve, everything else fails."""

    def __init__(self, records=None):
        self.records = records or {}
        self.calls = []

    async def lookup(self, ip):
        self.calls.append(ip)
        if ip not in self.records:
            raise GeoLookupError(f"no record for {ip}")
        return self.records[ip]

    async def close(self):
        pass


GEO_RECORDS = {
    "8.8.8.8": GeoRecord(37.386, -122.0838, "United States", "Mountain View", "US"),
    "1.1.1.1": GeoRecord(-33.8688, 151.2093, "Australia", "Sydney", "AU"),
    "77.88.55.88": GeoRecord(55.7558, 37.6173, "Russia", "Moscow", "RU"),
    "95.217.163.246": GeoRecord(60.1699, 24.9384, "Finland", "Helsinki", "FI"),
    "8.8.4.4": GeoRecord(37.386, -122.0838, "United States", "Mountain View", "US"),
}


@pytest.fixture
def fake_lookup():
    return FakeGeoLookup(dict(GEO_RECORDS))


@pytest.fixture
def geo_cache(fake_lookup):
    return GeoCache(fake_lookup, rng=random.Random(42))


@pytest.fixture
def sample_connections():
    """Raw connection records as emitted by the proxy stats file."""
    return [
        {"user": "alice", "src_ip": "192.168.1.10", "dst_ip": "8.8.8.8", "api": "google",
         "upload": 100, "download": 200},
        {"user": "alice", "src_ip": "192.168.1.10", "dst_ip": "8.8.8.8", "api": "google",
         "upload": 50, "download": 0},
        {"user": "bob", "src_ip": "192.168.1.11", "dst_ip": "1.1.1.1", "api": "github",
         "upload": 1024, "download": 4096},
        {"user": "bob", "dst_ip": "77.88.55.88", "api": "youtube", "upload": 10, "download": 90000},
        {"dst_ip": "95.217.163.246", "upload": 5, "download": 5},
        {"user": "carol", "api": "twitter", "upload": 300, "download": 700},
        {"user": "carol", "dst_ip": "8.8.4.4", "api": "google", "upload": 0, "download": 0},
    ]


@pytest.fixture
def preaggregated_snapshot():
    return {
        "activeConnections": 3,
        "totalUploadBytes": 3000,
        "totalDownloadBytes": 9000,
        "lastUpdateTime": "2024-05-01T12:00:00Z",
        "userStats": {
            "astranet": {"uploadBytes": 2000, "downloadBytes": 6000},
            "guest": {"uploadBytes": 1000, "downloadBytes": 3000},
        },
        "countryStats": {
            "US": {"uploadBytes": 2500, "downloadBytes": 8000, "connections": 2},
            "FI": {"uploadBytes": 500, "downloadBytes": 1000, "connections": 1},
            "ZZ": {"uploadBytes": 0, "downloadBytes": 0, "connections": 0},
        },
        "ipStats": {
            "8.8.8.8": {"uploadBytes": 2500, "downloadBytes": 8000},
            "95.217.163.246": {"uploadBytes": 500, "downloadBytes": 1000},
        },
    }


def make_mock_session(status=200, json_data=None, text="", json_side_effect=None):
    """Create a mock aiohttp session whose get() returns one canned response."""
    mock_response = MagicMock()
    mock_response.status = status
    mock_response.json = AsyncMock(return_value=json_data, side_effect=json_side_effect)
    mock_response.text = AsyncMock(return_value=text)

    mock_session = MagicMock()
    mock_session.closed = False
    mock_session.close = AsyncMock()
    mock_session.get = MagicMock(
        return_value=MagicMock(
            __aenter__=AsyncMock(return_value=mock_response),
            __aexit__=AsyncMock(return_value=False),
        )
    )
    return mock_session


class DummyWS:
    """Minimal async WebSocket-like stub."""

    def __init__(self, closed=False, raise_exc=None):
        self.closed = closed
        self._raise_exc = raise_exc
        self.sent = []

    async def send_json(self, payload):
        if self._raise_exc:
            raise self._raise_exc
        self.sent.append(payload)

    async def close(self):
        self.closed = True
