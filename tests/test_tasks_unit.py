import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import DummyWS, FakeGeoLookup
from traffic_monitor import config
from traffic_monitor.geo_cache import GeoCache, RemoteGeoLookup
from traffic_monitor.poller import Poller
from traffic_monitor.server import DashboardSink
from traffic_monitor.tasks import (
    build_poller,
    cleanup_background_tasks,
    debug_logger_task,
    start_background_tasks,
)


def _fake_client():
    client = MagicMock()
    client.start = AsyncMock()
    client.stop = AsyncMock()
    client.fetch_stats = AsyncMock(return_value={"connections": []})
    return client


def _app(settings=None):
    websockets = {}
    return {
        "settings": settings or {},
        "websockets": websockets,
        "runtime": {},
        "dashboard_sink": DashboardSink(websockets),
    }


def test_build_poller_defaults():
    poller = build_poller({})

    assert poller.client.stats_url == config.STATS_API_URL
    assert poller.interval == config.POLL_INTERVAL_SECONDS
    assert poller.backoff_interval == config.BACKOFF_INTERVAL_SECONDS
    assert isinstance(poller.cache, GeoCache)
    assert isinstance(poller.cache.lookup, RemoteGeoLookup)


def test_build_poller_scales_backoff_with_interval():
    poller = build_poller({"stats_url": "http://10.0.0.5:8080/api/stats", "interval": 20})

    assert poller.client.stats_url == "http://10.0.0.5:8080/api/stats"
    assert poller.interval == 20
    assert poller.backoff_interval == 30


def test_build_poller_never_backs_off_below_default():
    poller = build_poller({"interval": 2})

    assert poller.backoff_interval == config.BACKOFF_INTERVAL_SECONDS


def test_build_poller_attaches_sinks():
    sink = DashboardSink({})

    poller = build_poller({}, sinks=[sink])

    assert poller.sinks == [sink]


@pytest.mark.asyncio
async def test_start_and_cleanup_background_tasks():
    app = _app()
    client = _fake_client()
    ws = DummyWS()
    app["websockets"][ws] = {}

    with patch("traffic_monitor.tasks.build_poller",
               side_effect=lambda settings, sinks: Poller(client, sinks=sinks)):
        await start_background_tasks(app)

    runtime = app["runtime"]
    assert runtime["client"] is client
    assert len(runtime["tasks"]) == 2
    client.start.assert_awaited_once()

    # Let the poller complete its first cycle
    for _ in range(10):
        await asyncio.sleep(0)
    assert runtime["poller"].cycles == 1
    assert app["dashboard_sink"].latest_payload is not None

    await cleanup_background_tasks(app)

    assert all(task.done() for task in runtime["tasks"])
    client.stop.assert_awaited_once()
    assert ws.closed is True


@pytest.mark.asyncio
async def test_cleanup_closes_cache_and_tolerates_missing_runtime():
    app = _app()
    cache = MagicMock()
    cache.close = AsyncMock()
    app["runtime"]["cache"] = cache

    await cleanup_background_tasks(app)

    cache.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_cleanup_ignores_websocket_close_errors():
    app = _app()
    ws = MagicMock()
    ws.close = AsyncMock(side_effect=RuntimeError("already closing"))
    app["websockets"][ws] = {}

    await cleanup_background_tasks(app)

    ws.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_debug_logger_task_logs_heartbeat(monkeypatch, caplog):
    caplog.set_level(logging.INFO, logger="TrafficMonitor")
    app = _app()
    app["runtime"]["poller"] = Poller(client=None)
    app["runtime"]["cache"] = GeoCache(FakeGeoLookup())

    calls = {"n": 0}

    async def fast_sleep(_):
        calls["n"] += 1
        if calls["n"] > 1:
            raise asyncio.CancelledError()

    monkeypatch.setattr(asyncio, "sleep", fast_sleep)

    with pytest.raises(asyncio.CancelledError):
        await debug_logger_task(app)

    assert "[HEARTBEAT] Clients: 0, Poller: idle" in caplog.text
    assert "Geo cache: 0 IPs" in caplog.text
