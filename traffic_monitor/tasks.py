import asyncio
import contextlib
import logging

from .config import (
    BACKOFF_INTERVAL_SECONDS,
    GEO_API_URL,
    GEOIP_DATABASE_PATH,
    HEARTBEAT_INTERVAL_SECONDS,
    POLL_INTERVAL_SECONDS,
    STATS_API_URL,
)
from .geo_cache import create_geo_cache
from .poller import Poller
from .stats_api_client import StatsAPIClient

log = logging.getLogger("TrafficMonitor.Tasks")


async def debug_logger_task(app):
    log.info("Debug heartbeat task started.")
    while True:
        await asyncio.sleep(HEARTBEAT_INTERVAL_SECONDS)
        runtime = app["runtime"]
        poller, cache = runtime.get("poller"), runtime.get("cache")
        poller_status = poller.status() if poller is not None else {}
        cache_stats = cache.stats() if cache is not None else {}
        log.info(
            f"[HEARTBEAT] Clients: {len(app['websockets'])}, Poller: {poller_status.get('state')}, "
            f"Cycles: {poller_status.get('cycles')}, Failures in a row: {poller_status.get('consecutive_failures')}, "
            f"Geo cache: {cache_stats.get('size')} IPs ({cache_stats.get('fallbacks')} fallbacks)"
        )


def build_poller(settings, sinks=()):
    """Wire a stats client, geolocation cache and poller from CLI/config settings."""
    client = StatsAPIClient(settings.get("stats_url") or STATS_API_URL)
    cache = create_geo_cache(
        geoip_database_path=settings.get("geoip_db") or GEOIP_DATABASE_PATH,
        geo_api_url=settings.get("geo_url") or GEO_API_URL,
    )
    interval = settings.get("interval") or POLL_INTERVAL_SECONDS
    backoff = settings.get("backoff_interval") or max(BACKOFF_INTERVAL_SECONDS, interval * 1.5)
    poller = Poller(client, cache, sinks=sinks, interval=interval, backoff_interval=backoff)
    return poller


async def start_background_tasks(app):
    log.info("Starting background tasks...")
    poller = build_poller(app["settings"], sinks=[app["dashboard_sink"]])
    await poller.client.start()

    runtime = app["runtime"]
    runtime["poller"] = poller
    runtime["client"] = poller.client
    runtime["cache"] = poller.cache
    runtime["tasks"] = [
        asyncio.create_task(poller.run()),
        asyncio.create_task(debug_logger_task(app)),
    ]
    log.info("Background tasks started.")


async def cleanup_background_tasks(app):
    log.info("Cleaning up background tasks...")
    runtime = app["runtime"]
    tasks = runtime.get("tasks", [])
    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task

    if runtime.get("client") is not None:
        await runtime["client"].stop()
    if runtime.get("cache") is not None:
        await runtime["cache"].close()

    # Close any websocket that is still open so the server can shut down
    for ws in list(app["websockets"]):
        try:
            await ws.close()
        except Exception as e:
            log.debug(f"Error closing websocket during shutdown: {e}")
    log.info("Background tasks cleaned up.")
