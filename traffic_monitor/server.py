import logging
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import web

from .config import SERVER_HOST, SERVER_PORT
from .poller import ErrorNotice, RenderSink
from .state import AggregateResult
from .tasks import start_background_tasks, cleanup_background_tasks
from .websocket_utils import robust_broadcast, safe_send_json

log = logging.getLogger("TrafficMonitor.Server")


class DashboardSink(RenderSink):
    """
    Render sink for browser dashboards: keeps the latest payload for late
    joiners and pushes every cycle to the connected websocket clients.

    A failed cycle never clears the last good payload; the error notice is
    shown next to it until the next successful cycle.
    """

    def __init__(self, websockets: Dict[Any, Dict[str, Any]]):
        self.websockets = websockets
        self.latest_payload: Optional[Dict[str, Any]] = None
        self.latest_error: Optional[Dict[str, Any]] = None

    async def render(self, result: AggregateResult):
        self.latest_payload = result.to_payload()
        self.latest_error = None
        await robust_broadcast(self.websockets, self.latest_payload)

    async def render_error(self, notice: ErrorNotice):
        self.latest_error = notice.to_payload()
        await robust_broadcast(self.websockets, self.latest_error)

    def snapshot(self) -> Dict[str, Any]:
        return {"stats": self.latest_payload, "error": self.latest_error}


async def handle_dashboard(request):
    sink: DashboardSink = request.app["dashboard_sink"]
    poller = request.app["runtime"].get("poller")
    body = sink.snapshot()
    body["poller"] = poller.status() if poller else None
    if sink.latest_payload is None:
        body["error"] = body["error"] or {"type": "stats_error", "level": "info",
                                          "message": "No statistics received yet"}
        return web.json_response(body, status=503)
    return web.json_response(body)


async def websocket_handler(request):
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)
    app = request.app
    app["websockets"][ws] = {}
    log.info(f"WebSocket client connected. Total clients: {len(app['websockets'])}")

    try:
        sink: DashboardSink = app["dashboard_sink"]
        poller = app["runtime"].get("poller")
        await safe_send_json(ws, {"type": "init", "poller": poller.status() if poller else None})
        if sink.latest_payload is not None:
            await safe_send_json(ws, sink.latest_payload)
        if sink.latest_error is not None:
            await safe_send_json(ws, sink.latest_error)

        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT and msg.data == "refresh":
                if sink.latest_payload is not None:
                    await safe_send_json(ws, sink.latest_payload)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                log.warning(f"WebSocket connection closed with exception {ws.exception()}")
    finally:
        app["websockets"].pop(ws, None)
        log.info(f"WebSocket client disconnected. Total clients: {len(app['websockets'])}")
    return ws


def create_app(settings: Optional[Dict[str, Any]] = None, start_poller: bool = True) -> web.Application:
    app = web.Application()
    app["settings"] = settings or {}
    app["websockets"] = {}
    app["runtime"] = {}  # poller, client, cache and background tasks, filled on startup
    app["dashboard_sink"] = DashboardSink(app["websockets"])

    if start_poller:
        app.on_startup.append(start_background_tasks)
        app.on_cleanup.append(cleanup_background_tasks)
    app.router.add_get("/api/dashboard", handle_dashboard)
    app.router.add_get("/ws", websocket_handler)
    return app


def run_server(settings: Dict[str, Any]):
    app = create_app(settings)
    host = settings.get("host", SERVER_HOST)
    port = settings.get("port", SERVER_PORT)
    log.info(f"Server starting on http://{host}:{port}")
    log.info(f"Polling statistics from {settings.get('stats_url')}")
    web.run_app(app, host=host, port=port)
