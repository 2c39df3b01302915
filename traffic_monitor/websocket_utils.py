import asyncio
import logging

import aiohttp


log = logging.getLogger("TrafficMonitor.WebsocketUtils")


async def safe_send_json(ws, payload):
    """
    Safely send JSON data over WebSocket, handling connection errors gracefully.

    Returns:
        bool: True if sent successfully, False if connection was closed/closing
    """
    try:
        if ws.closed:
            return False
        await ws.send_json(payload)
        return True
    except (ConnectionResetError,
            aiohttp.ClientConnectionResetError,
            RuntimeError) as e:
        # Client disconnected or connection is closing - this is normal
        log.debug(f"Could not send to client (connection closing): {type(e).__name__}")
        return False
    except Exception as e:
        log.warning(f"Unexpected error sending WebSocket message: {e}", exc_info=True)
        return False


async def robust_broadcast(websockets, payload) -> int:
    """
    Sends a JSON payload to every connected WebSocket client concurrently.
    Returns the number of clients that received it.
    """
    recipients = list(websockets)
    if not recipients:
        return 0

    # return_exceptions=True prevents one failed send from stopping others
    results = await asyncio.gather(*(safe_send_json(ws, payload) for ws in recipients),
                                   return_exceptions=True)
    successful = sum(1 for r in results if r is True)
    if successful < len(results):
        log.debug(f"Broadcast: {successful}/{len(results)} clients received message")
    return successful
