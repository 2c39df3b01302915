"""
Stats API Client

Fetches the traffic statistics snapshot from the proxy dashboard backend.

Default endpoint: http://localhost:8080/api/stats
"""

import asyncio
import logging
from typing import Optional, Dict, Any

import aiohttp

from .config import STATS_API_URL, STATS_API_TIMEOUT
from .errors import TransientFetchError, StatsNotReadyError

log = logging.getLogger("TrafficMonitor.StatsClient")


class StatsAPIClient:
    """
    Client for the /api/stats endpoint.
    fetch_stats() either returns the decoded JSON object or raises a TransientFetchError.
    """

    def __init__(self, stats_url: str = STATS_API_URL, timeout: int = STATS_API_TIMEOUT):
        self.stats_url = stats_url
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self._last_error: Optional[str] = None
        self._last_successful_request: Optional[float] = None
        self._requests = 0

    async def start(self):
        """Create the HTTP session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                raise_for_status=False  # Handle status codes manually
            )
            log.info(f"Stats client ready for {self.stats_url}")

    async def stop(self):
        """Clean up the HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None
            log.info("Stats client session closed")

    async def fetch_stats(self) -> Dict[str, Any]:
        if self.session is None or self.session.closed:
            await self.start()

        self._requests += 1
        log.debug(f"Requesting {self.stats_url}")
        try:
            async with self.session.get(self.stats_url) as resp:
                log.debug(f"Stats API status: {resp.status}")
                if resp.status == 404:
                    raise StatsNotReadyError(f"{self.stats_url} returned 404: no statistics produced yet")
                if not 200 <= resp.status < 300:
                    response_text = await resp.text()
                    raise TransientFetchError(
                        f"{self.stats_url} returned status {resp.status}. "
                        f"Response preview: {response_text[:200]}",
                        status=resp.status,
                    )
                try:
                    data = await resp.json(content_type=None)
                except ValueError as e:
                    raise TransientFetchError(f"invalid JSON from {self.stats_url}: {e}",
                                              status=resp.status) from e
        except TransientFetchError as e:
            self._last_error = str(e)
            raise
        except asyncio.TimeoutError as e:
            self._last_error = f"request to {self.stats_url} timed out"
            raise TransientFetchError(self._last_error) from e
        except aiohttp.ClientError as e:
            self._last_error = f"request to {self.stats_url} failed: {e}"
            raise TransientFetchError(self._last_error) from e

        if not isinstance(data, dict):
            self._last_error = f"expected a JSON object from {self.stats_url}, got {type(data).__name__}"
            raise TransientFetchError(self._last_error)

        self._last_error = None
        self._last_successful_request = asyncio.get_running_loop().time()
        return data

    def get_connection_state(self) -> Dict[str, Any]:
        """Get current connection state for monitoring."""
        return {
            'stats_url': self.stats_url,
            'requests': self._requests,
            'last_error': self._last_error,
            'last_successful_request': self._last_successful_request
        }
