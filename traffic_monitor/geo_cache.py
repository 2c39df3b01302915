"""
IP Geolocation Cache

Resolves destination IPs to GeoRecords for the traffic map. Every IP is looked
up at most once per process; successes, private-range placeholders and
failure fallbacks are all cached for the process lifetime.

Two lookup backends are available:
- RemoteGeoLookup: GET {GEO_API_URL}?ip=<address> (default)
- GeoIPDatabaseLookup: local MaxMind GeoLite2 City database
"""

import asyncio
import logging
import random
from typing import Dict, Optional

import aiohttp
import geoip2.database
import geoip2.errors

from .config import (
    GEO_API_URL,
    GEO_API_TIMEOUT,
    LOCAL_NETWORK_PREFIXES,
    LOCAL_NETWORK_EXACT,
    LOCAL_NETWORK_COUNTRY,
    LOCAL_NETWORK_CITY,
    UNKNOWN_LABEL,
)
from .errors import GeoLookupError
from .state import GeoRecord

log = logging.getLogger("TrafficMonitor.GeoCache")


def is_local_address(ip: str) -> bool:
    """Private/loopback addresses carry no public geolocation."""
    return ip in LOCAL_NETWORK_EXACT or ip.startswith(LOCAL_NETWORK_PREFIXES)


class RemoteGeoLookup:
    """Looks up IPs through the dashboard backend's geolocation endpoint."""

    def __init__(self, api_url: str = GEO_API_URL, timeout: int = GEO_API_TIMEOUT,
                 session: Optional[aiohttp.ClientSession] = None):
        self.api_url = api_url
        self.timeout = timeout
        self.session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                raise_for_status=False
            )
            self._owns_session = True
        return self.session

    async def lookup(self, ip: str) -> GeoRecord:
        session = self._get_session()
        try:
            async with session.get(self.api_url, params={'ip': ip}) as resp:
                if not 200 <= resp.status < 300:
                    raise GeoLookupError(f"geolocation API returned status {resp.status} for {ip}")
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise GeoLookupError(f"geolocation request timed out for {ip}") from e
        except aiohttp.ClientError as e:
            raise GeoLookupError(f"geolocation request failed for {ip}: {e}") from e
        except ValueError as e:
            raise GeoLookupError(f"geolocation API returned invalid JSON for {ip}: {e}") from e

        try:
            return GeoRecord.from_api(data)
        except ValueError as e:
            raise GeoLookupError(f"malformed geolocation payload for {ip}: {e}") from e

    async def close(self):
        if self.session and self._owns_session and not self.session.closed:
            await self.session.close()
            log.info("Geolocation API session closed")


class GeoIPDatabaseLookup:
    """Looks up IPs in a local MaxMind City database."""

    def __init__(self, database_path: str, reader=None):
        self.database_path = database_path
        self.reader = reader or geoip2.database.Reader(database_path)

    async def lookup(self, ip: str) -> GeoRecord:
        try:
            response = self.reader.city(ip)
        except geoip2.errors.AddressNotFoundError as e:
            raise GeoLookupError(f"{ip} not found in {self.database_path}") from e
        except ValueError as e:
            raise GeoLookupError(f"invalid address {ip!r}: {e}") from e

        latitude, longitude = response.location.latitude, response.location.longitude
        if latitude is None or longitude is None:
            raise GeoLookupError(f"no coordinates for {ip} in {self.database_path}")
        return GeoRecord(
            latitude=latitude,
            longitude=longitude,
            country_name=response.country.name or UNKNOWN_LABEL,
            city=response.city.name or UNKNOWN_LABEL,
            country_code=response.country.iso_code,
        )

    async def close(self):
        self.reader.close()


class GeoCache:
    """
    Memoizing IP -> GeoRecord resolver.

    resolve() never raises. The random source is injectable so placeholder
    coordinates are reproducible in tests.
    """

    def __init__(self, lookup, rng: Optional[random.Random] = None):
        self.lookup = lookup
        self.rng = rng or random.Random()
        self._cache: Dict[str, GeoRecord] = {}
        self._pending: Dict[str, asyncio.Task] = {}
        self.lookups = 0
        self.fallbacks = 0

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, ip) -> bool:
        return ip in self._cache

    def get(self, ip: str) -> Optional[GeoRecord]:
        return self._cache.get(ip)

    def _random_record(self, country_name: str, city: str) -> GeoRecord:
        return GeoRecord(
            latitude=self.rng.uniform(-90.0, 90.0),
            longitude=self.rng.uniform(-180.0, 180.0),
            country_name=country_name,
            city=city,
        )

    async def resolve(self, ip: str) -> GeoRecord:
        cached = self._cache.get(ip)
        if cached is not None:
            return cached

        if is_local_address(ip):
            record = self._random_record(LOCAL_NETWORK_COUNTRY, LOCAL_NETWORK_CITY)
            self._cache[ip] = record
            log.debug(f"Placed local address {ip} at ({record.latitude:.2f}, {record.longitude:.2f})")
            return record

        # Concurrent callers for the same IP share one lookup
        task = self._pending.get(ip)
        if task is None:
            task = asyncio.ensure_future(self._lookup_and_store(ip))
            self._pending[ip] = task
            task.add_done_callback(lambda _t, key=ip: self._pending.pop(key, None))
        return await asyncio.shield(task)

    async def _lookup_and_store(self, ip: str) -> GeoRecord:
        self.lookups += 1
        try:
            record = await self.lookup.lookup(ip)
            log.debug(f"Resolved {ip} -> {record.country_name}/{record.city}")
        except GeoLookupError as e:
            log.warning(f"Geolocation failed, using fallback location: {e}")
            record = self._fallback()
        except Exception as e:
            log.error(f"Unexpected error resolving {ip}: {e}", exc_info=True)
            record = self._fallback()
        self._cache[ip] = record
        return record

    def _fallback(self) -> GeoRecord:
        self.fallbacks += 1
        return self._random_record(UNKNOWN_LABEL, UNKNOWN_LABEL)

    def stats(self) -> Dict[str, int]:
        return {'size': len(self._cache), 'lookups': self.lookups,
                'fallbacks': self.fallbacks, 'pending': len(self._pending)}

    async def close(self):
        await self.lookup.close()


def create_geo_cache(geoip_database_path: Optional[str] = None, geo_api_url: str = GEO_API_URL,
                     rng: Optional[random.Random] = None) -> GeoCache:
    """Build a cache backed by the local database when one is configured, else the remote API."""
    if geoip_database_path:
        log.info(f"Using local GeoIP database at {geoip_database_path}")
        return GeoCache(GeoIPDatabaseLookup(geoip_database_path), rng=rng)
    log.info(f"Using geolocation API at {geo_api_url}")
    return GeoCache(RemoteGeoLookup(geo_api_url), rng=rng)
