import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from .config import MAP_WEIGHT_DIVISOR, MAP_WEIGHT_MAX
from .state import ConnectionRecord, GeoRecord, MapPoint, Rollup

log = logging.getLogger("TrafficMonitor.GeoEnrichment")


def traffic_weight(total_bytes: int, divisor: float = MAP_WEIGHT_DIVISOR,
                   max_weight: float = MAP_WEIGHT_MAX) -> float:
    """Log-scaled heat intensity: ln(T + 1) / divisor, clamped to max_weight."""
    if total_bytes <= 0:
        return 0.0
    return min(math.log(total_bytes + 1) / divisor, max_weight)


@dataclass
class EnrichmentResult:
    country_rollup: Rollup = field(default_factory=Rollup)
    ip_rollup: Rollup = field(default_factory=Rollup)
    map_points: List[MapPoint] = field(default_factory=list)
    locations: Dict[str, GeoRecord] = field(default_factory=dict)


async def enrich(connections: Iterable[ConnectionRecord], cache) -> EnrichmentResult:
    """
    Resolve every distinct destination IP and fold the connections into the
    per-IP and per-country rollups. Returns only once all lookups have settled.
    """
    connections = list(connections)
    by_ip: Dict[str, List[ConnectionRecord]] = {}
    for conn in connections:
        if conn.dst_ip:
            by_ip.setdefault(conn.dst_ip, []).append(conn)

    result = EnrichmentResult()
    if not by_ip:
        return result

    # Sorted so rollup insertion order does not depend on input order
    distinct_ips = sorted(by_ip)
    locations = await asyncio.gather(*(cache.resolve(ip) for ip in distinct_ips))

    for ip, location in zip(distinct_ips, locations):
        result.locations[ip] = location
        for conn in by_ip[ip]:
            result.ip_rollup.add(ip, conn.upload, conn.download)
            result.country_rollup.add(location.country_name, conn.upload, conn.download)

        total = result.ip_rollup[ip].total_bytes
        if total > 0:
            result.map_points.append(MapPoint(
                latitude=location.latitude,
                longitude=location.longitude,
                weight=traffic_weight(total),
                label=ip,
                total_bytes=total,
            ))

    log.debug(f"Enriched {len(connections)} connections across {len(distinct_ips)} IPs "
              f"into {len(result.country_rollup)} countries")
    return result
