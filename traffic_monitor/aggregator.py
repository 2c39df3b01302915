"""
Statistics aggregation.

Normalizes either shape of the stats snapshot into the same AggregateResult:
- raw: {"connections": [ {user, dst_ip, api, upload, download}, ... ]}
- pre-aggregated: {activeConnections, totalUploadBytes, totalDownloadBytes,
  lastUpdateTime, userStats, countryStats, ipStats[, apiStats]}
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .config import DEFAULT_USER, DEFAULT_API
from .errors import TransientFetchError
from .geo_enrichment import enrich, traffic_weight
from .state import (
    AggregateResult,
    ConnectionRecord,
    MapPoint,
    Rollup,
    Totals,
    coerce_bytes,
)

log = logging.getLogger("TrafficMonitor.Aggregator")


@dataclass
class RawSnapshot:
    connections: List[ConnectionRecord] = field(default_factory=list)


@dataclass
class PreAggregatedSnapshot:
    active_connections: int = 0
    total_upload_bytes: int = 0
    total_download_bytes: int = 0
    last_update_time: Optional[str] = None
    user_stats: Dict[str, Any] = field(default_factory=dict)
    country_stats: Dict[str, Any] = field(default_factory=dict)
    ip_stats: Dict[str, Any] = field(default_factory=dict)
    api_stats: Dict[str, Any] = field(default_factory=dict)


Snapshot = Union[RawSnapshot, PreAggregatedSnapshot]


def _mapping(payload: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        log.warning(f"Ignoring '{key}': expected an object, got {type(value).__name__}")
        return {}
    return value


def parse_snapshot(payload: Any) -> Snapshot:
    """Resolve the snapshot variant once. Raises TransientFetchError for non-object payloads."""
    if not isinstance(payload, dict):
        raise TransientFetchError(f"stats payload is not a JSON object: {type(payload).__name__}")

    if 'connections' in payload:
        raw = payload.get('connections') or []
        if not isinstance(raw, list):
            raise TransientFetchError(f"'connections' is not a list: {type(raw).__name__}")
        connections = []
        for item in raw:
            if not isinstance(item, dict):
                log.debug(f"Skipping connection entry that is not an object: {item!r}")
                continue
            connections.append(ConnectionRecord.from_dict(item))
        return RawSnapshot(connections=connections)

    last_update = payload.get('lastUpdateTime')
    return PreAggregatedSnapshot(
        active_connections=coerce_bytes(payload.get('activeConnections')),
        total_upload_bytes=coerce_bytes(payload.get('totalUploadBytes')),
        total_download_bytes=coerce_bytes(payload.get('totalDownloadBytes')),
        last_update_time=str(last_update) if last_update else None,
        user_stats=_mapping(payload, 'userStats'),
        country_stats=_mapping(payload, 'countryStats'),
        ip_stats=_mapping(payload, 'ipStats'),
        api_stats=_mapping(payload, 'apiStats'),
    )


def aggregate_connections(connections: List[ConnectionRecord]) -> AggregateResult:
    """
    Single-pass fold of raw connection records into user/api/ip rollups and totals.
    The country rollup and map points need geolocation and are left empty here.
    """
    result = AggregateResult(source="connections")
    totals = result.totals
    users, apis, ips = result.rollups['user'], result.rollups['api'], result.rollups['ip']

    for conn in connections:
        totals.total_upload_bytes += conn.upload
        totals.total_download_bytes += conn.download
        users.add(conn.user or DEFAULT_USER, conn.upload, conn.download)
        apis.add(conn.api or DEFAULT_API, conn.upload, conn.download)
        if conn.dst_ip:
            ips.add(conn.dst_ip, conn.upload, conn.download)

    totals.active_connections = len(connections)
    totals.unique_ips = len(ips)
    totals.unique_apis = len(apis)
    return result


def _rollup_from_mapping(stats: Dict[str, Any]) -> Rollup:
    rollup = Rollup()
    for key, value in stats.items():
        if not isinstance(value, dict):
            log.debug(f"Skipping rollup entry {key!r}: {value!r}")
            continue
        rollup.add(str(key),
                   coerce_bytes(value.get('uploadBytes')),
                   coerce_bytes(value.get('downloadBytes')),
                   connections=coerce_bytes(value.get('connections')))
    return rollup


def country_map_points(country_rollup: Rollup, country_coordinates: Dict[str, Dict[str, Any]]) -> List[MapPoint]:
    """Place country rollups keyed by ISO code on their centroid; unknown codes are skipped."""
    points = []
    for code, entry in sorted(country_rollup.items()):
        coords = country_coordinates.get(code)
        if not coords or entry.total_bytes <= 0:
            continue
        points.append(MapPoint(latitude=coords['lat'], longitude=coords['lon'],
                               weight=traffic_weight(entry.total_bytes),
                               label=coords.get('name', code), total_bytes=entry.total_bytes))
    return points


def aggregate_preaggregated(snapshot: PreAggregatedSnapshot,
                            country_coordinates: Optional[Dict[str, Dict[str, Any]]] = None) -> AggregateResult:
    result = AggregateResult(source="aggregated")
    result.rollups['user'] = _rollup_from_mapping(snapshot.user_stats)
    result.rollups['country'] = _rollup_from_mapping(snapshot.country_stats)
    result.rollups['ip'] = _rollup_from_mapping(snapshot.ip_stats)
    result.rollups['api'] = _rollup_from_mapping(snapshot.api_stats)
    result.totals = Totals(
        active_connections=snapshot.active_connections,
        total_upload_bytes=snapshot.total_upload_bytes,
        total_download_bytes=snapshot.total_download_bytes,
        last_update_time=snapshot.last_update_time,
        unique_ips=len(result.rollups['ip']),
        unique_apis=len(result.rollups['api']),
    )
    if country_coordinates:
        result.map_points = country_map_points(result.rollups['country'], country_coordinates)
    return result


async def aggregate(snapshot: Union[Snapshot, Dict[str, Any]], cache=None,
                    country_coordinates: Optional[Dict[str, Dict[str, Any]]] = None) -> AggregateResult:
    """
    Turn one stats snapshot into rollups, totals and map points.

    Raw snapshots are geo-enriched through `cache` when one is given;
    pre-aggregated snapshots already carry their country/ip rollups.
    """
    if isinstance(snapshot, dict):
        snapshot = parse_snapshot(snapshot)

    if isinstance(snapshot, PreAggregatedSnapshot):
        result = aggregate_preaggregated(snapshot, country_coordinates)
        log.debug(f"Aggregated pre-computed snapshot: {len(result.rollups['user'])} users, "
                  f"{len(result.rollups['country'])} countries")
        return result

    result = aggregate_connections(snapshot.connections)
    if cache is not None:
        enriched = await enrich(snapshot.connections, cache)
        result.rollups['country'] = enriched.country_rollup
        result.rollups['ip'] = enriched.ip_rollup
        result.map_points = enriched.map_points
        result.ip_locations = enriched.locations
    log.debug(f"Aggregated {result.totals.active_connections} connections: "
              f"{len(result.rollups['user'])} users, {len(result.rollups['api'])} APIs, "
              f"{len(result.rollups['ip'])} IPs")
    return result
