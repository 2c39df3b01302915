import datetime
import math
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional


def coerce_bytes(value) -> int:
    """Byte counters must be non-negative integers; anything else counts as 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value if value > 0 else 0
    if isinstance(value, float) and math.isfinite(value) and value > 0:
        return int(value)
    if isinstance(value, str):
        try:
            number = int(value)
        except ValueError:
            return 0
        return number if number > 0 else 0
    return 0


def _coerce_text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class ConnectionRecord:
    """One proxied connection as reported by the raw stats endpoint."""
    user: Optional[str] = None
    dst_ip: Optional[str] = None
    api: Optional[str] = None
    upload: int = 0
    download: int = 0
    src_ip: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionRecord":
        if not isinstance(data, dict):
            data = {}
        return cls(
            user=_coerce_text(data.get('user')),
            dst_ip=_coerce_text(data.get('dst_ip')),
            api=_coerce_text(data.get('api')),
            upload=coerce_bytes(data.get('upload')),
            download=coerce_bytes(data.get('download')),
            src_ip=_coerce_text(data.get('src_ip')),
        )


@dataclass
class RollupEntry:
    """Upload/download/connection counters for a single rollup key."""
    upload_bytes: int = 0
    download_bytes: int = 0
    connections: int = 0

    @property
    def total_bytes(self) -> int:
        return self.upload_bytes + self.download_bytes

    def to_payload(self) -> Dict[str, int]:
        return {
            "uploadBytes": self.upload_bytes,
            "downloadBytes": self.download_bytes,
            "totalBytes": self.total_bytes,
            "connections": self.connections,
        }


@dataclass
class Rollup:
    """Aggregated counters keyed by one dimension (user, country, ip or api)."""
    entries: Dict[str, RollupEntry] = field(default_factory=dict)

    def get_or_create(self, key: str) -> RollupEntry:
        """Get or create the entry for a key."""
        if key not in self.entries:
            self.entries[key] = RollupEntry()
        return self.entries[key]

    def add(self, key: str, upload: int, download: int, connections: int = 1) -> RollupEntry:
        entry = self.get_or_create(key)
        entry.upload_bytes += upload
        entry.download_bytes += download
        entry.connections += connections
        return entry

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, key) -> bool:
        return key in self.entries

    def __getitem__(self, key: str) -> RollupEntry:
        return self.entries[key]

    def items(self):
        return self.entries.items()

    @property
    def total_upload_bytes(self) -> int:
        return sum(e.upload_bytes for e in self.entries.values())

    @property
    def total_download_bytes(self) -> int:
        return sum(e.download_bytes for e in self.entries.values())

    def sorted_by_total(self) -> List[tuple]:
        # Ties are broken by key so the ordering is stable between cycles
        return sorted(self.entries.items(), key=lambda item: (-item[1].total_bytes, item[0]))

    def top(self, n: int) -> List[tuple]:
        return self.sorted_by_total()[:n]

    def to_payload(self) -> Dict[str, Dict[str, int]]:
        return {key: entry.to_payload() for key, entry in self.sorted_by_total()}


@dataclass(frozen=True)
class GeoRecord:
    latitude: float
    longitude: float
    country_name: str
    city: str
    country_code: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "GeoRecord":
        """
        Build a record from the geolocation endpoint payload
        ({latitude, longitude, country_name, city, country_code2}).

        Raises ValueError when the payload is not usable.
        """
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        try:
            latitude = float(data['latitude'])
            longitude = float(data['longitude'])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"missing or invalid coordinates: {e}") from e
        if not -90.0 <= latitude <= 90.0 or not -180.0 <= longitude <= 180.0:
            raise ValueError(f"coordinates out of range: ({latitude}, {longitude})")
        from .config import UNKNOWN_LABEL
        return cls(
            latitude=latitude,
            longitude=longitude,
            country_name=_coerce_text(data.get('country_name')) or UNKNOWN_LABEL,
            city=_coerce_text(data.get('city')) or UNKNOWN_LABEL,
            country_code=_coerce_text(data.get('country_code2') or data.get('country_code')),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {"latitude": self.latitude, "longitude": self.longitude,
                "countryName": self.country_name, "city": self.city,
                "countryCode": self.country_code}


@dataclass(frozen=True)
class MapPoint:
    latitude: float
    longitude: float
    weight: float
    label: str = ""
    total_bytes: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {"latitude": self.latitude, "longitude": self.longitude, "weight": self.weight,
                "label": self.label, "totalBytes": self.total_bytes}


@dataclass
class Totals:
    active_connections: int = 0
    total_upload_bytes: int = 0
    total_download_bytes: int = 0
    last_update_time: Optional[str] = None
    unique_ips: int = 0
    unique_apis: int = 0

    @property
    def total_bytes(self) -> int:
        return self.total_upload_bytes + self.total_download_bytes


DIMENSIONS = ('user', 'country', 'ip', 'api')


@dataclass
class AggregateResult:
    """Everything one poll cycle hands to the render sinks."""
    totals: Totals = field(default_factory=Totals)
    rollups: Dict[str, Rollup] = field(default_factory=lambda: {d: Rollup() for d in DIMENSIONS})
    map_points: List[MapPoint] = field(default_factory=list)
    ip_locations: Dict[str, GeoRecord] = field(default_factory=dict)
    source: str = "connections"

    def to_payload(self, top_n_ips: Optional[int] = None) -> Dict[str, Any]:
        """Convert the cycle result to the JSON payload sent to dashboard clients."""
        from .config import TOP_N_IPS
        top_n = TOP_N_IPS if top_n_ips is None else top_n_ips

        ip_rollup = self.rollups['ip']
        top_ips = []
        for ip, entry in ip_rollup.top(top_n):
            row = {"ip": ip, **entry.to_payload()}
            location = self.ip_locations.get(ip)
            if location:
                row["country"] = location.country_name
                row["city"] = location.city
            top_ips.append(row)

        return {"type": "stats_update",
                "generated_iso": datetime.datetime.now(datetime.timezone.utc).isoformat(),
                "source": self.source,
                "totals": {"activeConnections": self.totals.active_connections,
                           "totalUploadBytes": self.totals.total_upload_bytes,
                           "totalDownloadBytes": self.totals.total_download_bytes,
                           "totalBytes": self.totals.total_bytes,
                           "lastUpdateTime": self.totals.last_update_time,
                           "uniqueIps": self.totals.unique_ips,
                           "uniqueApis": self.totals.unique_apis},
                "userStats": self.rollups['user'].to_payload(),
                "countryStats": self.rollups['country'].to_payload(),
                "ipStats": ip_rollup.to_payload(),
                "apiStats": self.rollups['api'].to_payload(),
                "topIps": top_ips,
                "emptyDimensions": [d for d in DIMENSIONS if not self.rollups[d]],
                "mapPoints": [p.to_payload() for p in self.map_points]}
