import os

# --- Configuration ---
# Upstream endpoints. The stats endpoint is served by the proxy dashboard
# backend and returns either raw connection records or pre-aggregated rollups.
STATS_API_URL = os.getenv('TRAFFIC_MONITOR_STATS_URL', 'http://localhost:8080/api/stats')
GEO_API_URL = os.getenv('TRAFFIC_MONITOR_GEO_URL', 'http://localhost:8080/api/ipgeo')
# Optional local MaxMind database. When set, IP lookups are answered from it
# instead of the remote geolocation endpoint.
GEOIP_DATABASE_PATH = os.getenv('TRAFFIC_MONITOR_GEOIP_DB')

SERVER_HOST = "0.0.0.0"
SERVER_PORT = int(os.getenv('TRAFFIC_MONITOR_PORT', '8766'))

# --- Polling ---
POLL_INTERVAL_SECONDS = 10  # Normal delay between two successful fetches
BACKOFF_INTERVAL_SECONDS = 15  # Delay after a failed fetch (normal + 50%)
STATS_API_TIMEOUT = 10  # seconds
GEO_API_TIMEOUT = 5  # seconds
HEARTBEAT_INTERVAL_SECONDS = 60

# --- Map rendering ---
MAP_WEIGHT_DIVISOR = 10.0  # weight = ln(total + 1) / divisor
MAP_WEIGHT_MAX = 2.0  # Upper clamp so the heat layer never receives unbounded values

# --- Tables ---
TOP_N_IPS = 10

# --- Defaults for missing record fields ---
DEFAULT_USER = "anonymous"
DEFAULT_API = "unknown"

# --- Geolocation labels ---
LOCAL_NETWORK_PREFIXES = ('192.168.', '10.')
LOCAL_NETWORK_EXACT = ('127.0.0.1',)
LOCAL_NETWORK_COUNTRY = "Local Network"
LOCAL_NETWORK_CITY = "Local Area"
UNKNOWN_LABEL = "Unknown"

# --- Global Constants ---
# Approximate country centroids used to place pre-aggregated country rollups on the map.
COUNTRY_COORDINATES = {
    'US': {'name': 'United States', 'lat': 37.09, 'lon': -95.71},
    'RU': {'name': 'Russia', 'lat': 61.52, 'lon': 105.32},
    'DE': {'name': 'Germany', 'lat': 51.17, 'lon': 10.45},
    'NL': {'name': 'Netherlands', 'lat': 52.13, 'lon': 5.29},
    'FI': {'name': 'Finland', 'lat': 61.92, 'lon': 25.75},
    'GB': {'name': 'United Kingdom', 'lat': 55.38, 'lon': -3.44},
    'FR': {'name': 'France', 'lat': 46.23, 'lon': 2.21},
    'AU': {'name': 'Australia', 'lat': -25.27, 'lon': 133.78},
    'JP': {'name': 'Japan', 'lat': 36.20, 'lon': 138.25},
    'CN': {'name': 'China', 'lat': 35.86, 'lon': 104.20},
    'IN': {'name': 'India', 'lat': 20.59, 'lon': 78.96},
    'BR': {'name': 'Brazil', 'lat': -14.24, 'lon': -51.93},
    'CA': {'name': 'Canada', 'lat': 56.13, 'lon': -106.35},
    'SG': {'name': 'Singapore', 'lat': 1.35, 'lon': 103.82},
    'KZ': {'name': 'Kazakhstan', 'lat': 48.02, 'lon': 66.92},
    'UA': {'name': 'Ukraine', 'lat': 48.38, 'lon': 31.17},
    'TR': {'name': 'Turkey', 'lat': 38.96, 'lon': 35.24},
}
