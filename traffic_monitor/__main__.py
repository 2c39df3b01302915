import argparse
import asyncio
import logging
import os
import sys

# Allows running the package directly (e.g. `python traffic_monitor`) by
# putting the project root on the path so the absolute imports below resolve.
if __package__ is None or __package__ == '':
    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)
    sys.path.insert(0, project_root)

from traffic_monitor import server, config
from traffic_monitor.formatting import format_summary
from traffic_monitor.poller import RenderSink
from traffic_monitor.tasks import build_poller

# --- Centralized Logging Configuration ---
log = logging.getLogger("TrafficMonitor")


class SummarySink(RenderSink):
    """Collects the outcome of a single cycle for the --once mode."""

    def __init__(self):
        self.result = None
        self.notice = None

    async def render(self, result):
        self.result = result

    async def render_error(self, notice):
        self.notice = notice


async def run_once(settings) -> int:
    """Fetch one snapshot, print the summary and return the process exit code."""
    sink = SummarySink()
    poller = build_poller(settings, sinks=[sink])
    try:
        await poller.run_cycle()
    finally:
        await poller.client.stop()
        if poller.cache is not None:
            await poller.cache.close()

    if sink.result is None:
        message = sink.notice.message if sink.notice else "no result"
        print(f"Error reading statistics: {message}", file=sys.stderr)
        print("Make sure the proxy dashboard backend is running and producing statistics.", file=sys.stderr)
        return 1
    print(format_summary(sink.result))
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Traffic Monitor - live dashboard backend for proxy traffic statistics",
        epilog="""
Examples:
  # Poll the default endpoint and serve the dashboard feed on port %(port)s
  %%(prog)s

  # Poll a remote backend every 5 seconds with a local GeoLite2 database
  %%(prog)s --stats-url http://10.0.0.5:8080/api/stats --interval 5 --geoip-db GeoLite2-City.mmdb

  # Print a one-off summary and exit
  %%(prog)s --once
        """ % {'port': config.SERVER_PORT},
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--stats-url', default=config.STATS_API_URL,
                        help="Statistics endpoint to poll (default: %(default)s)")
    parser.add_argument('--geo-url', default=config.GEO_API_URL,
                        help="IP geolocation endpoint (default: %(default)s)")
    parser.add_argument('--geoip-db', default=config.GEOIP_DATABASE_PATH,
                        help="Path to a MaxMind GeoLite2 City database; overrides --geo-url when set.")
    parser.add_argument('--host', default=config.SERVER_HOST, help="Listen address (default: %(default)s)")
    parser.add_argument('--port', type=int, default=config.SERVER_PORT, help="Listen port (default: %(default)s)")
    parser.add_argument('--interval', type=float, default=config.POLL_INTERVAL_SECONDS,
                        help="Seconds between successful polls (default: %(default)s)")
    parser.add_argument('--once', action='store_true', help="Fetch one snapshot, print a summary and exit.")
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    if args.interval <= 0:
        log.critical(f"Invalid --interval {args.interval}: must be positive.")
        sys.exit(1)

    settings = {
        'stats_url': args.stats_url,
        'geo_url': args.geo_url,
        'geoip_db': args.geoip_db,
        'host': args.host,
        'port': args.port,
        'interval': args.interval,
    }

    if args.once:
        sys.exit(asyncio.run(run_once(settings)))

    server.run_server(settings)


if __name__ == "__main__":
    main()
