import math
from typing import List

BYTE_UNITS = ["Bytes", "KB", "MB", "GB", "TB", "PB"]


def format_bytes(size_in_bytes, decimals: int = 2) -> str:
    """
    Format a byte count as a human readable string using 1024-based units.

    format_bytes(0) -> '0 Bytes', format_bytes(1536) -> '1.5 KB'
    """
    if isinstance(size_in_bytes, bool) or not isinstance(size_in_bytes, (int, float)):
        size_in_bytes = 0
    if not math.isfinite(size_in_bytes) or size_in_bytes < 1:
        return "0 Bytes"

    decimals = max(decimals, 0)
    exponent = min(int(math.floor(math.log(size_in_bytes, 1024))), len(BYTE_UNITS) - 1)
    value = round(size_in_bytes / (1024 ** exponent), decimals)
    # Rounding can carry into the next unit (1023.999 KB -> 1024 KB)
    if value >= 1024 and exponent < len(BYTE_UNITS) - 1:
        exponent += 1
        value = round(size_in_bytes / (1024 ** exponent), decimals)
    return f"{_trim(value)} {BYTE_UNITS[exponent]}"


def _trim(value: float) -> str:
    text = f"{value:f}".rstrip('0').rstrip('.')
    return text or "0"


def format_summary(result) -> str:
    """Render a plain-text summary of one aggregation result for the terminal."""
    totals = result.totals
    lines: List[str] = ["--- Traffic statistics ---"]
    if totals.last_update_time:
        lines.append(f"Last update: {totals.last_update_time}")
    lines.append(f"Active connections: {totals.active_connections}")
    lines.append(f"Total traffic: Uploaded: {format_bytes(totals.total_upload_bytes)}, "
                 f"Downloaded: {format_bytes(totals.total_download_bytes)}")
    lines.append("-" * 39)
    lines.append("Per-user statistics:")
    users = result.rollups['user']
    if not users:
        lines.append("  No user data.")
    else:
        for user, entry in users.sorted_by_total():
            lines.append(f"  '{user}': Uploaded: {format_bytes(entry.upload_bytes)}, "
                         f"Downloaded: {format_bytes(entry.download_bytes)}")
    lines.append("-" * 39)
    return "\n".join(lines)
