from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

from dateutil import parser as dtparser


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(ts: str) -> datetime:
    """Parse ISO-8601 timestamps and normalize to UTC."""
    dt = dtparser.isoparse(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def coerce_ts(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """Accept ISO strings, datetimes or epoch numbers (seconds or milliseconds)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        seconds = float(value) / 1000.0 if float(value) > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    return parse_ts(str(value))


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso_utc(dt: datetime) -> str:
    """Serialize datetime to an ISO string with Z suffix."""
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def sort_key(dt: datetime) -> str:
    """Fixed-width UTC timestamp; lexicographic order equals time order."""
    return ensure_utc(dt).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
