from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Optional, Sequence, Tuple

# Field paths probed, in order, for a record's event time.
TIMESTAMP_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("datetime",),
    ("timestamp",),
    ("time",),
    ("event_time",),
    ("log_time",),
    ("ts",),
    ("meta", "timestamp"),
    ("metadata", "timestamp"),
)

_MILLIS_THRESHOLD = 1e12
_SECONDS_THRESHOLD = 1e5


def _parse_number(value: float) -> Optional[int]:
    if not math.isfinite(value):
        return None
    if value > _MILLIS_THRESHOLD:
        return int(value)
    if value > _SECONDS_THRESHOLD:
        return int(value * 1000)
    # Too small to be an epoch; most likely a counter or duration.
    return None


def _parse_iso(text: str) -> Optional[int]:
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def parse_timestamp_value(value: Any) -> Optional[int]:
    """Convert one raw field value to epoch milliseconds, or None if unknown."""
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        return _parse_number(float(value))

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            numeric = float(text)
        except ValueError:
            return _parse_iso(text)
        return _parse_number(numeric)

    return None


def _lookup(record: Any, path: Sequence[str]) -> Any:
    current = record
    for part in path:
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def extract_log_timestamp(record: Any) -> Optional[int]:
    """Return the first parseable timestamp among TIMESTAMP_PATHS (epoch ms)."""
    if not isinstance(record, dict):
        return None

    for path in TIMESTAMP_PATHS:
        parsed = parse_timestamp_value(_lookup(record, path))
        if parsed is not None:
            return parsed
    return None


def iso_from_millis(millis: Optional[float]) -> Optional[str]:
    if millis is None:
        return None
    dt = datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_from_seconds(seconds: Optional[int]) -> str:
    if seconds is None:
        return "latest"
    return iso_from_millis(seconds * 1000) or "latest"
