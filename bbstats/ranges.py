from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class RangeDescriptor:
    key: str
    label: str
    days: Optional[int]  # None = unbounded, newest records first

    @property
    def bounded(self) -> bool:
        return self.days is not None


RANGE_OPTIONS: Dict[str, RangeDescriptor] = {
    "7d": RangeDescriptor("7d", "Last 7 days", 7),
    "30d": RangeDescriptor("30d", "Last 30 days", 30),
    "365d": RangeDescriptor("365d", "Last 365 days", 365),
    "latest": RangeDescriptor("latest", "Latest 1000 records", None),
    "lifetime": RangeDescriptor("lifetime", "All available data", None),
}

DEFAULT_RANGE_KEY = "7d"
LATEST_RANGE_KEY = "latest"

# Rotation used when warming the cache after a request is served.
PREFETCH_ORDER: Tuple[str, ...] = ("7d", "30d", "365d", "lifetime")


def resolve_range(range_key: Optional[str]) -> RangeDescriptor:
    """Unknown or missing keys resolve to the 7 day range."""
    normalized = range_key.strip().lower() if isinstance(range_key, str) else ""
    return RANGE_OPTIONS.get(normalized) or RANGE_OPTIONS[DEFAULT_RANGE_KEY]
