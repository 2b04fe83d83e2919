from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from bbstats.ranges import LATEST_RANGE_KEY, SECONDS_PER_DAY, RangeDescriptor
from bbstats.timestamps import extract_log_timestamp
from bbstats.upstream import LogRecord

DAY_MS = SECONDS_PER_DAY * 1000


@dataclass
class FilteredLogs:
    logs: List[LogRecord]
    effective_range: str
    effective_range_label: str


def format_record_count(count: int) -> str:
    return f"{count:,}"


def describe_coverage(
    descriptor: RangeDescriptor,
    timestamps: Sequence[Optional[int]],
    total_count: int,
) -> str:
    """Label the span the data actually covers, never more than it supports."""
    known = [ts for ts in timestamps if ts is not None]

    if not known:
        if descriptor.days is None:
            return f"Latest {format_record_count(total_count)} records"
        return f"{descriptor.label} (limited to available records)"

    span_days = max(0, max(known) - min(known)) / DAY_MS

    if descriptor.days is None:
        if span_days >= 1:
            return f"Latest {format_record_count(total_count)} records (~{max(1, round(span_days))} days)"
        return f"Latest {format_record_count(total_count)} records (past few hours)"

    if span_days >= descriptor.days - 0.5:
        return descriptor.label
    if span_days >= 1:
        return f"Last ~{max(1, round(span_days))} days"
    return "Last few hours"


def filter_logs_by_range(logs: Sequence[LogRecord], descriptor: RangeDescriptor) -> FilteredLogs:
    """Trim logs to the descriptor's day window, anchored on the newest record.

    The API can lag wall-clock time, so the cutoff is measured back from
    the latest timestamp present rather than from now. Records without a
    parseable timestamp are always kept.
    """
    if not logs:
        return FilteredLogs([], descriptor.key, descriptor.label)

    enriched: List[Tuple[LogRecord, Optional[int]]] = [(log, extract_log_timestamp(log)) for log in logs]

    if descriptor.days is None:
        return FilteredLogs(
            list(logs),
            descriptor.key,
            describe_coverage(descriptor, [ts for _, ts in enriched], len(logs)),
        )

    known = [ts for _, ts in enriched if ts is not None]
    if not known:
        return FilteredLogs(list(logs), LATEST_RANGE_KEY, f"Latest {format_record_count(len(logs))} records")

    cutoff = max(known) - descriptor.days * DAY_MS
    kept = [(log, ts) for log, ts in enriched if ts is None or ts >= cutoff]

    return FilteredLogs(
        [log for log, _ in kept],
        descriptor.key,
        describe_coverage(descriptor, [ts for _, ts in kept], len(kept)),
    )
