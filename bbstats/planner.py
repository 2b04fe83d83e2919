from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from bbstats.ranges import SECONDS_PER_DAY, RangeDescriptor

HOUR = 60 * 60

UNBOUNDED_SEGMENT_SECONDS = 30 * SECONDS_PER_DAY
MAX_UNBOUNDED_SEGMENTS = 360  # about 30 years of history


@dataclass(frozen=True)
class Segment:
    """Half-open [from_ts, to_ts) window in epoch seconds.

    Both bounds None means "the most recent records, no time bound".
    """

    from_ts: Optional[int] = None
    to_ts: Optional[int] = None

    @property
    def bounded(self) -> bool:
        return self.from_ts is not None and self.to_ts is not None

    @property
    def span(self) -> Optional[int]:
        if not self.bounded:
            return None
        return max(0, self.to_ts - self.from_ts)

    def split(self) -> Optional[Tuple["Segment", "Segment"]]:
        """Halve the window at its midpoint; None if it cannot be split."""
        if not self.bounded:
            return None
        midpoint = self.from_ts + self.span // 2
        if not (self.from_ts < midpoint < self.to_ts):
            return None
        return Segment(self.from_ts, midpoint), Segment(midpoint, self.to_ts)


LATEST_SEGMENT = Segment()


def segment_seconds_for(days: Optional[int]) -> Optional[int]:
    """Segment width for a bounded range; wider ranges get coarser slices."""
    if days is None:
        return None
    if days <= 1:
        return 6 * HOUR
    if days <= 3:
        return 12 * HOUR
    if days <= 7:
        return SECONDS_PER_DAY
    if days <= 30:
        return 3 * SECONDS_PER_DAY
    if days <= 90:
        return 7 * SECONDS_PER_DAY
    return 14 * SECONDS_PER_DAY


def plan_segments(descriptor: RangeDescriptor, now_seconds: int) -> List[Segment]:
    """Split a range into windows walked newest to oldest."""
    segments: List[Segment] = []

    if descriptor.days is None:
        segment_end = now_seconds
        while len(segments) < MAX_UNBOUNDED_SEGMENTS:
            segment_start = max(0, segment_end - UNBOUNDED_SEGMENT_SECONDS)
            segments.append(Segment(segment_start, segment_end))
            if segment_start == 0:
                break
            segment_end = segment_start
        return segments

    earliest = max(0, now_seconds - descriptor.days * SECONDS_PER_DAY)
    if earliest >= now_seconds:
        return [Segment(earliest, now_seconds)]

    step = segment_seconds_for(descriptor.days)
    segment_end = now_seconds
    while segment_end > earliest:
        segment_start = max(earliest, segment_end - step)
        segments.append(Segment(segment_start, segment_end))
        segment_end = segment_start

    return segments
