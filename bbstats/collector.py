from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from bbstats.cancellation import CancelToken
from bbstats.errors import AbortError, UpstreamError
from bbstats.planner import LATEST_SEGMENT, plan_segments
from bbstats.ranges import LATEST_RANGE_KEY, RANGE_OPTIONS, RangeDescriptor
from bbstats.timestamps import iso_from_seconds
from bbstats.upstream import GatewayClient, LogRecord

logger = logging.getLogger("bbstats.collector")

UNBOUNDED_LOG_CAP = 200_000
EMPTY_STREAK_LIMIT = 3


class FetchDebugTrace(BaseModel):
    """Progress and outcome of one collection run, embedded in response meta."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    original_range_key: str
    original_range_label: str
    requested_range_key: str
    requested_range_label: str
    effective_range_key: str
    effective_range_label: str
    segments_planned: int = 0
    segments_attempted: int = 0
    segments_succeeded: int = 0
    segments_failed: int = 0
    fallback_used: bool = False
    empty_segment_streak: int = 0
    limit_reached: bool = False
    total_logs: int = 0
    messages: List[str] = Field(default_factory=list)

    @classmethod
    def for_range(cls, descriptor: RangeDescriptor, planned: int) -> "FetchDebugTrace":
        return cls(
            original_range_key=descriptor.key,
            original_range_label=descriptor.label,
            requested_range_key=descriptor.key,
            requested_range_label=descriptor.label,
            effective_range_key=descriptor.key,
            effective_range_label=descriptor.label,
            segments_planned=planned,
        )

    def note(self, message: str, level: int = logging.INFO) -> None:
        self.messages.append(message)
        logger.log(level, "[Cloudflare] %s", message)


@dataclass
class CollectionResult:
    logs: List[LogRecord]
    debug: FetchDebugTrace


class GatewayLogCollector:
    """Walks a range's segments newest to oldest and gathers their logs.

    Segment failures are recorded in the trace and never end the run.
    Cancellation does: the token is checked before every segment and every
    bisection step and raises AbortError.
    """

    def __init__(self, client: GatewayClient, clock: Callable[[], float] = time.time) -> None:
        self.client = client
        self.clock = clock

    async def collect(
        self,
        descriptor: RangeDescriptor,
        token: Optional[CancelToken] = None,
    ) -> CollectionResult:
        token = token or CancelToken()
        now_seconds = int(self.clock())
        segments = plan_segments(descriptor, now_seconds)
        max_logs = UNBOUNDED_LOG_CAP if descriptor.days is None else math.inf
        collected: List[LogRecord] = []
        debug = FetchDebugTrace.for_range(descriptor, len(segments))

        for segment in segments:
            if token.cancelled:
                debug.note("Fetch aborted before completing all segments.")
                raise AbortError(token.reason or f"Fetch for range {descriptor.key} aborted.")

            debug.segments_attempted += 1
            debug.note(
                f"Segment {debug.segments_attempted}/{len(segments)} - range {descriptor.key} "
                f"(from={iso_from_seconds(segment.from_ts)}, to={iso_from_seconds(segment.to_ts)})"
            )

            try:
                logs = await self.client.fetch_segment(segment, token)
            except UpstreamError as e:
                debug.segments_failed += 1
                debug.note(f"Segment {debug.segments_attempted} failed: {e}", logging.WARNING)
                continue

            collected.extend(logs)
            debug.segments_succeeded += 1
            debug.note(
                f"Segment {debug.segments_attempted} returned {len(logs)} logs "
                f"(accumulated {len(collected)})."
            )

            if not logs and descriptor.days is None:
                debug.empty_segment_streak += 1
                debug.note(
                    f"Segment {debug.segments_attempted} returned no logs "
                    f"(empty streak {debug.empty_segment_streak})."
                )
                if debug.empty_segment_streak >= EMPTY_STREAK_LIMIT:
                    debug.note("Encountered three consecutive empty segments; stopping historical fetch.")
                    break
            elif logs and debug.empty_segment_streak:
                debug.note("Resetting empty segment streak due to new data.")
                debug.empty_segment_streak = 0

            if len(collected) >= max_logs:
                debug.limit_reached = True
                debug.note(f"Stopping early after collecting {len(collected)} logs (limit {max_logs}).")
                break

        if not collected:
            return await self._fallback(debug, token)

        debug.total_logs = len(collected)
        debug.note(
            f"Completed range {descriptor.key}: gathered {len(collected)} logs across "
            f"{debug.segments_succeeded}/{debug.segments_attempted} segments."
        )
        return CollectionResult(collected, debug)

    async def _fallback(self, debug: FetchDebugTrace, token: CancelToken) -> CollectionResult:
        latest = RANGE_OPTIONS[LATEST_RANGE_KEY]
        debug.fallback_used = True
        debug.effective_range_key = latest.key
        debug.effective_range_label = latest.label
        debug.note("Primary range returned no logs; falling back to latest records.")

        debug.segments_planned += 1
        debug.segments_attempted += 1
        logs = await self.client.fetch_segment(LATEST_SEGMENT, token)
        debug.segments_succeeded += 1
        debug.total_logs = len(logs)
        debug.note(
            f"Fallback segment returned {len(logs)} logs "
            f"(segments succeeded {debug.segments_succeeded}/{debug.segments_attempted})."
        )
        return CollectionResult(logs, debug)
