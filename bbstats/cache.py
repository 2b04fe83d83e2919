from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from bbstats.aggregation import Summary, summarize_logs
from bbstats.cancellation import CancelToken
from bbstats.collector import GatewayLogCollector
from bbstats.errors import AbortError, BBStatsError
from bbstats.range_filter import filter_logs_by_range
from bbstats.ranges import PREFETCH_ORDER, RangeDescriptor, resolve_range
from bbstats.timestamps import iso_from_millis
from bbstats.upstream import LogRecord

logger = logging.getLogger("bbstats.cache")
prefetch_logger = logging.getLogger("bbstats.prefetch")

HIT = "HIT"
STALE = "STALE"
MISS = "MISS"


def _iso(seconds: float) -> Optional[str]:
    return iso_from_millis(seconds * 1000)


@dataclass(frozen=True)
class CachedResult:
    summary: Summary
    meta: Dict[str, Any]
    cache_status: str = MISS
    # Seconds a downstream HTTP cache may keep this result; 0 means revalidate.
    max_age: int = 0


@dataclass
class _Operation:
    """A running fetch: the task doing the work and the token that stops it.

    The token belongs to the operation, not to any request. Requests wait
    on it as counted waiters; when the last one leaves before the task is
    done the operation is cancelled, unless it is detached (a stale refresh
    nobody asked for).
    """

    task: asyncio.Task
    token: CancelToken
    detached: bool = False
    waiters: int = 0

    @property
    def live(self) -> bool:
        return not self.token.cancelled and not self.task.done()


@dataclass
class CacheEntry:
    summary: Optional[Summary] = None
    meta: Optional[Dict[str, Any]] = None
    fetched_at: float = 0.0
    expires_at: float = 0.0
    raw_logs: List[LogRecord] = field(default_factory=list)
    in_flight: Optional[_Operation] = None

    def is_fresh(self, now: float) -> bool:
        return self.summary is not None and now < self.expires_at


class CacheService:
    """Per-range summary cache with stale-while-revalidate and prefetching.

    One instance per process. Entries move EMPTY -> FETCHING -> FRESH ->
    STALE -> FETCHING -> FRESH. Value fields of an entry are only written
    when a fetch completes, so a failed or cancelled fetch leaves whatever
    was there before.
    """

    def __init__(
        self,
        collector: GatewayLogCollector,
        ttl_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.collector = collector
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._prefetch: Optional[_Operation] = None
        self._background: Set[asyncio.Task] = set()

    # =========================
    # Inspection
    # =========================

    def entry(self, range_key: str) -> Optional[CacheEntry]:
        return self._entries.get(resolve_range(range_key).key)

    def state(self, range_key: str) -> str:
        entry = self.entry(range_key)
        if entry is None:
            return "EMPTY"
        if entry.in_flight is not None and entry.in_flight.live:
            return "FETCHING"
        if entry.is_fresh(self.clock()):
            return "FRESH"
        if entry.summary is not None:
            return "STALE"
        return "EMPTY"

    def is_fresh(self, range_key: str) -> bool:
        entry = self.entry(range_key)
        return entry is not None and entry.is_fresh(self.clock())

    @property
    def prefetch_task(self) -> Optional[asyncio.Task]:
        return self._prefetch.task if self._prefetch else None

    # =========================
    # Reads
    # =========================

    async def get(
        self,
        range_key: Optional[str],
        *,
        force_refresh: bool = False,
        token: Optional[CancelToken] = None,
    ) -> CachedResult:
        """Serve a user request for one range.

        Fresh entries are returned as-is. Stale entries are returned at once
        and refreshed in the background. Anything else is fetched before
        returning. Any user request stops the prefetch rotation.
        """
        descriptor = resolve_range(range_key)
        self.cancel_prefetch("user request")

        entry = self._entries.get(descriptor.key)
        if entry is not None and entry.summary is not None and not force_refresh:
            now = self.clock()
            if entry.is_fresh(now):
                remaining = int(entry.expires_at - now)
                return CachedResult(entry.summary, self._cached_meta(entry), HIT, max_age=remaining)

            refreshing = self._refresh_in_background(descriptor, entry)
            meta = self._cached_meta(entry)
            meta["stale"] = True
            meta["refreshing"] = refreshing
            return CachedResult(entry.summary, meta, STALE)

        return await self._ensure(
            descriptor,
            force_refresh=force_refresh,
            token=token,
            reason="user-refresh" if force_refresh else "user-request",
            background=False,
        )

    def _cached_meta(self, entry: CacheEntry) -> Dict[str, Any]:
        meta = dict(entry.meta or {})
        meta.update(
            fromCache=True,
            cachedAt=_iso(entry.fetched_at),
            cacheExpiresAt=_iso(entry.expires_at),
            messages=[],
            totalLogs=len(entry.raw_logs),
        )
        return meta

    # =========================
    # Fetching
    # =========================

    async def _ensure(
        self,
        descriptor: RangeDescriptor,
        *,
        force_refresh: bool,
        token: Optional[CancelToken],
        reason: str,
        background: bool,
    ) -> CachedResult:
        if token is not None:
            token.raise_if_cancelled()

        entry = self._entries.setdefault(descriptor.key, CacheEntry())
        op = entry.in_flight

        if op is not None and op.live:
            if not force_refresh:
                logger.debug("Joining in-flight fetch for range %s", descriptor.key)
                return await self._wait(op, token)
            logger.info("Forced refresh supersedes in-flight fetch for range %s", descriptor.key)
            op.token.cancel("superseded by forced refresh")

        op = self._start(descriptor, entry, reason, background)
        return await self._wait(op, token)

    def _start(
        self,
        descriptor: RangeDescriptor,
        entry: CacheEntry,
        reason: str,
        background: bool,
        detached: bool = False,
    ) -> _Operation:
        op_token = CancelToken()
        task = asyncio.create_task(self._fetch(descriptor, op_token, reason, background))
        op = _Operation(task, op_token, detached=detached)
        op_token.add_callback(task.cancel)
        entry.in_flight = op
        task.add_done_callback(lambda t: self._finish(descriptor.key, op))
        self._track(task)
        return op

    async def _wait(self, op: _Operation, token: Optional[CancelToken]) -> CachedResult:
        """Wait for op on behalf of one caller.

        A cancelled token ends only this caller's wait with AbortError. The
        shared fetch keeps running while anyone else is still waiting.
        """
        left = asyncio.get_running_loop().create_future()

        def leave() -> None:
            if not left.done():
                left.set_result(None)

        op.waiters += 1
        if token is not None:
            token.add_callback(leave)
        try:
            await asyncio.wait((op.task, left), return_when=asyncio.FIRST_COMPLETED)
        finally:
            op.waiters -= 1
            if token is not None:
                token.remove_callback(leave)
            if not left.done():
                left.cancel()
            if op.waiters <= 0 and not op.detached and not op.task.done():
                op.token.cancel("no waiters left")

        if not op.task.done():
            raise AbortError((token.reason if token is not None else None) or "Aborted")
        if op.task.cancelled():
            raise AbortError(op.token.reason or "Aborted")
        return op.task.result()

    async def _fetch(
        self,
        descriptor: RangeDescriptor,
        token: CancelToken,
        reason: str,
        background: bool,
    ) -> CachedResult:
        result = await self.collector.collect(descriptor, token)
        debug = result.debug
        raw_logs = result.logs

        effective = descriptor
        if debug.effective_range_key and debug.effective_range_key != descriptor.key:
            effective = resolve_range(debug.effective_range_key)

        filtered = filter_logs_by_range(raw_logs, effective)
        summary = summarize_logs(filtered.logs)
        fetched_at = self.clock()
        expires_at = fetched_at + self.ttl_seconds

        meta = debug.model_dump(by_alias=True)
        meta.update(
            filteredLogCount=len(filtered.logs),
            effectiveRangeKey=filtered.effective_range,
            effectiveRangeLabel=filtered.effective_range_label,
            coverageDescription=filtered.effective_range_label,
            totalLogs=len(raw_logs),
            fetchedAt=_iso(fetched_at),
            cacheExpiresAt=_iso(expires_at),
            fromCache=False,
            background=background,
            reason=reason,
        )

        # A superseded fetch must not overwrite its replacement.
        token.raise_if_cancelled()

        entry = self._entries.setdefault(descriptor.key, CacheEntry())
        entry.summary = summary
        entry.meta = {**meta, "messages": []}
        entry.fetched_at = fetched_at
        entry.expires_at = expires_at
        entry.raw_logs = raw_logs
        logger.info(
            "Cached range %s (%d logs, %s), expires %s",
            descriptor.key,
            len(raw_logs),
            reason,
            meta["cacheExpiresAt"],
        )
        return CachedResult(summary, meta, MISS, max_age=int(self.ttl_seconds))

    def _finish(self, key: str, op: _Operation) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry.in_flight is op:
            entry.in_flight = None
            if entry.summary is None:
                del self._entries[key]

        if op.task.cancelled():
            return
        exc = op.task.exception()
        if exc is not None and not isinstance(exc, AbortError):
            logger.warning("Fetch for range %s failed: %s", key, exc)

    def _refresh_in_background(self, descriptor: RangeDescriptor, entry: CacheEntry) -> bool:
        if entry.in_flight is not None and entry.in_flight.live:
            return True
        logger.info("Serving stale range %s; refreshing in background", descriptor.key)
        self._start(descriptor, entry, "stale-refresh", True, detached=True)
        return True

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # =========================
    # Prefetch rotation
    # =========================

    def prefetch_queue(self, start_key: str) -> List[str]:
        order = list(dict.fromkeys(PREFETCH_ORDER))
        if start_key in order:
            start = order.index(start_key)
            order = [order[(start + i) % len(order)] for i in range(1, len(order))]
        return [key for key in order if not self.is_fresh(key)]

    def schedule_prefetch(self, start_key: str) -> Optional[asyncio.Task]:
        """Warm the other ranges, one at a time, after start_key was served."""
        queue = self.prefetch_queue(start_key)
        if not queue:
            return None

        self.cancel_prefetch("rescheduling")
        token = CancelToken()
        task = asyncio.create_task(self._run_prefetch(queue, token))
        token.add_callback(task.cancel)
        self._prefetch = _Operation(task, token)
        self._track(task)
        prefetch_logger.info("Starting background prefetch for ranges: %s", ", ".join(queue))
        return task

    def cancel_prefetch(self, reason: Optional[str] = None) -> None:
        op, self._prefetch = self._prefetch, None
        if op is None or op.token.cancelled:
            return
        op.token.cancel(reason)
        if reason:
            prefetch_logger.info("Aborted background prefetch: %s", reason)

    async def _run_prefetch(self, queue: List[str], token: CancelToken) -> None:
        try:
            for range_key in queue:
                if token.cancelled:
                    break
                if self.is_fresh(range_key):
                    continue
                try:
                    await self._ensure(
                        resolve_range(range_key),
                        force_refresh=False,
                        token=token,
                        reason="background-prefetch",
                        background=True,
                    )
                except AbortError:
                    prefetch_logger.info("Prefetch aborted while processing range %s.", range_key)
                    break
                except BBStatsError as e:
                    prefetch_logger.error("Failed to prefetch range %s: %s", range_key, e)
                except Exception:
                    prefetch_logger.exception("Unexpected error while prefetching range %s", range_key)
            else:
                prefetch_logger.info("Background prefetch complete.")
        finally:
            if self._prefetch is not None and self._prefetch.token is token:
                self._prefetch = None

    async def aclose(self) -> None:
        self.cancel_prefetch("shutdown")
        for entry in self._entries.values():
            if entry.in_flight is not None:
                entry.in_flight.token.cancel("shutdown")
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
