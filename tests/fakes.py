from __future__ import annotations

import asyncio
from typing import Any, Callable, List, Optional, Union

import httpx

from bbstats.config import Settings
from bbstats.planner import Segment

NOW = 1_700_000_000  # 2023-11-14T22:13:20Z
DAY = 24 * 60 * 60

Responder = Callable[[Segment], Union[list, int, httpx.Response]]


def make_settings(**overrides: Any) -> Settings:
    values = {"account_id": "acct-123", "api_token": "tok-abc", "api_base": "https://cf.test/client/v4"}
    values.update(overrides)
    return Settings(**values)


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpstream:
    """Stands in for the gateway-analytics endpoint behind httpx.MockTransport.

    The responder gets the requested Segment and returns a list of logs, an
    HTTP status code, or a full httpx.Response. While `gate` is an unset
    asyncio.Event every request waits on it.
    """

    def __init__(self, responder: Optional[Responder] = None) -> None:
        self.responder: Responder = responder or (lambda segment: [])
        self.calls: List[Segment] = []
        self.requests: List[httpx.Request] = []
        self.gate: Optional[asyncio.Event] = None

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        segment = Segment(
            int(params["from"]) if "from" in params else None,
            int(params["to"]) if "to" in params else None,
        )
        self.calls.append(segment)
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()

        result = self.responder(segment)
        if isinstance(result, httpx.Response):
            return result
        if isinstance(result, int):
            return httpx.Response(result, text=f"upstream status {result}")
        return httpx.Response(200, json={"success": True, "result": {"logs": result}})


def log_at(seconds: int, action: str = "dns_block", query: str = "ads.example.com") -> dict:
    return {"datetime": seconds, "action": action, "query": query}


def recent_only(days: int = 400) -> Responder:
    """One blocked record per bounded segment newer than `days`, else nothing."""

    def responder(segment: Segment) -> list:
        if segment.to_ts is None:
            return [log_at(NOW - 60)]
        if segment.from_ts < NOW - days * DAY:
            return []
        return [log_at(segment.to_ts - 60)]

    return responder


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for_calls(upstream: FakeUpstream, count: int, rounds: int = 200) -> None:
    for _ in range(rounds):
        if len(upstream.calls) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} upstream calls, saw {len(upstream.calls)}")
