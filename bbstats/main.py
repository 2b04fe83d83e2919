from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from bbstats import __version__
from bbstats.cache import CacheService
from bbstats.cancellation import CancelToken
from bbstats.collector import GatewayLogCollector
from bbstats.config import Settings
from bbstats.errors import AbortError
from bbstats.ranges import DEFAULT_RANGE_KEY, RangeDescriptor, resolve_range
from bbstats.upstream import GatewayClient

logger = logging.getLogger("bbstats.api")

DISCONNECT_POLL_SECONDS = 0.5
CLIENT_CLOSED_REQUEST = 499


# =========================
# Utilities
# =========================

def _empty_payload(error: str, descriptor: Optional[RangeDescriptor] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "error": error,
        "topBlocked": [],
        "totals": {"blocked": 0, "allowed": 0},
    }
    if descriptor is not None:
        payload.update(
            requestedRange=descriptor.key,
            range=descriptor.key,
            rangeLabel=descriptor.label,
        )
    return payload


def _cache_control(max_age: int) -> str:
    # Stale responses must not be kept downstream while the refresh runs.
    if max_age <= 0:
        return "no-cache"
    return f"public, max-age={max_age}"


def _is_forced(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in {"1", "true"}


async def _watch_disconnect(request: Request, token: CancelToken) -> None:
    while not token.cancelled:
        if await request.is_disconnected():
            token.cancel("client disconnected")
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


# =========================
# App factory
# =========================

def create_app(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client: Optional[GatewayClient] = None
        app.state.cache = None
        if settings.is_configured():
            client = GatewayClient(settings, transport=transport)
            collector = GatewayLogCollector(client, clock=clock)
            app.state.cache = CacheService(collector, settings.cache_ttl_seconds, clock=clock)
        else:
            logger.warning("Cloudflare credentials are not configured; /api/activity-summary will fail.")
        try:
            yield
        finally:
            if app.state.cache is not None:
                await app.state.cache.aclose()
            if client is not None:
                await client.aclose()

    app = FastAPI(
        title="BBStats Gateway Activity API",
        version=__version__,
        description="Blocked vs. allowed Cloudflare Gateway activity, summarized per time range.",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        return {"ok": True, "version": __version__, "configured": settings.is_configured()}

    @app.get("/api/activity-summary")
    async def activity_summary(
        request: Request,
        range_key: str = Query(DEFAULT_RANGE_KEY, alias="range"),
        force: Optional[str] = Query(None),
    ):
        cache: Optional[CacheService] = request.app.state.cache
        if cache is None:
            return JSONResponse(
                _empty_payload("Missing CLOUDFLARE_ACCOUNT_ID or CLOUDFLARE_API_TOKEN."),
                status_code=500,
            )

        descriptor = resolve_range(range_key)
        token = CancelToken()
        watcher = asyncio.create_task(_watch_disconnect(request, token))

        try:
            result = await cache.get(descriptor.key, force_refresh=_is_forced(force), token=token)
        except AbortError as e:
            logger.warning("Request aborted while fetching range %s: %s", descriptor.key, e)
            cache.cancel_prefetch("request aborted")
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        except Exception:
            logger.exception("Failed to load gateway activities for range %s", descriptor.key)
            return JSONResponse(_empty_payload("Unable to retrieve data from Cloudflare right now.", descriptor))
        finally:
            watcher.cancel()

        meta = result.meta
        body = {
            **result.summary.to_payload(),
            "requestedRange": descriptor.key,
            "range": meta.get("effectiveRangeKey") or descriptor.key,
            "rangeLabel": meta.get("effectiveRangeLabel") or descriptor.label,
            "meta": meta,
        }

        logger.info(
            json.dumps(
                {
                    "event": "activity_summary_served",
                    "range": descriptor.key,
                    "cache_status": result.cache_status,
                    "blocked": result.summary.totals.blocked,
                    "allowed": result.summary.totals.allowed,
                }
            )
        )

        cache.schedule_prefetch(descriptor.key)

        return JSONResponse(
            body,
            headers={
                "Cache-Control": _cache_control(result.max_age),
                "X-Cache-Status": result.cache_status,
            },
        )

    return app


app = create_app()
