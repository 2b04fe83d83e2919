from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from bbstats.cancellation import CancelToken
from bbstats.config import Settings
from bbstats.errors import UpstreamError, UpstreamTimeout
from bbstats.planner import Segment

logger = logging.getLogger("bbstats.upstream")

GATEWAY_TIMEOUT = 504
MIN_BISECT_SPAN_SECONDS = 60 * 60
MAX_BISECT_DEPTH = 5

LogRecord = Dict[str, Any]


class GatewayClient:
    """Reads Gateway activity logs, one request per time segment.

    A segment the API cannot answer in time (HTTP 504) is halved and each
    half fetched in turn, down to MAX_BISECT_DEPTH levels. Any other non-2xx
    response is final for that segment.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        settings.require_credentials()
        self.settings = settings
        self.base_url = settings.activities_url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {settings.api_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=httpx.Timeout(settings.upstream_timeout_seconds),
            transport=transport,
        )
        self.requests_made = 0

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _params(self, segment: Segment) -> Dict[str, str]:
        params = {"limit": str(self.settings.page_limit)}
        if segment.from_ts is not None:
            params["from"] = str(segment.from_ts)
        if segment.to_ts is not None:
            params["to"] = str(segment.to_ts)
        return params

    async def _request(self, segment: Segment) -> List[LogRecord]:
        self.requests_made += 1
        try:
            resp = await self._client.get(self.base_url, params=self._params(segment))
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(None, message=f"Cloudflare API request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise UpstreamError(None, message=f"Cloudflare API request failed: {e}") from e

        if resp.status_code == GATEWAY_TIMEOUT:
            raise UpstreamTimeout(resp.status_code, resp.text)
        if not resp.is_success:
            raise UpstreamError(resp.status_code, resp.text)

        try:
            payload = resp.json()
        except ValueError as e:
            raise UpstreamError(resp.status_code, message="Cloudflare API returned non-JSON response.") from e

        result = payload.get("result") if isinstance(payload, dict) else None
        logs = result.get("logs") if isinstance(result, dict) else None
        return logs if isinstance(logs, list) else []

    async def fetch_segment(
        self,
        segment: Segment,
        token: Optional[CancelToken] = None,
        depth: int = 0,
    ) -> List[LogRecord]:
        if token is not None:
            token.raise_if_cancelled()

        try:
            return await self._request(segment)
        except UpstreamTimeout:
            span = segment.span
            halves = segment.split() if depth < MAX_BISECT_DEPTH else None
            if span is None or span <= MIN_BISECT_SPAN_SECONDS or halves is None:
                raise

        first, second = halves
        logger.info(
            "Segment %s-%s timed out; bisecting (depth %d)",
            segment.from_ts,
            segment.to_ts,
            depth + 1,
        )
        first_logs = await self.fetch_segment(first, token, depth + 1)
        second_logs = await self.fetch_segment(second, token, depth + 1)
        return first_logs + second_logs
