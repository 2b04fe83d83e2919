from __future__ import annotations

from typing import Optional


class BBStatsError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigError(BBStatsError):
    """Raised when Cloudflare credentials are missing or still placeholders."""


class UpstreamError(BBStatsError):
    """Raised when the gateway-analytics API returns a non-2xx response."""

    def __init__(self, status: Optional[int], body: str = "", message: Optional[str] = None) -> None:
        self.status = status
        self.body = body
        if message is None:
            detail = f" Body: {body}" if body else ""
            message = f"Cloudflare API responded with status {status}.{detail}"
        super().__init__(message)


class UpstreamTimeout(UpstreamError):
    """504 from the API, or the request timed out before a response arrived."""


class AbortError(BBStatsError):
    """The operation was cancelled by its caller."""
