from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from bbstats.errors import ConfigError

ACCOUNT_ID_ENVS = ("CLOUDFLARE_ACCOUNT_ID", "CF_ACCOUNT_ID", "CF_ACCOUNT")
API_TOKEN_ENVS = ("CLOUDFLARE_API_TOKEN", "CF_TOKEN", "CF_API_TOKEN")
CACHE_TTL_ENV = "BBSTATS_CACHE_TTL_MS"
API_BASE_ENV = "BBSTATS_API_BASE"
UPSTREAM_TIMEOUT_ENV = "BBSTATS_UPSTREAM_TIMEOUT"

DEFAULT_CACHE_TTL_MS = 6 * 60 * 60 * 1000
DEFAULT_API_BASE = "https://api.cloudflare.com/client/v4"
DEFAULT_UPSTREAM_TIMEOUT = 30.0
PAGE_LIMIT = 1000

# Values copied from the sample .env ("YOUR_ACCOUNT_ID") count as unset.
_PLACEHOLDER = re.compile(r"^YOUR_[A-Z0-9_]+$")


def is_placeholder(value: Optional[str]) -> bool:
    return isinstance(value, str) and bool(_PLACEHOLDER.match(value.strip()))


def first_usable(environ: Mapping[str, str], names: Sequence[str]) -> Optional[str]:
    for name in names:
        raw = (environ.get(name) or "").strip()
        if raw and not is_placeholder(raw):
            return raw
    return None


def _positive_int(raw: Optional[str], default: int) -> int:
    raw = (raw or "").strip()
    if not raw:
        return default
    try:
        value = int(float(raw))
    except ValueError:
        return default
    return value if value > 0 else default


def _positive_float(raw: Optional[str], default: float) -> float:
    raw = (raw or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class Settings:
    account_id: Optional[str] = None
    api_token: Optional[str] = None
    cache_ttl_ms: int = DEFAULT_CACHE_TTL_MS
    api_base: str = DEFAULT_API_BASE
    upstream_timeout_seconds: float = DEFAULT_UPSTREAM_TIMEOUT
    page_limit: int = PAGE_LIMIT

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            account_id=first_usable(env, ACCOUNT_ID_ENVS),
            api_token=first_usable(env, API_TOKEN_ENVS),
            cache_ttl_ms=_positive_int(env.get(CACHE_TTL_ENV), DEFAULT_CACHE_TTL_MS),
            api_base=(env.get(API_BASE_ENV) or DEFAULT_API_BASE).strip().rstrip("/"),
            upstream_timeout_seconds=_positive_float(env.get(UPSTREAM_TIMEOUT_ENV), DEFAULT_UPSTREAM_TIMEOUT),
        )

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_ms / 1000.0

    @property
    def activities_url(self) -> str:
        return f"{self.api_base}/accounts/{self.account_id}/gateway-analytics/activities"

    def is_configured(self) -> bool:
        return bool(self.account_id) and bool(self.api_token)

    def require_credentials(self) -> None:
        missing = []
        if not self.account_id:
            missing.append(ACCOUNT_ID_ENVS[0])
        if not self.api_token:
            missing.append(API_TOKEN_ENVS[0])
        if missing:
            raise ConfigError(f"Missing {' or '.join(missing)}.")
