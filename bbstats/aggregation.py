from __future__ import annotations

import re
from collections import Counter
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from bbstats.upstream import LogRecord

TOP_N = 10

_BLOCK_ACTION = re.compile(r"(dns|tls)?_?block", re.IGNORECASE)
_BLOCK_DECISION = re.compile(r"block", re.IGNORECASE)

DOMAIN_FIELDS = ("query", "hostname", "sni", "domain")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class NameCount(_Frozen):
    name: str
    count: int


class Totals(_Frozen):
    blocked: int = 0
    allowed: int = 0


class Summary(_Frozen):
    top_blocked: Tuple[NameCount, ...] = ()
    totals: Totals = Totals()

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


EMPTY_SUMMARY = Summary()


def is_blocked(log: LogRecord) -> bool:
    if not isinstance(log, dict):
        return False
    action = log.get("action_name") or log.get("action") or ""
    if isinstance(action, str) and _BLOCK_ACTION.search(action):
        return True
    if log.get("blocked") is True:
        return True
    decision = log.get("decision")
    return isinstance(decision, str) and bool(_BLOCK_DECISION.search(decision))


def extract_domain(log: LogRecord) -> str:
    if not isinstance(log, dict):
        return "unknown"
    for field in DOMAIN_FIELDS:
        value = log.get(field)
        if value is not None:
            return str(value).lower()
    return "unknown"


def normalize_domain(raw: Any) -> str:
    """Collapse a hostname to its last two labels.

    Naive stand-in for a public-suffix lookup: "news.bbc.co.uk" becomes
    "co.uk". Kept as-is on purpose.
    """
    if not raw or not isinstance(raw, str):
        return "unknown"
    parts = [p for p in raw.lower().split(".") if p]
    if len(parts) <= 2:
        return ".".join(parts) or raw
    return f"{parts[-2]}.{parts[-1]}"


def rank(counts: Counter, top_n: int = TOP_N) -> List[NameCount]:
    # most_common keeps first-seen order among equal counts
    return [NameCount(name=name, count=count) for name, count in counts.most_common(top_n)]


def count_domains(logs: Iterable[LogRecord]) -> Counter:
    return Counter(extract_domain(log) for log in logs)


def summarize_logs(logs: Sequence[LogRecord], top_n: int = TOP_N) -> Summary:
    blocked_counts: Counter = Counter()
    allowed = 0
    for log in logs:
        if is_blocked(log):
            blocked_counts[extract_domain(log)] += 1
        else:
            allowed += 1

    return Summary(
        top_blocked=tuple(rank(blocked_counts, top_n)),
        totals=Totals(blocked=sum(blocked_counts.values()), allowed=allowed),
    )


def summarize_normalized(logs: Sequence[LogRecord], top_n: int = TOP_N) -> List[NameCount]:
    counts = Counter(normalize_domain(extract_domain(log)) for log in logs if is_blocked(log))
    return rank(counts, top_n)


def dedupe_logs(logs: Iterable[LogRecord]) -> List[LogRecord]:
    seen = set()
    out: List[LogRecord] = []
    for log in logs:
        # not a record; nothing to key on
        if not isinstance(log, dict):
            continue
        key = "|".join(
            "" if v is None else str(v)
            for v in (
                log.get("timestamp"),
                log.get("query") or log.get("hostname") or "",
                log.get("action_name") or log.get("action") or "",
            )
        )
        if key not in seen:
            seen.add(key)
            out.append(log)
    return out
