"""
Offline summary export.

Fetches one range from Cloudflare Gateway Analytics and writes the two
files the static dashboard reads:

  <out-dir>/activity-summary.json   summary, extra rankings, samples, meta
  <out-dir>/activity-raw.json       up to 500 blocked records

Usage:
  python -m bbstats.batch --range 30d --out-dir public

Requires CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_TOKEN (or an alias).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx

from bbstats.aggregation import (
    count_domains,
    dedupe_logs,
    extract_domain,
    is_blocked,
    normalize_domain,
    rank,
    summarize_logs,
    summarize_normalized,
)
from bbstats.collector import GatewayLogCollector
from bbstats.config import Settings
from bbstats.errors import ConfigError
from bbstats.range_filter import filter_logs_by_range
from bbstats.ranges import DEFAULT_RANGE_KEY, resolve_range
from bbstats.timestamps import extract_log_timestamp, iso_from_millis
from bbstats.upstream import GatewayClient, LogRecord

logger = logging.getLogger("bbstats.batch")

SUMMARY_FILENAME = "activity-summary.json"
RAW_FILENAME = "activity-raw.json"
MAX_RAW_RECORDS = 500
MAX_BLOCKED_SAMPLES = 50


def write_json_atomic(path: Path, payload: Any) -> None:
    """Replace path in one step so readers never see a half-written file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _blocked_sample(log: LogRecord) -> Dict[str, Any]:
    if not isinstance(log, dict):
        return {"domain": "unknown", "timestamp": None, "decision": None, "action": None}
    return {
        "domain": extract_domain(log),
        "timestamp": iso_from_millis(extract_log_timestamp(log)),
        "decision": log.get("decision"),
        "action": log.get("action_name") or log.get("action"),
    }


def build_export(raw_logs: List[LogRecord], filtered_logs: List[LogRecord], meta: Dict[str, Any]) -> Dict[str, Any]:
    summary = summarize_logs(filtered_logs)
    normalized = summarize_normalized(filtered_logs)
    blocked = [log for log in filtered_logs if is_blocked(log)]
    deduped = dedupe_logs(filtered_logs)

    # Totals use every hit, not the deduplicated records.
    overall = count_domains(filtered_logs)
    normalized_overall: Dict[str, int] = {}
    for name, count in overall.items():
        norm = normalize_domain(name)
        normalized_overall[norm] = normalized_overall.get(norm, 0) + count

    payload = summary.to_payload()
    payload.update(
        topBlockedNormalized=[item.model_dump() for item in normalized],
        topQueries=[item.model_dump() for item in rank(overall)],
        topBlockedTotals=[
            {"name": item.name, "blockedCount": item.count, "totalCount": overall.get(item.name, 0)}
            for item in summary.top_blocked
        ],
        topBlockedNormalizedTotals=[
            {"name": item.name, "blockedCount": item.count, "totalCount": normalized_overall.get(item.name, 0)}
            for item in normalized
        ],
        blockedSamples=[_blocked_sample(log) for log in deduped if is_blocked(log)][:MAX_BLOCKED_SAMPLES],
        meta={
            **meta,
            "fetchedCount": len(deduped),
            "fetchedBlocked": len(blocked),
            "totalLogs": len(raw_logs),
        },
    )
    return payload


async def export_summary(
    settings: Settings,
    range_key: str,
    out_dir: Path,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    descriptor = resolve_range(range_key)
    logger.info("Fetching range: %s (%s)", descriptor.key, descriptor.label)

    client = GatewayClient(settings, transport=transport)
    try:
        result = await GatewayLogCollector(client).collect(descriptor)
    finally:
        await client.aclose()

    filtered = filter_logs_by_range(result.logs, descriptor)
    fetched_at = time.time()
    meta = result.debug.model_dump(by_alias=True)
    meta.update(
        fetchedAt=int(fetched_at * 1000),
        fetchedAtIso=iso_from_millis(fetched_at * 1000),
        effectiveRangeKey=filtered.effective_range,
        effectiveRangeLabel=filtered.effective_range_label,
    )

    payload = build_export(result.logs, filtered.logs, meta)
    raw_blocked = [log for log in filtered.logs if is_blocked(log)][:MAX_RAW_RECORDS]

    write_json_atomic(out_dir / RAW_FILENAME, raw_blocked)
    write_json_atomic(out_dir / SUMMARY_FILENAME, payload)
    logger.info(
        "Wrote %s (records=%d, blocked=%d).",
        out_dir / SUMMARY_FILENAME,
        payload["meta"]["fetchedCount"],
        payload["meta"]["fetchedBlocked"],
    )
    return payload


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Export a Gateway activity summary to JSON files.")
    parser.add_argument("--range", dest="range_key", default=os.getenv("RANGE", DEFAULT_RANGE_KEY))
    parser.add_argument("--out-dir", default=os.getenv("BBSTATS_OUT_DIR", "public"))
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = Settings.from_env()
    try:
        settings.require_credentials()
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return 1

    try:
        asyncio.run(export_summary(settings, args.range_key, Path(args.out_dir)))
    except Exception as e:
        print(f"Error fetching summary: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
