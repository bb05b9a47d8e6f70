from __future__ import annotations

import argparse
import asyncio
from datetime import date
import json
import sys

from credwatch.core.logging import configure_logging
from credwatch.persistence.db import SessionLocal
from credwatch.persistence.repos.credentials import ensure_default_license_types
from credwatch.services.expiration import scan_all
from credwatch.services.telemetry import counters_snapshot, external_latency_by_integration, gauges_snapshot


def _telemetry() -> dict:
    return {
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
        "external_calls": external_latency_by_integration(24 * 3600),
    }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one credential expiration scan")
    parser.add_argument("--as-of", default=None, help="Evaluate as of this ISO date instead of today")
    parser.add_argument("--category", action="append", default=None, help="Limit to a category (repeatable)")
    parser.add_argument("--concurrency", type=int, default=None)
    return parser


async def _run(as_of: date | None, categories: list[str] | None, concurrency: int | None) -> int:
    async with SessionLocal() as session:
        await ensure_default_license_types(session)
    report = await scan_all(as_of=as_of, categories=categories, concurrency=concurrency)
    payload = report.as_dict()
    payload["telemetry"] = _telemetry()
    print(json.dumps(payload, indent=2, default=str))
    return 1 if report.failures else 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        as_of = date.fromisoformat(args.as_of) if args.as_of else None
        return asyncio.run(_run(as_of, args.category, args.concurrency))
    except Exception as exc:  # noqa: BLE001 - surface failure for cron diagnostics.
        print(f"expiration_scan failed: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
