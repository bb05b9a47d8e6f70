from __future__ import annotations

import argparse
import asyncio
import json
import sys

from credwatch.core.logging import configure_logging
from credwatch.services.storage import migrate_documents
from credwatch.services.telemetry import counters_snapshot, external_latency_by_integration, gauges_snapshot


def _telemetry() -> dict:
    return {
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
        "external_calls": external_latency_by_integration(24 * 3600),
    }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Migrate stored documents to another storage backend")
    parser.add_argument("--target", required=True, choices=["local", "s3"])
    parser.add_argument("--dry-run", action="store_true", help="Check sources without copying")
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--owner", default=None, help="Only migrate documents of this owner")
    parser.add_argument(
        "--delete-source",
        action="store_true",
        help="Delete the source object once the pointer has switched",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    result = await migrate_documents(
        target_backend=args.target,
        dry_run=args.dry_run,
        batch_size=args.batch_size,
        cleanup_source=args.delete_source,
        owner_id=args.owner,
    )
    payload = result.as_dict()
    payload["telemetry"] = _telemetry()
    print(json.dumps(payload, indent=2, default=str))
    return 1 if result.failed else 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface failure for operator diagnostics.
        print(f"migrate_documents failed: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
