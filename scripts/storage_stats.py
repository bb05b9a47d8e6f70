from __future__ import annotations

import argparse
import asyncio
import json
import sys

from credwatch.core.logging import configure_logging
from credwatch.persistence.db import SessionLocal
from credwatch.services.storage import check_backend_access, document_storage_stats


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Report document storage usage and backend health")
    parser.add_argument("--check", action="store_true", help="Probe the active backend for access")
    return parser


async def _run(check: bool) -> int:
    async with SessionLocal() as session:
        payload = await document_storage_stats(session)
        if check:
            payload["access"] = await check_backend_access(session)
    print(json.dumps(payload, indent=2, default=str))
    if check and not payload["access"]["ok"]:
        return 1
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_run(args.check))
    except Exception as exc:  # noqa: BLE001 - surface failure for operator diagnostics.
        print(f"storage_stats failed: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
