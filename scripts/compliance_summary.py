from __future__ import annotations

import argparse
import asyncio
import json
import sys

from credwatch.core.logging import configure_logging
from credwatch.persistence.db import SessionLocal
from credwatch.services.expiration import build_compliance_summary, send_compliance_summary
from credwatch.services.notifications import get_notification_sender


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Build the weekly compliance summary")
    parser.add_argument("--window-days", type=int, default=30)
    parser.add_argument("--send-to", default=None, help="Email the summary to this address")
    return parser


async def _run(window_days: int, recipient: str | None) -> int:
    async with SessionLocal() as session:
        if recipient:
            summary = await send_compliance_summary(
                session, sender=get_notification_sender(), recipient=recipient, window_days=window_days
            )
        else:
            summary = await build_compliance_summary(session, window_days=window_days)
    print(json.dumps(summary, indent=2, default=str))
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_run(args.window_days, args.send_to))
    except Exception as exc:  # noqa: BLE001 - surface failure for cron diagnostics.
        print(f"compliance_summary failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
