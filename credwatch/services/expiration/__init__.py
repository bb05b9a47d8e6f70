from __future__ import annotations

from credwatch.services.expiration.engine import build_alert_tiers, evaluate
from credwatch.services.expiration.reports import (
    build_compliance_summary,
    list_expiring_items,
    send_compliance_summary,
)
from credwatch.services.expiration.scan import ScanFailure, ScanReport, scan_all
from credwatch.services.expiration.worker import run_expiration_scan_cycle, run_expiration_scan_loop


__all__ = [
    "ScanFailure",
    "ScanReport",
    "build_alert_tiers",
    "build_compliance_summary",
    "evaluate",
    "list_expiring_items",
    "run_expiration_scan_cycle",
    "run_expiration_scan_loop",
    "scan_all",
    "send_compliance_summary",
]
