from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import sys
from typing import Any

from credwatch.core.config import get_settings


# Extra record attributes worth shipping when callers pass them via `extra=`.
_EXTRA_FIELDS = ("credential_id", "document_id", "backend", "tier", "scan_id")


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        for attr in _EXTRA_FIELDS:
            if hasattr(record, attr):
                payload[attr] = getattr(record, attr)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(*, level: str | None = None, json_output: bool | None = None) -> None:
    # Scripts call this once; repeated calls must not stack handlers.
    settings = get_settings()
    root = logging.getLogger()
    if any(getattr(handler, "_credwatch", False) for handler in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler._credwatch = True  # type: ignore[attr-defined]
    use_json = settings.log_json if json_output is None else json_output
    if use_json:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)
    level_name = (level or settings.log_level or "INFO").upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    # SDK debug chatter drowns out scan and migration events.
    for noisy in ("botocore", "boto3", "urllib3", "s3transfer", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
