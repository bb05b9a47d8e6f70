from __future__ import annotations

from dataclasses import dataclass
from html import escape
from typing import Any

from credwatch.core.errors import ProviderConfigError


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    text: str
    html: str


def _credential_line(payload: dict[str, Any]) -> str:
    label = payload.get("category_name") or payload.get("category", "credential")
    identifier = payload.get("identifier") or "unknown"
    return f"{label} ({identifier})"


def _render_expiring(payload: dict[str, Any], *, urgent: bool) -> tuple[str, str]:
    days = int(payload.get("days_remaining", 0))
    credential = _credential_line(payload)
    prefix = "URGENT: " if urgent else ""
    subject = f"{prefix}{credential} expires in {days} day{'s' if days != 1 else ''}"
    lines = [
        f"{credential} held by {payload.get('owner_type', 'owner')} {payload.get('owner_id', '')} "
        f"expires on {payload.get('expiration_date')}.",
        f"Days remaining: {days}.",
    ]
    if payload.get("renewal_due"):
        lines.append("The renewal lead time has started; submit renewal paperwork now.")
    return subject, "\n".join(lines)


def _render_expired(payload: dict[str, Any]) -> tuple[str, str]:
    credential = _credential_line(payload)
    subject = f"EXPIRED: {credential}"
    text = (
        f"{credential} held by {payload.get('owner_type', 'owner')} {payload.get('owner_id', '')} "
        f"expired on {payload.get('expiration_date')}.\n"
        "The holder must not practice under this credential until it is renewed."
    )
    return subject, text


def _render_summary(payload: dict[str, Any]) -> tuple[str, str]:
    totals = payload.get("status_totals", {})
    subject = f"Weekly compliance summary for {payload.get('as_of')}"
    lines = [f"{status}: {count}" for status, count in sorted(totals.items())]
    lines.append(f"Expiring within {payload.get('window_days', 30)} days: {len(payload.get('expiring', []))}")
    for item in payload.get("expiring", []):
        lines.append(
            f"- {item.get('category')} {item.get('identifier')} for {item.get('owner_id')} "
            f"on {item.get('expiration_date')} ({item.get('days_remaining')} days)"
        )
    return subject, "\n".join(lines)


def render_message(template_kind: str, payload: dict[str, Any]) -> RenderedMessage:
    if template_kind == "expired":
        subject, text = _render_expired(payload)
    elif template_kind == "escalation":
        subject, text = _render_expiring(payload, urgent=True)
    elif template_kind == "warning" or template_kind.startswith("advance_"):
        subject, text = _render_expiring(payload, urgent=False)
    elif template_kind == "compliance_summary":
        subject, text = _render_summary(payload)
    else:
        raise ProviderConfigError(f"Unsupported notification template: {template_kind}")
    html = "<br>".join(escape(line) for line in text.splitlines())
    return RenderedMessage(subject=subject, text=text, html=f"<p>{html}</p>")
