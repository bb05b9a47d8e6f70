from __future__ import annotations

import json

import httpx
import pytest

from credwatch.core.config import get_settings
from credwatch.core.errors import NotificationDeliveryError, ProviderConfigError
from credwatch.services.notifications import (
    LogNotificationSender,
    MailtrapNotificationSender,
    SesNotificationSender,
    get_notification_sender,
    render_message,
)


PAYLOAD = {
    "credential_id": "cred-1",
    "category": "dea_license",
    "category_name": "DEA License",
    "identifier": "BX1234563",
    "owner_type": "employee",
    "owner_id": "emp-7",
    "expiration_date": "2024-01-26",
    "days_remaining": 1,
    "tier": "escalation",
    "status": "expiring_soon",
    "renewal_due": True,
    "cc": ["compliance@example.org"],
}


def test_templates_cover_each_tier() -> None:
    escalation = render_message("escalation", PAYLOAD)
    assert escalation.subject == "URGENT: DEA License (BX1234563) expires in 1 day"
    assert "renewal" in escalation.text
    assert render_message("advance_90", {**PAYLOAD, "days_remaining": 88}).subject.startswith("DEA License")
    assert render_message("expired", PAYLOAD).subject == "EXPIRED: DEA License (BX1234563)"


def test_template_html_is_escaped() -> None:
    message = render_message("warning", {**PAYLOAD, "identifier": "<script>"})
    assert "<script>" not in message.html
    assert "&lt;script&gt;" in message.html


def test_unknown_template_is_rejected() -> None:
    with pytest.raises(ProviderConfigError):
        render_message("birthday", PAYLOAD)


@pytest.mark.asyncio
async def test_mailtrap_posts_message_with_cc() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"success": True})

    sender = MailtrapNotificationSender(
        api_token="token-123",
        api_url="https://send.api.mailtrap.io/api/send",
        from_email="compliance@clinic.example",
        from_name="Compliance",
        transport=httpx.MockTransport(handler),
    )
    await sender.send("nurse@example.org", "escalation", PAYLOAD)

    assert len(captured) == 1
    assert captured[0].headers["Authorization"] == "Bearer token-123"
    body = json.loads(captured[0].content)
    assert body["to"] == [{"email": "nurse@example.org"}]
    assert body["cc"] == [{"email": "compliance@example.org"}]
    assert body["category"] == "credential_escalation"


@pytest.mark.asyncio
async def test_mailtrap_rejection_raises_delivery_error() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(401, json={"errors": ["Unauthorized"]})

    sender = MailtrapNotificationSender(
        api_token="bad",
        api_url="https://send.api.mailtrap.io/api/send",
        from_email="compliance@clinic.example",
        transport=httpx.MockTransport(handler),
    )
    with pytest.raises(NotificationDeliveryError):
        await sender.send("nurse@example.org", "warning", PAYLOAD)
    # Client errors are not retried.
    assert calls["count"] == 1


class _StubSes:
    def __init__(self) -> None:
        self.requests: list[dict] = []

    def send_email(self, **kwargs):
        self.requests.append(kwargs)
        return {"MessageId": "msg-1"}


@pytest.mark.asyncio
async def test_ses_sends_to_and_cc() -> None:
    client = _StubSes()
    sender = SesNotificationSender(
        region="us-east-1", from_email="compliance@clinic.example", from_name="Compliance", client=client
    )
    await sender.send("nurse@example.org", "expired", PAYLOAD)

    request = client.requests[0]
    assert request["Source"] == "Compliance <compliance@clinic.example>"
    assert request["Destination"] == {
        "ToAddresses": ["nurse@example.org"],
        "CcAddresses": ["compliance@example.org"],
    }
    assert request["Message"]["Subject"]["Data"].startswith("EXPIRED")


def test_factory_selects_provider(monkeypatch) -> None:
    assert isinstance(get_notification_sender(), LogNotificationSender)

    monkeypatch.setenv("NOTIFY_PROVIDER", "mailtrap")
    monkeypatch.setenv("MAILTRAP_API_TOKEN", "token")
    get_settings.cache_clear()
    assert isinstance(get_notification_sender(), MailtrapNotificationSender)

    monkeypatch.setenv("NOTIFY_PROVIDER", "pigeon")
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        get_notification_sender()


def test_factory_requires_mailtrap_token(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_PROVIDER", "mailtrap")
    monkeypatch.delenv("MAILTRAP_API_TOKEN", raising=False)
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        get_notification_sender()
