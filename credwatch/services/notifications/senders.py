from __future__ import annotations

import asyncio
import logging
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
import httpx

from credwatch.core.config import get_settings
from credwatch.core.errors import NotificationDeliveryError, ProviderConfigError
from credwatch.services.notifications.templates import render_message
from credwatch.services.resilience import RetryPolicy, guarded_call
from credwatch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _format_sender(from_email: str, from_name: str | None) -> str:
    return f"{from_name} <{from_email}>" if from_name else from_email


def _cc_list(payload: dict[str, Any]) -> list[str]:
    return [str(item) for item in payload.get("cc", []) if item]


def _notify_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.notify_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


class LogNotificationSender:
    """Writes rendered notifications to the log; the default outside production."""

    async def send(self, recipient: str, template_kind: str, payload: dict[str, Any]) -> None:
        message = render_message(template_kind, payload)
        logger.info(
            "notification_logged recipient=%s cc=%s template=%s subject=%s",
            recipient,
            ",".join(_cc_list(payload)),
            template_kind,
            message.subject,
        )
        increment_counter(f"notifications_sent_total.log.{template_kind}")


class SesNotificationSender:
    def __init__(
        self,
        *,
        region: str,
        from_email: str,
        from_name: str | None = None,
        client: Any | None = None,
    ) -> None:
        if not region or not from_email:
            raise ProviderConfigError("SES region and from_email are required")
        self._region = region
        self._source = _format_sender(from_email, from_name)
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            import boto3
            from botocore.config import Config
        except Exception as exc:  # pragma: no cover - environment-specific import
            raise ProviderConfigError("AWS SDK not available. Install boto3.") from exc

        timeout_s = max(1, get_settings().notify_timeout_ms // 1000)
        self._client = boto3.client(
            "ses",
            region_name=self._region,
            config=Config(connect_timeout=timeout_s, read_timeout=timeout_s),
        )
        return self._client

    async def send(self, recipient: str, template_kind: str, payload: dict[str, Any]) -> None:
        message = render_message(template_kind, payload)
        client = self._get_client()
        request = {
            "Source": self._source,
            "Destination": {"ToAddresses": [recipient], "CcAddresses": _cc_list(payload)},
            "Message": {
                "Subject": {"Data": message.subject, "Charset": "UTF-8"},
                "Body": {
                    "Text": {"Data": message.text, "Charset": "UTF-8"},
                    "Html": {"Data": message.html, "Charset": "UTF-8"},
                },
            },
        }

        def _retryable(exc: Exception) -> bool:
            if isinstance(exc, (asyncio.TimeoutError, ConnectionError, TimeoutError)):
                return True
            if isinstance(exc, ClientError):
                status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
                return isinstance(status, int) and status >= 500
            return False

        try:
            response = await guarded_call(
                "notify.ses",
                lambda: asyncio.to_thread(client.send_email, **request),
                policy=_notify_policy(),
                retryable=_retryable,
            )
        except (BotoCoreError, ClientError, TimeoutError, OSError) as exc:
            raise NotificationDeliveryError(f"SES rejected {template_kind} notification") from exc
        increment_counter(f"notifications_sent_total.ses.{template_kind}")
        logger.info(
            "notification_sent provider=ses template=%s message_id=%s",
            template_kind,
            response.get("MessageId") if isinstance(response, dict) else None,
        )


class MailtrapNotificationSender:
    def __init__(
        self,
        *,
        api_token: str,
        api_url: str,
        from_email: str,
        from_name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_token:
            raise ProviderConfigError("MAILTRAP_API_TOKEN is required for the mailtrap provider")
        self._api_token = api_token
        self._api_url = api_url
        self._from = {"email": from_email, "name": from_name} if from_name else {"email": from_email}
        self._transport = transport

    async def send(self, recipient: str, template_kind: str, payload: dict[str, Any]) -> None:
        message = render_message(template_kind, payload)
        body: dict[str, Any] = {
            "from": self._from,
            "to": [{"email": recipient}],
            "subject": message.subject,
            "text": message.text,
            "html": message.html,
            "category": f"credential_{template_kind}",
        }
        cc = _cc_list(payload)
        if cc:
            body["cc"] = [{"email": address} for address in cc]
        headers = {"Authorization": f"Bearer {self._api_token}"}
        timeout_s = max(0.2, get_settings().notify_timeout_ms / 1000.0)

        async def _call() -> httpx.Response:
            async with httpx.AsyncClient(timeout=timeout_s, transport=self._transport) as client:
                response = await client.post(self._api_url, json=body, headers=headers)
                response.raise_for_status()
                return response

        def _retryable(exc: Exception) -> bool:
            if isinstance(exc, (httpx.TransportError, TimeoutError)):
                return True
            if isinstance(exc, httpx.HTTPStatusError):
                return exc.response.status_code >= 500
            return False

        try:
            await guarded_call("notify.mailtrap", _call, policy=_notify_policy(), retryable=_retryable)
        except (httpx.HTTPError, TimeoutError) as exc:
            raise NotificationDeliveryError(f"Mailtrap rejected {template_kind} notification") from exc
        increment_counter(f"notifications_sent_total.mailtrap.{template_kind}")
