from __future__ import annotations

from credwatch.core.config import get_settings
from credwatch.core.errors import ProviderConfigError
from credwatch.services.notifications.base import NotificationSender
from credwatch.services.notifications.senders import (
    LogNotificationSender,
    MailtrapNotificationSender,
    SesNotificationSender,
)


def get_notification_sender() -> NotificationSender:
    settings = get_settings()
    provider = (settings.notify_provider or "log").lower()

    if provider == "log":
        return LogNotificationSender()
    if provider == "ses":
        return SesNotificationSender(
            region=settings.ses_region,
            from_email=settings.notify_from_email,
            from_name=settings.notify_from_name,
        )
    if provider == "mailtrap":
        return MailtrapNotificationSender(
            api_token=settings.mailtrap_api_token or "",
            api_url=settings.mailtrap_api_url,
            from_email=settings.notify_from_email,
            from_name=settings.notify_from_name,
        )

    raise ProviderConfigError(f"Unsupported notification provider: {provider}")
