from __future__ import annotations

from credwatch.services.notifications.base import NotificationSender
from credwatch.services.notifications.factory import get_notification_sender
from credwatch.services.notifications.senders import (
    LogNotificationSender,
    MailtrapNotificationSender,
    SesNotificationSender,
)
from credwatch.services.notifications.templates import RenderedMessage, render_message


__all__ = [
    "LogNotificationSender",
    "MailtrapNotificationSender",
    "NotificationSender",
    "RenderedMessage",
    "SesNotificationSender",
    "get_notification_sender",
    "render_message",
]
