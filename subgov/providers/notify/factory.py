from __future__ import annotations

from subgov.core.config import get_settings
from subgov.core.errors import ConfigurationMissing
from subgov.providers.notify.base import NotificationDispatcher
from subgov.providers.notify.fake import FakeDispatcher
from subgov.providers.notify.log import LogDispatcher
from subgov.providers.notify.webhook import WebhookDispatcher


def get_notification_dispatcher() -> NotificationDispatcher:
    settings = get_settings()
    kind = (settings.notify_dispatcher or "log").lower()

    if kind == "log":
        return LogDispatcher()
    if kind == "fake":
        return FakeDispatcher()
    if kind == "webhook":
        return WebhookDispatcher(
            url=settings.notify_webhook_url,
            secret=settings.notify_webhook_secret,
            timeout_s=settings.notify_webhook_timeout_s,
        )

    raise ConfigurationMissing(f"Unsupported notification dispatcher: {kind}")
