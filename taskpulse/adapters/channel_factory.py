"""Channel adapter factory — creates the adapters the config allows."""

from __future__ import annotations

import logging

from taskpulse.config import settings
from taskpulse.ports.notification_port import ChatChannel, PushChannel

logger = logging.getLogger(__name__)


def create_push_channel() -> PushChannel | None:
    """Return a web push adapter, or None when VAPID keys are missing."""
    if not settings.VAPID_PUBLIC_KEY or not settings.VAPID_PRIVATE_KEY:
        logger.warning("VAPID keys not configured, web push disabled")
        return None

    from taskpulse.adapters.webpush_notifier import WebPushNotifier

    return WebPushNotifier(settings.VAPID_PRIVATE_KEY, settings.VAPID_SUBJECT)


def create_chat_channel() -> ChatChannel:
    from taskpulse.adapters.telegram_notifier import TelegramNotifier

    return TelegramNotifier()
