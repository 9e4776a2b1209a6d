"""Web Push notification adapter — implements PushChannel.

Uses pywebpush (sync) wrapped with asyncio.to_thread. A 404/410 from the
push service means the browser dropped the subscription; that is reported
as SubscriptionGone so the dispatcher can delete it.
"""

from __future__ import annotations

import asyncio
import json
import logging

from pywebpush import WebPushException, webpush

from taskpulse.data.models import NotificationMessage, PushSubscription
from taskpulse.ports.notification_port import ChannelError, SubscriptionGone

logger = logging.getLogger(__name__)

_GONE_STATUSES = (404, 410)
_TTL_SECONDS = 60 * 60


def build_payload(message: NotificationMessage) -> str:
    """JSON payload understood by the service worker."""
    return json.dumps({
        "title": message.title,
        "body": message.body,
        "url": message.url,
        "data": {"url": message.url},
    })


class WebPushNotifier:
    """pywebpush implementation of PushChannel."""

    def __init__(self, vapid_private_key: str, vapid_subject: str) -> None:
        self._private_key = vapid_private_key
        self._subject = vapid_subject

    async def send(self, subscription: PushSubscription, message: NotificationMessage) -> None:
        payload = build_payload(message)
        try:
            await asyncio.to_thread(
                webpush,
                subscription_info=subscription.subscription,
                data=payload,
                vapid_private_key=self._private_key,
                # pywebpush adds "aud"/"exp" to the claims dict, so pass a fresh one
                vapid_claims={"sub": self._subject},
                ttl=_TTL_SECONDS,
                headers={"Urgency": "high"},
            )
        except WebPushException as exc:
            status = exc.response.status_code if exc.response is not None else None
            if status in _GONE_STATUSES:
                raise SubscriptionGone(
                    f"Subscription #{subscription.id} returned {status}"
                ) from exc
            raise ChannelError(f"Push to subscription #{subscription.id} failed: {exc}") from exc
        logger.debug("Push delivered to subscription #%d", subscription.id)
