"""Multi-channel dispatcher.

Sends one prepared message through every channel the user enabled. Best
effort: each channel (and each push subscription) fails on its own, a
failure is logged and reported, never raised to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from taskpulse.ports.notification_port import SubscriptionGone

if TYPE_CHECKING:
    from taskpulse.data.models import NotificationMessage, UserNotificationSettings
    from taskpulse.ports.notification_port import ChatChannel, PushChannel
    from taskpulse.ports.store_port import SubscriptionStore

logger = logging.getLogger(__name__)


class Channel(Enum):
    PUSH = "push"
    CHAT_BOT = "chat_bot"


class ChannelStatus(Enum):
    SENT = "sent"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ChannelResult:
    channel: Channel
    status: ChannelStatus
    delivered: int = 0
    removed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class DispatchResult:
    results: dict[Channel, ChannelResult] = field(default_factory=dict)

    @property
    def delivered(self) -> bool:
        return any(r.delivered for r in self.results.values())

    def status(self, channel: Channel) -> ChannelStatus:
        result = self.results.get(channel)
        return result.status if result else ChannelStatus.SKIPPED


def format_chat_text(message: NotificationMessage) -> str:
    """Chat bots get title and body as one text block."""
    if message.body:
        return f"{message.title}\n\n{message.body}"
    return message.title


class Dispatcher:
    """Fans a message out to the push and chat-bot channels."""

    def __init__(
        self,
        push_channel: PushChannel | None,
        chat_channel: ChatChannel | None,
        subscriptions: SubscriptionStore,
    ) -> None:
        self._push = push_channel
        self._chat = chat_channel
        self._subscriptions = subscriptions

    def can_deliver(self, prefs: UserNotificationSettings) -> bool:
        """True if at least one channel could reach the user right now.

        Push needs the server-side channel, the user's opt-in and a stored
        subscription; the chat bot needs the user's token and chat id.
        """
        if prefs.telegram_configured and self._chat is not None:
            return True
        if not prefs.webpush_enabled or self._push is None:
            return False
        try:
            return bool(self._subscriptions.list_subscriptions(prefs.user_id))
        except Exception as exc:
            logger.error("[User %s] Failed to load push subscriptions: %s", prefs.user_id, exc)
            return False

    async def dispatch(
        self, message: NotificationMessage, prefs: UserNotificationSettings,
    ) -> DispatchResult:
        result = DispatchResult()
        result.results[Channel.PUSH] = await self._send_push(message, prefs)
        result.results[Channel.CHAT_BOT] = await self._send_chat(message, prefs)
        return result

    async def _send_push(
        self, message: NotificationMessage, prefs: UserNotificationSettings,
    ) -> ChannelResult:
        if not prefs.webpush_enabled or self._push is None:
            return ChannelResult(Channel.PUSH, ChannelStatus.SKIPPED)

        try:
            subs = self._subscriptions.list_subscriptions(prefs.user_id)
        except Exception as exc:
            logger.error("[User %s] Failed to load push subscriptions: %s", prefs.user_id, exc)
            return ChannelResult(Channel.PUSH, ChannelStatus.FAILED, errors=[str(exc)])

        if not subs:
            logger.debug("[User %s] No push subscriptions", prefs.user_id)
            return ChannelResult(Channel.PUSH, ChannelStatus.SKIPPED)

        outcome = ChannelResult(Channel.PUSH, ChannelStatus.FAILED)
        for sub in subs:
            try:
                await self._push.send(sub, message)
                outcome.delivered += 1
            except SubscriptionGone:
                logger.warning(
                    "[User %s] Push subscription #%d is gone, removing", prefs.user_id, sub.id,
                )
                try:
                    if self._subscriptions.delete_subscription(sub.id):
                        outcome.removed += 1
                except Exception as exc:
                    logger.error("Failed to delete push subscription #%d: %s", sub.id, exc)
            except Exception as exc:
                logger.error("[User %s] Push send to #%d failed: %s", prefs.user_id, sub.id, exc)
                outcome.errors.append(str(exc))

        if outcome.delivered == len(subs):
            outcome.status = ChannelStatus.SENT
        elif outcome.delivered:
            outcome.status = ChannelStatus.PARTIAL
        logger.info(
            "[User %s] Push: %d/%d delivered, %d removed",
            prefs.user_id, outcome.delivered, len(subs), outcome.removed,
        )
        return outcome

    async def _send_chat(
        self, message: NotificationMessage, prefs: UserNotificationSettings,
    ) -> ChannelResult:
        if not prefs.telegram_configured or self._chat is None:
            return ChannelResult(Channel.CHAT_BOT, ChannelStatus.SKIPPED)

        try:
            await self._chat.send(
                prefs.telegram_bot_token, prefs.telegram_chat_id, format_chat_text(message),
            )
        except Exception as exc:
            logger.error("[User %s] Chat-bot send failed: %s", prefs.user_id, exc)
            return ChannelResult(Channel.CHAT_BOT, ChannelStatus.FAILED, errors=[str(exc)])

        logger.info("[User %s] Chat-bot message sent", prefs.user_id)
        return ChannelResult(Channel.CHAT_BOT, ChannelStatus.SENT, delivered=1)
