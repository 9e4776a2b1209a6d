"""Notification ports — abstract interfaces for outbound channels.

Core modules depend on these protocols, never on a specific provider.
"""

from __future__ import annotations

from typing import Protocol

from taskpulse.data.models import NotificationMessage, PushSubscription


class ChannelError(Exception):
    """Raised when a channel fails to deliver a message."""


class SubscriptionGone(ChannelError):
    """The push service reports the subscription no longer exists (404/410)."""


class PushChannel(Protocol):
    """Sends one message to one browser push subscription."""

    async def send(
        self, subscription: PushSubscription, message: NotificationMessage,
    ) -> None: ...


class ChatChannel(Protocol):
    """Sends a text message through a chat bot."""

    async def send(self, bot_token: str, chat_id: str, text: str) -> None: ...
