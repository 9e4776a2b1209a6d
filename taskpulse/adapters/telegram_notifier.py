"""Telegram notification adapter — implements ChatChannel.

Every user configures their own bot, so a telegram.Bot is built per send
from the stored token.
"""

from __future__ import annotations

import logging

from telegram import Bot
from telegram.error import TelegramError

from taskpulse.ports.notification_port import ChannelError

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Telegram implementation of ChatChannel."""

    async def send(self, bot_token: str, chat_id: str, text: str) -> None:
        try:
            async with Bot(token=bot_token) as bot:
                await bot.send_message(chat_id=chat_id, text=text)
        except TelegramError as exc:
            raise ChannelError(f"Telegram send to chat {chat_id} failed: {exc}") from exc
        logger.debug("Telegram message delivered to chat %s", chat_id)
