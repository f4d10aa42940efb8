"""Operator alerts: overbookings, failed fulfillments, dead notification jobs.

Alerts are best-effort. A Telegram outage must never fail the payment flow
that raised the alert, so send errors are logged and dropped.
"""

import logging
from typing import Optional

from telegram import Bot

from checkout.config import Settings


class LoggingAlerter:
    """Used when no bot token is configured."""

    async def alert(self, text: str) -> None:
        logging.warning("ALERT: %s", text)


class TelegramAlerter:
    def __init__(self, token: str, chat_id: int, bot: Optional[Bot] = None):
        self.chat_id = chat_id
        self.bot = bot or Bot(token=token)

    async def alert(self, text: str) -> None:
        logging.warning("ALERT: %s", text)
        try:
            await self.bot.send_message(chat_id=self.chat_id, text=text[:4000])
        except Exception:
            logging.exception("Failed to deliver Telegram alert to chat_id=%s", self.chat_id)


def build_alerter(settings: Settings):
    if settings.telegram_bot_token and settings.telegram_admin_chat_id:
        return TelegramAlerter(settings.telegram_bot_token, settings.telegram_admin_chat_id)
    logging.info("Telegram alerts disabled: TELEGRAM_BOT_TOKEN or TELEGRAM_ADMIN_CHAT_ID not set")
    return LoggingAlerter()
