from __future__ import annotations

import html
import logging
from typing import Any, Dict, Optional

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramAPIError

from .keyboards import open_app_keyboard


logger = logging.getLogger(__name__)


class Notifier:
    """Mirrors in-app notifications to Telegram when a bot token is set."""

    def __init__(self, token: str, web_app_url: Optional[str] = None):
        self.token = token
        self.web_app_url = web_app_url
        self.bot: Optional[Bot] = None

    @property
    def enabled(self) -> bool:
        return self.bot is not None

    async def start(self) -> None:
        if not self.token:
            logger.info("BOT_TOKEN is empty, Telegram push disabled")
            return
        self.bot = Bot(
            self.token,
            default=DefaultBotProperties(parse_mode=ParseMode.HTML),
        )

    async def close(self) -> None:
        if self.bot:
            await self.bot.session.close()
            self.bot = None

    async def push(self, tg_id: Optional[int], notice: Dict[str, Any]) -> bool:
        if not self.bot or not tg_id:
            return False
        markup = open_app_keyboard(self.web_app_url)
        try:
            await self.bot.send_message(
                tg_id,
                html.escape(notice["text"]),
                reply_markup=markup.as_markup() if markup else None,
            )
        except TelegramAPIError as e:
            logger.warning("Push to %s failed (%s): %s", tg_id, notice.get("kind"), e)
            return False
        return True
