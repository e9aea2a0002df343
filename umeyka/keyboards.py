from __future__ import annotations

from typing import Optional

from aiogram.types import WebAppInfo
from aiogram.utils.keyboard import InlineKeyboardBuilder


def open_app_keyboard(
    web_app_url: Optional[str], start_param: Optional[str] = None
) -> Optional[InlineKeyboardBuilder]:
    if not web_app_url:
        return None
    url = web_app_url
    if start_param:
        sep = "&" if "?" in url else "?"
        url = f"{url}{sep}startapp={start_param}"
    builder = InlineKeyboardBuilder()
    builder.button(text="Открыть Умейку", web_app=WebAppInfo(url=url))
    return builder


def menu_keyboard(web_app_url: Optional[str] = None) -> InlineKeyboardBuilder:
    builder = InlineKeyboardBuilder()
    if web_app_url:
        builder.button(text="Открыть Умейку", web_app=WebAppInfo(url=web_app_url))
    builder.button(text="Мои звёзды", callback_data="menu:stars")
    builder.button(text="Пригласить друга", callback_data="menu:referral")
    builder.button(text="Помощь", callback_data="menu:help")
    if web_app_url:
        builder.adjust(1, 2, 1)
    else:
        builder.adjust(2, 1)
    return builder
