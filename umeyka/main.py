from __future__ import annotations

import asyncio
import html
import logging

from aiogram import Bot, Dispatcher, F
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.filters import Command, CommandObject, CommandStart
from aiogram.types import CallbackQuery, Message

from .config import BOT_TOKEN, BOT_USERNAME, DEFAULTS, LOG_LEVEL, WEB_APP_URL
from .db import Database
from .keyboards import menu_keyboard
from .market import (
    display_name,
    fmt_stars,
    is_premium,
    parse_iso,
    parse_referral_payload,
    referral_link,
    utcnow,
)
from .referrals import redeem_referral


logger = logging.getLogger(__name__)

db = Database()
dp = Dispatcher()

HELP_TEXT = (
    "<b>Умейка</b> — маркетплейс услуг мастеров.\n\n"
    "Откройте приложение, чтобы разместить умейку, найти мастера, "
    "переписываться и заключать сделки.\n\n"
    "/start — главное меню\n"
    "/stars — баланс звёзд\n"
    "/help — эта справка"
)


def build_stars_text(user: dict) -> str:
    lines = [
        f"Баланс: {fmt_stars(int(user.get('stars') or 0))}",
        f"Приглашено друзей: {int(user.get('referral_count') or 0)}",
    ]
    if is_premium(user, utcnow()):
        until = parse_iso(user.get("premium_until"))
        lines.append(f"Премиум до {until:%d.%m.%Y}")
    else:
        lines.append(
            f"Премиум: {fmt_stars(DEFAULTS.premium_price_stars)} за {DEFAULTS.premium_days} дн."
        )
    return "\n".join(lines)


def build_referral_text(user: dict) -> str:
    link = referral_link(BOT_USERNAME, user["referral_code"])
    lines = [
        f"Ваш код: <code>{user['referral_code']}</code>",
        f"За каждого друга: +{fmt_stars(DEFAULTS.referral_bonus_stars)}, "
        f"другу: +{fmt_stars(DEFAULTS.referral_welcome_stars)}",
    ]
    if link:
        lines.append(link)
    return "\n".join(lines)


@dp.message(CommandStart())
async def start_command(message: Message, command: CommandObject) -> None:
    user_id = await db.upsert_user(message.from_user)
    notice = None
    code = parse_referral_payload(command.args)
    if code:
        _, notice = await redeem_referral(db, user_id, code)
    user = await db.get_user(user_id)
    greeting = f"Привет, {html.escape(display_name(user))}!"
    text = f"{greeting}\n\n{HELP_TEXT}"
    if notice:
        text = f"{notice}\n\n{text}"
    await message.answer(text, reply_markup=menu_keyboard(WEB_APP_URL).as_markup())


@dp.message(Command("stars"))
async def stars_command(message: Message) -> None:
    user_id = await db.upsert_user(message.from_user)
    user = await db.get_user(user_id)
    await message.answer(build_stars_text(user))


@dp.message(Command("help"))
async def help_command(message: Message) -> None:
    await message.answer(HELP_TEXT)


@dp.callback_query(F.data.startswith("menu:"))
async def menu_handler(cb: CallbackQuery) -> None:
    action = cb.data.split(":")[1]
    user_id = await db.upsert_user(cb.from_user)
    user = await db.get_user(user_id)
    if action == "stars":
        text = build_stars_text(user)
    elif action == "referral":
        text = build_referral_text(user)
    else:
        text = HELP_TEXT
    await cb.message.answer(text)
    await cb.answer()


async def main() -> None:
    logging.basicConfig(level=LOG_LEVEL)
    if not BOT_TOKEN:
        raise RuntimeError("BOT_TOKEN не задан. Укажите его в .env")
    bot = Bot(
        BOT_TOKEN,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    await db.connect()
    await db.init()
    logger.info("Bot polling started")
    try:
        await dp.start_polling(bot)
    finally:
        await db.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
