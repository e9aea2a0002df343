from __future__ import annotations

from typing import Tuple

from .config import DEFAULTS
from .db import Database


async def redeem_referral(db: Database, user_id: int, code: str) -> Tuple[bool, str]:
    code = (code or "").strip().lower()
    referrer_id = await db.get_user_id_by_referral_code(code) if code else None
    if not referrer_id:
        return False, "Реферальный код не найден."
    if referrer_id == user_id:
        return False, "Нельзя пригласить самого себя."
    user = await db.get_user(user_id)
    if user and user.get("referred_by"):
        return False, "Реферальный код уже применён."
    referrer = await db.get_user(referrer_id)
    if referrer and referrer.get("referred_by") == user_id:
        return False, "Нельзя применить код приглашённого вами пользователя."
    applied = await db.apply_referral(
        user_id,
        referrer_id,
        DEFAULTS.referral_bonus_stars,
        DEFAULTS.referral_welcome_stars,
    )
    if not applied:
        return False, "Реферальный код уже применён."
    return True, f"Код применён: +{DEFAULTS.referral_welcome_stars} ⭐"
