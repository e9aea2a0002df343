from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException


load_dotenv()

BASE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = BASE_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from umeyka.config import (  # noqa: E402
    BOT_TOKEN,
    BOT_USERNAME,
    DB_PATH,
    DEFAULTS,
    LOG_LEVEL,
    WEB_APP_URL,
)
from umeyka.db import Database  # noqa: E402
from umeyka.market import (  # noqa: E402
    DEAL_CANCELLABLE,
    DEAL_EDITABLE,
    DEAL_SIGNABLE,
    DEAL_STATUSES,
    COLOR_RE,
    chat_counterpart,
    deal_role,
    deal_totals,
    display_name,
    filter_by_distance,
    is_boosted,
    is_premium,
    matches_query,
    normalize_page,
    paginate,
    parse_referral_payload,
    referral_link,
    review_overall,
    skill_limit,
    sort_skills,
    status_after_sign,
    utcnow,
    valid_coords,
    validate_scores,
)
from umeyka.notify import Notifier  # noqa: E402
from umeyka.referrals import redeem_referral  # noqa: E402


logger = logging.getLogger(__name__)

WEBAPP_AUTH_MAX_AGE = int(os.getenv("WEBAPP_AUTH_MAX_AGE", "86400"))
WEBAPP_AUTH_SECRET = os.getenv("WEBAPP_AUTH_SECRET", "").strip() or BOT_TOKEN
WEBAPP_TOKEN_TTL = int(os.getenv("WEBAPP_TOKEN_TTL", "2592000"))
WEBAPP_CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("WEBAPP_CORS_ORIGINS", "*").split(",")
    if origin.strip()
]

INIT_DATA_HEADER = "X-Telegram-Init-Data"
MESSAGE_PREVIEW_LEN = 80


app = FastAPI(title="Umeyka API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=WEBAPP_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

db = Database(DB_PATH)
notifier = Notifier(BOT_TOKEN, WEB_APP_URL)


@dataclass
class TgUser:
    id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class InitDataRequest(BaseModel):
    init_data: str
    start_param: Optional[str] = None


class SkillCreateRequest(BaseModel):
    skill: str = Field(..., max_length=100)
    experience: str = Field("", max_length=500)
    description: Optional[str] = Field(None, max_length=2000)
    category: Optional[str] = Field(None, max_length=50)
    price: int = Field(0, ge=0, le=10_000_000)
    city: Optional[str] = Field(None, max_length=100)
    lat: Optional[float] = None
    lon: Optional[float] = None


class SkillUpdateRequest(BaseModel):
    skill: Optional[str] = Field(None, max_length=100)
    experience: Optional[str] = Field(None, max_length=500)
    description: Optional[str] = Field(None, max_length=2000)
    category: Optional[str] = Field(None, max_length=50)
    price: Optional[int] = Field(None, ge=0, le=10_000_000)
    city: Optional[str] = Field(None, max_length=100)
    lat: Optional[float] = None
    lon: Optional[float] = None


class ChatOpenRequest(BaseModel):
    skill_id: int


class MessageRequest(BaseModel):
    text: str = Field(..., max_length=DEFAULTS.message_max_len)


class DealCreateRequest(BaseModel):
    chat_id: int
    amount: int = Field(..., ge=DEFAULTS.deal_min_amount, le=DEFAULTS.deal_max_amount)
    description: str = Field("", max_length=2000)


class DealUpdateRequest(BaseModel):
    amount: Optional[int] = Field(
        None, ge=DEFAULTS.deal_min_amount, le=DEFAULTS.deal_max_amount
    )
    description: Optional[str] = Field(None, max_length=2000)


class ReviewRequest(BaseModel):
    deal_id: Optional[int] = None
    chat_id: Optional[int] = None
    quality: Optional[int] = None
    speed: Optional[int] = None
    communication: Optional[int] = None
    price: Optional[int] = None
    comment: Optional[str] = Field(None, max_length=DEFAULTS.review_comment_max_len)


class ProfileUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(None, max_length=64)
    bio: Optional[str] = Field(None, max_length=500)
    city: Optional[str] = Field(None, max_length=100)
    avatar_emoji: Optional[str] = Field(None, max_length=8)
    accent_color: Optional[str] = None


class PremiumBuyRequest(BaseModel):
    months: int = 1


class ReferralApplyRequest(BaseModel):
    code: str


class NotificationsReadRequest(BaseModel):
    ids: Optional[List[int]] = None


@app.on_event("startup")
async def startup() -> None:
    logging.basicConfig(level=LOG_LEVEL)
    await db.connect()
    await db.init()
    await notifier.start()
    logger.info("Umeyka API started, db=%s", db.path)


@app.on_event("shutdown")
async def shutdown() -> None:
    await notifier.close()
    await db.close()


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": "Некорректные данные запроса.",
            "details": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Внутренняя ошибка сервера."},
    )


@app.get("/")
async def index() -> Dict[str, Any]:
    return {"success": True, "service": "umeyka", "bot": BOT_USERNAME or None}


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "OK", "message": "Server is running"}


# auth


def _validate_init_data(init_data: str) -> Optional[Dict[str, str]]:
    if not init_data or not BOT_TOKEN:
        return None
    try:
        pairs = dict(parse_qsl(init_data, strict_parsing=True))
    except ValueError:
        return None
    received_hash = pairs.pop("hash", None)
    if not received_hash:
        return None
    data_check_string = "\n".join(f"{k}={pairs[k]}" for k in sorted(pairs))
    secret = hmac.new(
        b"WebAppData",
        BOT_TOKEN.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    calculated_hash = hmac.new(
        secret, data_check_string.encode("utf-8"), hashlib.sha256
    ).hexdigest()
    if not hmac.compare_digest(calculated_hash, received_hash):
        return None
    auth_date = pairs.get("auth_date")
    if WEBAPP_AUTH_MAX_AGE > 0:
        if not auth_date:
            return None
        try:
            if abs(time.time() - int(auth_date)) > WEBAPP_AUTH_MAX_AGE:
                return None
        except ValueError:
            return None
    return pairs


def _parse_user(pairs: Dict[str, str]) -> Optional[TgUser]:
    raw_user = pairs.get("user")
    if not raw_user:
        return None
    try:
        payload = json.loads(raw_user)
    except json.JSONDecodeError:
        return None
    user_id = payload.get("id")
    if not user_id:
        return None
    return TgUser(
        id=int(user_id),
        username=payload.get("username"),
        first_name=payload.get("first_name"),
        last_name=payload.get("last_name"),
    )


def _create_token(user_id: int) -> str:
    if not WEBAPP_AUTH_SECRET:
        raise HTTPException(status_code=500, detail="auth secret not configured")
    payload = {
        "uid": user_id,
        "exp": int(time.time()) + max(0, WEBAPP_TOKEN_TTL),
    }
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    b64 = base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")
    sig = hmac.new(
        WEBAPP_AUTH_SECRET.encode("utf-8"), b64.encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"{b64}.{sig}"


def _verify_token(token: str) -> Optional[int]:
    if not token or not WEBAPP_AUTH_SECRET:
        return None
    try:
        b64, sig = token.split(".", 1)
    except ValueError:
        return None
    expected = hmac.new(
        WEBAPP_AUTH_SECRET.encode("utf-8"), b64.encode("utf-8"), hashlib.sha256
    ).hexdigest()
    if not hmac.compare_digest(expected, sig):
        return None
    padded = b64 + "=" * (-len(b64) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("utf-8"))
        payload = json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    try:
        exp = int(payload.get("exp", 0))
        uid = int(payload.get("uid", 0))
    except (TypeError, ValueError):
        return None
    if exp and time.time() > exp:
        return None
    return uid if uid > 0 else None


async def _authorize(request: Request) -> int:
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        uid = _verify_token(auth[7:].strip())
        if uid and await db.get_user(uid):
            return uid
    init_data = request.headers.get(INIT_DATA_HEADER)
    if init_data:
        pairs = _validate_init_data(init_data)
        user = _parse_user(pairs) if pairs else None
        if user:
            return await db.upsert_user(user)
    raise HTTPException(status_code=401, detail="unauthorized")


@app.post("/api/auth/telegram/init")
async def auth_telegram_init(payload: InitDataRequest) -> Dict[str, Any]:
    if not BOT_TOKEN:
        raise HTTPException(status_code=503, detail="BOT_TOKEN не задан.")
    pairs = _validate_init_data(payload.init_data)
    if not pairs:
        raise HTTPException(status_code=401, detail="Некорректные данные Telegram initData.")
    tg_user = _parse_user(pairs)
    if not tg_user:
        raise HTTPException(status_code=401, detail="Пользователь Telegram не найден.")
    user_id = await db.upsert_user(tg_user)
    referral_notice = None
    code = parse_referral_payload(payload.start_param or pairs.get("start_param"))
    if code:
        _, referral_notice = await redeem_referral(db, user_id, code)
    user = await db.get_user(user_id)
    return {
        "success": True,
        "token": _create_token(user_id),
        "user": _public_user(user),
        "profile": await _profile_payload(user),
        "referral_notice": referral_notice,
    }


# payload builders


def _public_user(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not user:
        return None
    return {
        "id": user["id"],
        "username": user.get("username"),
        "name": display_name(user),
        "is_premium": is_premium(user, utcnow()),
        "avatar_emoji": user.get("avatar_emoji"),
        "accent_color": user.get("accent_color"),
        "city": user.get("city"),
        "bio": user.get("bio"),
    }


async def _profile_payload(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        **_public_user(user),
        "first_name": user.get("first_name"),
        "last_name": user.get("last_name"),
        "display_name": user.get("display_name"),
        "stars": int(user.get("stars") or 0),
        "premium_until": user.get("premium_until"),
        "referral_code": user.get("referral_code"),
        "referral_count": int(user.get("referral_count") or 0),
        "skill_limit": skill_limit(is_premium(user, utcnow())),
        "active_skills": await db.count_active_skills(user["id"]),
        "rating": await db.get_master_rating(user["id"]),
        "unread_notifications": await db.count_unread_notifications(user["id"]),
    }


def _skill_payload(skill: Dict[str, Any]) -> Dict[str, Any]:
    now = utcnow()
    owner = skill.get("owner") or {}
    payload = {k: v for k, v in skill.items() if k != "owner"}
    payload["is_boosted"] = is_boosted(skill, now)
    payload["owner"] = {
        "id": owner.get("id"),
        "username": owner.get("username"),
        "name": display_name(owner),
        "is_premium": is_premium(owner, now),
    }
    return payload


def _notice(user_id: int, kind: str, text: str, **payload: Any) -> Dict[str, Any]:
    return {"user_id": user_id, "kind": kind, "text": text, "payload": payload or None}


async def _push(notice: Optional[Dict[str, Any]]) -> None:
    if not notice or not notifier.enabled:
        return
    user = await db.get_user(notice["user_id"])
    if user:
        await notifier.push(user.get("tg_id"), notice)


async def _user_name(user_id: int) -> str:
    return display_name(await db.get_user(user_id))


# skills


async def _owned_skill(skill_id: int, user_id: int) -> Dict[str, Any]:
    skill = await db.get_skill(skill_id)
    if not skill:
        raise HTTPException(status_code=404, detail="Умейка не найдена.")
    if skill["user_id"] != user_id:
        raise HTTPException(status_code=403, detail="Это не ваша умейка.")
    return skill


@app.get("/api/skills")
async def list_skills(
    q: Optional[str] = Query(None, max_length=100),
    category: Optional[str] = None,
    min_price: Optional[int] = Query(None, ge=0),
    max_price: Optional[int] = Query(None, ge=0),
    min_rating: Optional[float] = Query(None, ge=0, le=5),
    city: Optional[str] = None,
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lon: Optional[float] = Query(None, ge=-180, le=180),
    radius_km: Optional[float] = Query(None, gt=0),
    sort: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: Optional[int] = Query(None, ge=1),
) -> Dict[str, Any]:
    if (lat is None) != (lon is None):
        raise HTTPException(status_code=400, detail="Нужны обе координаты: lat и lon.")
    skills = await db.list_active_skills(
        category=category,
        min_price=min_price,
        max_price=max_price,
        min_rating=min_rating,
        city=city,
    )
    skills = [s for s in skills if matches_query(s, q)]
    skills = filter_by_distance(skills, lat, lon, radius_km)
    skills = sort_skills(skills, sort, utcnow())
    page, size = normalize_page(page, per_page)
    items, total, pages = paginate(skills, page, size)
    return {
        "success": True,
        "items": [_skill_payload(s) for s in items],
        "total": total,
        "page": min(page, pages),
        "pages": pages,
    }


@app.get("/api/categories")
async def list_categories() -> Dict[str, Any]:
    return {"success": True, "categories": await db.get_categories()}


@app.get("/api/skills/{skill_id}")
async def get_skill(skill_id: int) -> Dict[str, Any]:
    await db.increment_skill_views(skill_id)
    skill = await db.get_skill(skill_id)
    if not skill:
        raise HTTPException(status_code=404, detail="Умейка не найдена.")
    reviews = await db.get_skill_reviews(skill_id, limit=DEFAULTS.recent_reviews)
    return {
        "success": True,
        "skill": _skill_payload(skill),
        "reviews": reviews,
        "owner_rating": await db.get_master_rating(skill["user_id"]),
    }


@app.post("/api/skills", status_code=201)
async def create_skill(
    payload: SkillCreateRequest, user_id: int = Depends(_authorize)
) -> Dict[str, Any]:
    fields = payload.model_dump()
    fields["skill"] = fields["skill"].strip()
    if len(fields["skill"]) < 2:
        raise HTTPException(status_code=400, detail="Название умейки слишком короткое.")
    if not valid_coords(fields.get("lat"), fields.get("lon")):
        raise HTTPException(status_code=400, detail="Некорректные координаты.")
    user = await db.get_user(user_id)
    limit = skill_limit(is_premium(user, utcnow()))
    skill_id = await db.create_skill(user_id, fields, limit)
    if skill_id is None:
        raise HTTPException(status_code=400, detail=f"Лимит умеек: {limit}.")
    logger.info("Skill %s created by user %s", skill_id, user_id)
    skill = await db.get_skill(skill_id)
    return {"success": True, "skill": _skill_payload(skill)}


@app.put("/api/skills/{skill_id}")
async def update_skill(
    skill_id: int, payload: SkillUpdateRequest, user_id: int = Depends(_authorize)
) -> Dict[str, Any]:
    skill = await _owned_skill(skill_id, user_id)
    updates = payload.model_dump(exclude_unset=True)
    if "skill" in updates:
        updates["skill"] = (updates["skill"] or "").strip()
        if len(updates["skill"]) < 2:
            raise HTTPException(status_code=400, detail="Название умейки слишком короткое.")
    if updates.get("experience") is None and "experience" in updates:
        updates["experience"] = ""
    if updates.get("price") is None:
        updates.pop("price", None)
    lat = updates.get("lat", skill.get("lat"))
    lon = updates.get("lon", skill.get("lon"))
    if not valid_coords(lat, lon):
        raise HTTPException(status_code=400, detail="Некорректные координаты.")
    await db.update_skill(skill_id, **updates)
    return {"success": True, "skill": _skill_payload(await db.get_skill(skill_id))}


@app.delete("/api/skills/{skill_id}")
async def delete_skill(skill_id: int, user_id: int = Depends(_authorize)) -> Dict[str, Any]:
    await _owned_skill(skill_id, user_id)
    await db.deactivate_skill(skill_id)
    logger.info("Skill %s deactivated by user %s", skill_id, user_id)
    return {"success": True}


@app.post("/api/skills/{skill_id}/boost")
async def boost_skill(skill_id: int, user_id: int = Depends(_authorize)) -> Dict[str, Any]:
    await _owned_skill(skill_id, user_id)
    until = await db.boost_skill(
        skill_id, user_id, DEFAULTS.boost_price_stars, DEFAULTS.boost_days
    )
    if not until:
        raise HTTPException(status_code=400, detail="Недостаточно звёзд.")
    return {
        "success": True,
        "skill": _skill_payload(await db.get_skill(skill_id)),
        "stars": await db.get_stars(user_id),
    }


@app.get("/api/skills/{skill_id}/reviews")
async def skill_reviews(skill_id: int) -> Dict[str, Any]:
    if not await db.get_skill(skill_id, include_inactive=True):
        raise HTTPException(status_code=404, detail="Умейка не найдена.")
    return {"success": True, "reviews": await db.get_skill_reviews(skill_id)}


@app.get("/api/my/skills")
async def my_skills(user_id: int = Depends(_authorize)) -> Dict[str, Any]:
    skills = await db.get_user_skills(user_id)
    return {"success": True, "items": [_skill_payload(s) for s in skills]}


# users and profile


@app.get("/api/users/{user_id}")
async def public_profile(user_id: int) -> Dict[str, Any]:
    user = await db.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="Пользователь не найден.")
    skills = await db.get_user_skills(user_id)
    return {
        "success": True,
        "user": _public_user(user),
        "rating": await db.get_master_rating(user_id),
        "skills": [_skill_payload(s) for s in skills],
    }


@app.get("/api/users/{user_id}/skills")
async def user_skills(user_id: int) -> Dict[str, Any]:
    if not await db.get_user(user_id):
        raise HTTPException(status_code=404, detail="Пользователь не найден.")
    skills = await db.get_user_skills(user_id)
    return {"success": True, "items": [_skill_payload(s) for s in skills]}


@app.get("/api/profile")
async def get_profile(user_id: int = Depends(_authorize)) -> Dict[str, Any]:
    user = await db.get_user(user_id)
    return {"success": True, "profile": await _profile_payload(user)}


@app.put("/api/profile")
async def update_profile(
    payload: ProfileUpdateRequest, user_id: int = Depends(_authorize)
) -> Dict[str, Any]:
    updates = {
        k: (v.strip() or None) if isinstance(v, str) else v
        for k, v in payload.model_dump(exclude_unset=True).items()
    }
    color = updates.get("accent_color")
    if color:
        user = await db.get_user(user_id)
        if not is_premium(user, utcnow()):
            raise HTTPException(status_code=403, detail="Цвет профиля доступен с Премиумом.")
        if not COLOR_RE.match(color):
            raise HTTPException(status_code=400, detail="Цвет должен быть в формате #rrggbb.")
    user = await db.update_profile(user_id, **updates)
    return {"success": True, "profile": await _profile_payload(user)}


# stars, premium, referral


@app.get("/api/stars")
async def stars_state(user_id: int = Depends(_authorize)) -> Dict[str, Any]:
    user = await db.get_user(user_id)
    return {
        "success": True,
        "stars": int(user.get("stars") or 0),
        "is_premium": is_premium(user, utcnow()),
        "premium_until": user.get("premium_until"),
        "history": await db.get_star_history(user_id, DEFAULTS.star_history_limit),
        "prices": {
            "premium_month": DEFAULTS.premium_price_stars,
            "boost": DEFAULTS.boost_price_stars,
        },
    }


@app.post("/api/premium/buy")
async def premium_buy(
    payload: PremiumBuyRequest, user_id: int = Depends(_authorize)
) -> Dict[str, Any]:
    months = int(payload.months)
    if months < 1 or months > DEFAULTS.premium_max_months:
        raise HTTPException(
            status_code=400,
            detail=f"Срок премиума: от 1 до {DEFAULTS.premium_max_months} мес.",
        )
    cost = DEFAULTS.premium_price_stars * months
    if not await db.buy_premium(user_id, cost, DEFAULTS.premium_days * months):
        raise HTTPException(status_code=400, detail="Недостаточно звёзд.")
    logger.info("User %s bought premium for %s month(s)", user_id, months)
    user = await db.get_user(user_id)
    return {"success": True, "profile": await _profile_payload(user)}


@app.get("/api/referral")
async def referral_state(user_id: int = Depends(_authorize)) -> Dict[str, Any]:
    user = await db.get_user(user_id)
    return {
        "success": True,
        "code": user["referral_code"],
        "count": int(user.get("referral_count") or 0),
        "link": referral_link(BOT_USERNAME, user["referral_code"]),
        "referred_by": user.get("referred_by"),
        "bonus": DEFAULTS.referral_bonus_stars,
        "welcome": DEFAULTS.referral_welcome_stars,
    }


@app.post("/api/referral/apply")
async def referral_apply(
    payload: ReferralApplyRequest, user_id: int = Depends(_authorize)
) -> Dict[str, Any]:
    ok, message = await redeem_referral(db, user_id, payload.code)
    if not ok:
        raise HTTPException(status_code=400, detail=message)
    user = await db.get_user(user_id)
    if user.get("referred_by"):
        await _push(
            _notice(
                user["referred_by"],
                "referral",
                f"По вашей ссылке пришёл новый пользователь: +{DEFAULTS.referral_bonus_stars} ⭐",
            )
        )
    return {"success": True, "message": message, "stars": int(user.get("stars") or 0)}


# chats


async def _participant_chat(chat_id: int, user_id: int) -> Dict[str, Any]:
    chat = await db.get_chat(chat_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Чат не найден.")
    if chat_counterpart(chat, user_id) is None:
        raise HTTPException(status_code=403, detail="Нет доступа к чату.")
    return chat


@app.post("/api/chats")
async def open_chat(payload: ChatOpenRequest, user_id: int = Depends(_authorize)) -> Dict[str, Any]:
    skill = await db.get_skill(payload.skill_id)
    if not skill:
        raise HTTPException(status_code=404, detail="Умейка не найдена.")
    if skill["user_id"] == user_id:
        raise HTTPException(status_code=400, detail="Нельзя написать самому себе.")
    chat, created = await db.get_or_create_chat(user_id, skill["user_id"], skill["id"])
    if created:
        logger.info("Chat %s opened for skill %s", chat["id"], skill["id"])
    return {"success": True, "chat": chat, "created": created}


@app.get("/api/chats")
async def list_chats(user_id: int = Depends(_authorize)) -> Dict[str, Any]:
    chats = await db.get_user_chats(user_id)
    items = []
    for chat in chats:
        other_id = chat_counterpart(chat, user_id)
        items.append(
            {
                **chat,
                "role": "client" if chat["client_id"] == user_id else "master",
                "counterpart": _public_user(await db.get_user(other_id)),
            }
        )
    return {"success": True, "items": items}


@app.get("/api/chats/{chat_id}/messages")
async def chat_messages(
    chat_id: int,
    after_id: int = Query(0, ge=0),
    user_id: int = Depends(_authorize),
) -> Dict[str, Any]:
    chat = await _participant_chat(chat_id, user_id)
    messages = await db.get_messages(chat_id, after_id=after_id)
    await db.mark_messages_read(chat_id, user_id)
    return {"success": True, "chat": chat, "messages": messages}


@app.post("/api/chats/{chat_id}/messages", status_code=201)
async def send_message(
    chat_id: int, payload: MessageRequest, user_id: int = Depends(_authorize)
) -> Dict[str, Any]:
    chat = await _participant_chat(chat_id, user_id)
    text = payload.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Пустое сообщение.")
    other_id = chat_counterpart(chat, user_id)
    preview = text if len(text) <= MESSAGE_PREVIEW_LEN else text[:MESSAGE_PREVIEW_LEN] + "…"
    notice = _notice(
        other_id,
        "message",
        f"Новое сообщение от {await _user_name(user_id)}: {preview}",
        chat_id=chat_id,
    )
    message = await db.add_message(chat_id, user_id, text, notice)
    await _push(notice)
    return {"success": True, "message": message}


# deals


async def _participant_deal(deal_id: int, user_id: int) -> tuple[Dict[str, Any], str]:
    deal = await db.get_deal(deal_id)
    if not deal:
        raise HTTPException(status_code=404, detail="Сделка не найдена.")
    role = deal_role(deal, user_id)
    if not role:
        raise HTTPException(status_code=403, detail="Нет доступа к сделке.")
    return deal, role


def _other_party(deal: Dict[str, Any], role: str) -> int:
    return deal["master_id"] if role == "client" else deal["client_id"]


@app.post("/api/deals", status_code=201)
async def create_deal(
    payload: DealCreateRequest, user_id: int = Depends(_authorize)
) -> Dict[str, Any]:
    chat = await _participant_chat(payload.chat_id, user_id)
    totals = deal_totals(payload.amount)
    notice = _notice(
        chat_counterpart(chat, user_id),
        "deal_created",
        f"{await _user_name(user_id)} предлагает сделку на {totals['amount']} ₽.",
        chat_id=chat["id"],
    )
    deal_id = await db.create_deal(chat, totals, payload.description.strip(), notice)
    logger.info("Deal %s created in chat %s by user %s", deal_id, chat["id"], user_id)
    await _push(notice)
    return {"success": True, "deal": await db.get_deal(deal_id)}


@app.get("/api/deals")
async def list_deals(
    status: Optional[str] = None, user_id: int = Depends(_authorize)
) -> Dict[str, Any]:
    if status and status not in DEAL_STATUSES:
        raise HTTPException(status_code=400, detail="Неизвестный статус сделки.")
    return {"success": True, "items": await db.get_user_deals(user_id, status)}


@app.get("/api/deals/{deal_id}")
async def get_deal(deal_id: int, user_id: int = Depends(_authorize)) -> Dict[str, Any]:
    deal, role = await _participant_deal(deal_id, user_id)
    return {"success": True, "deal": deal, "role": role}


@app.put("/api/deals/{deal_id}")
async def update_deal(
    deal_id: int, payload: DealUpdateRequest, user_id: int = Depends(_authorize)
) -> Dict[str, Any]:
    deal, role = await _participant_deal(deal_id, user_id)
    if deal["status"] not in DEAL_EDITABLE:
        raise HTTPException(status_code=400, detail="Условия сделки уже нельзя изменить.")
    amount = payload.amount if payload.amount is not None else deal["amount"]
    description = (
        payload.description.strip() if payload.description is not None else deal["description"]
    )
    notice = _notice(
        _other_party(deal, role),
        "deal_updated",
        f"Условия сделки #{deal_id} изменены, нужна повторная подпись.",
        deal_id=deal_id,
    )
    if not await db.update_deal_terms(deal_id, deal_totals(amount), description, notice):
        raise HTTPException(status_code=409, detail="Сделка изменилась, обновите данные.")
    await _push(notice)
    return {"success": True, "deal": await db.get_deal(deal_id)}


@app.post("/api/deals/{deal_id}/sign")
async def sign_deal(deal_id: int, user_id: int = Depends(_authorize)) -> Dict[str, Any]:
    deal, role = await _participant_deal(deal_id, user_id)
    if deal["status"] not in DEAL_SIGNABLE:
        raise HTTPException(status_code=400, detail="Сделку нельзя подписать в этом статусе.")
    if deal[f"{role}_signed"]:
        raise HTTPException(status_code=400, detail="Вы уже подписали сделку.")
    client_signed = deal["client_signed"] or role == "client"
    master_signed = deal["master_signed"] or role == "master"
    new_status = status_after_sign(client_signed, master_signed)
    if new_status == "active":
        text = f"Сделка #{deal_id} подписана обеими сторонами и активна."
    else:
        text = f"{await _user_name(user_id)} подписал сделку #{deal_id}. Нужна ваша подпись."
    notice = _notice(_other_party(deal, role), "deal_signed", text, deal_id=deal_id)
    if not await db.sign_deal(deal, role, new_status, notice):
        raise HTTPException(status_code=409, detail="Сделка изменилась, обновите данные.")
    logger.info("Deal %s signed by %s, status=%s", deal_id, role, new_status)
    await _push(notice)
    return {"success": True, "deal": await db.get_deal(deal_id)}


@app.post("/api/deals/{deal_id}/complete")
async def complete_deal(deal_id: int, user_id: int = Depends(_authorize)) -> Dict[str, Any]:
    deal, role = await _participant_deal(deal_id, user_id)
    if role != "client":
        raise HTTPException(status_code=403, detail="Завершить сделку может только клиент.")
    if deal["status"] != "active":
        raise HTTPException(status_code=400, detail="Завершить можно только активную сделку.")
    notice = _notice(
        deal["master_id"],
        "deal_completed",
        f"Сделка #{deal_id} завершена: +{DEFAULTS.deal_master_stars} ⭐",
        deal_id=deal_id,
    )
    ok = await db.complete_deal(
        deal, DEFAULTS.deal_master_stars, DEFAULTS.deal_client_stars, notice
    )
    if not ok:
        raise HTTPException(status_code=409, detail="Сделка изменилась, обновите данные.")
    logger.info("Deal %s completed", deal_id)
    await _push(notice)
    return {"success": True, "deal": await db.get_deal(deal_id)}


@app.post("/api/deals/{deal_id}/cancel")
async def cancel_deal(deal_id: int, user_id: int = Depends(_authorize)) -> Dict[str, Any]:
    deal, role = await _participant_deal(deal_id, user_id)
    if deal["status"] not in DEAL_CANCELLABLE:
        raise HTTPException(status_code=400, detail="Сделку уже нельзя отменить.")
    notice = _notice(
        _other_party(deal, role),
        "deal_cancelled",
        f"{await _user_name(user_id)} отменил сделку #{deal_id}.",
        deal_id=deal_id,
    )
    if not await db.cancel_deal(deal_id, user_id, notice):
        raise HTTPException(status_code=409, detail="Сделка изменилась, обновите данные.")
    logger.info("Deal %s cancelled by %s", deal_id, role)
    await _push(notice)
    return {"success": True, "deal": await db.get_deal(deal_id)}


# reviews


@app.post("/api/reviews", status_code=201)
async def create_review(
    payload: ReviewRequest, user_id: int = Depends(_authorize)
) -> Dict[str, Any]:
    if (payload.deal_id is None) == (payload.chat_id is None):
        raise HTTPException(status_code=400, detail="Укажите сделку или чат.")
    scores = payload.model_dump(include={"quality", "speed", "communication", "price"})
    error = validate_scores(scores)
    if error:
        raise HTTPException(status_code=400, detail=error)
    if payload.deal_id is not None:
        deal = await db.get_deal(payload.deal_id)
        if not deal:
            raise HTTPException(status_code=404, detail="Сделка не найдена.")
        if deal["client_id"] != user_id:
            raise HTTPException(status_code=403, detail="Отзыв оставляет клиент сделки.")
        if deal["status"] != "completed":
            raise HTTPException(status_code=400, detail="Сделка ещё не завершена.")
        skill_id, master_id = deal["skill_id"], deal["master_id"]
        already = await db.has_review(user_id, deal_id=deal["id"])
    else:
        chat = await db.get_chat(payload.chat_id)
        if not chat:
            raise HTTPException(status_code=404, detail="Чат не найден.")
        if chat["client_id"] != user_id:
            raise HTTPException(status_code=403, detail="Отзыв оставляет клиент.")
        if not await db.chat_has_message_from(chat["id"], chat["master_id"]):
            raise HTTPException(status_code=400, detail="Мастер ещё не ответил в чате.")
        skill_id, master_id = chat["skill_id"], chat["master_id"]
        already = await db.has_review(user_id, chat_id=chat["id"])
    if already:
        raise HTTPException(status_code=409, detail="Вы уже оставили отзыв.")
    review = {
        **scores,
        "skill_id": skill_id,
        "master_id": master_id,
        "author_id": user_id,
        "deal_id": payload.deal_id,
        "chat_id": payload.chat_id,
        "overall": review_overall(scores),
        "comment": (payload.comment or "").strip() or None,
    }
    review_id = await db.create_review(review)
    if review_id is None:
        raise HTTPException(status_code=409, detail="Вы уже оставили отзыв.")
    notice = _notice(
        master_id,
        "review",
        f"Новый отзыв: {review['overall']} из 5",
        review_id=review_id,
        skill_id=skill_id,
    )
    await db.add_notification(notice)
    await _push(notice)
    skill = await db.get_skill(skill_id, include_inactive=True)
    return {
        "success": True,
        "review": {**review, "id": review_id},
        "skill_rating": {
            "average": skill["rating_avg"] if skill else 0.0,
            "count": skill["rating_count"] if skill else 0,
        },
    }


# notifications


@app.get("/api/notifications")
async def list_notifications(
    unread: bool = False, user_id: int = Depends(_authorize)
) -> Dict[str, Any]:
    items = await db.get_notifications(user_id, unread, DEFAULTS.notification_limit)
    return {
        "success": True,
        "items": items,
        "unread": await db.count_unread_notifications(user_id),
    }


@app.post("/api/notifications/read")
async def read_notifications(
    payload: NotificationsReadRequest, user_id: int = Depends(_authorize)
) -> Dict[str, Any]:
    updated = await db.mark_notifications_read(user_id, payload.ids)
    return {"success": True, "updated": updated}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "3001")))
