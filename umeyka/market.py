from __future__ import annotations

import math
import re
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

from .config import DEFAULTS


DEAL_STATUSES = ("draft", "pending_signature", "active", "completed", "cancelled")
DEAL_EDITABLE = ("draft", "pending_signature")
DEAL_SIGNABLE = ("draft", "pending_signature")
DEAL_CANCELLABLE = ("draft", "pending_signature", "active")

REVIEW_FIELDS = ("quality", "speed", "communication", "price")

SORT_KEYS = ("default", "new", "price_asc", "price_desc", "rating", "distance")

REFERRAL_PREFIX = "ref_"
STAR_EMOJI = "⭐"
EARTH_RADIUS_KM = 6371.0
COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")
REFERRAL_CODE_RE = re.compile(r"^[0-9a-f]{8}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def calc_commission(amount: int, rate: float = DEFAULTS.commission_rate) -> int:
    value = Decimal(int(amount)) * Decimal(str(rate))
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def deal_totals(amount: int) -> Dict[str, int]:
    commission = calc_commission(amount)
    return {
        "amount": int(amount),
        "commission": commission,
        "master_payout": int(amount) - commission,
    }


def deal_role(deal: Dict[str, Any], user_id: int) -> Optional[str]:
    if int(deal.get("client_id") or 0) == user_id:
        return "client"
    if int(deal.get("master_id") or 0) == user_id:
        return "master"
    return None


def status_after_sign(client_signed: bool, master_signed: bool) -> str:
    if client_signed and master_signed:
        return "active"
    if client_signed or master_signed:
        return "pending_signature"
    return "draft"


def chat_counterpart(chat: Dict[str, Any], user_id: int) -> Optional[int]:
    client_id = int(chat.get("client_id") or 0)
    master_id = int(chat.get("master_id") or 0)
    if user_id == client_id:
        return master_id
    if user_id == master_id:
        return client_id
    return None


def validate_scores(scores: Dict[str, Any]) -> Optional[str]:
    for field in REVIEW_FIELDS:
        value = scores.get(field)
        if not isinstance(value, int) or isinstance(value, bool):
            return f"Оценка {field} обязательна."
        if value < 1 or value > 5:
            return f"Оценка {field} должна быть от 1 до 5."
    return None


def review_overall(scores: Dict[str, Any]) -> float:
    total = sum(int(scores[field]) for field in REVIEW_FIELDS)
    return round(total / len(REVIEW_FIELDS), 2)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def valid_coords(lat: Optional[float], lon: Optional[float]) -> bool:
    if lat is None and lon is None:
        return True
    if lat is None or lon is None:
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


def matches_query(skill: Dict[str, Any], query: Optional[str]) -> bool:
    if not query:
        return True
    term = query.strip().casefold()
    if not term:
        return True
    for field in ("skill", "experience", "description", "category"):
        value = skill.get(field)
        if value and term in str(value).casefold():
            return True
    return False


def is_boosted(skill: Dict[str, Any], now: datetime) -> bool:
    until = parse_iso(skill.get("boosted_until"))
    return bool(until and until > now)


def filter_by_distance(
    skills: List[Dict[str, Any]],
    lat: Optional[float],
    lon: Optional[float],
    radius_km: Optional[float],
) -> List[Dict[str, Any]]:
    if lat is None or lon is None:
        return skills
    result = []
    for skill in skills:
        if skill.get("lat") is None or skill.get("lon") is None:
            if radius_km is None:
                skill["distance_km"] = None
                result.append(skill)
            continue
        distance = haversine_km(lat, lon, float(skill["lat"]), float(skill["lon"]))
        if radius_km is not None and distance > radius_km:
            continue
        skill["distance_km"] = round(distance, 2)
        result.append(skill)
    return result


def sort_skills(
    skills: List[Dict[str, Any]], sort_key: Optional[str], now: datetime
) -> List[Dict[str, Any]]:
    key = sort_key if sort_key in SORT_KEYS else "default"
    if key == "new":
        return sorted(skills, key=lambda s: (s.get("created_at") or "", s["id"]), reverse=True)
    if key == "price_asc":
        return sorted(skills, key=lambda s: (int(s.get("price") or 0), s["id"]))
    if key == "price_desc":
        return sorted(skills, key=lambda s: (-int(s.get("price") or 0), s["id"]))
    if key == "rating":
        return sorted(
            skills,
            key=lambda s: (-float(s.get("rating_avg") or 0), -int(s.get("rating_count") or 0), s["id"]),
        )
    if key == "distance":
        return sorted(
            skills,
            key=lambda s: (
                s.get("distance_km") is None,
                s.get("distance_km") or 0.0,
                s["id"],
            ),
        )
    return sorted(
        skills,
        key=lambda s: (
            not is_boosted(s, now),
            -float(s.get("rating_avg") or 0),
            -int(s["id"]),
        ),
    )


def normalize_page(page: Optional[int], per_page: Optional[int]) -> Tuple[int, int]:
    size = int(per_page or DEFAULTS.page_size)
    size = max(1, min(DEFAULTS.page_size_max, size))
    return max(1, int(page or 1)), size


def paginate(
    items: List[Dict[str, Any]], page: int, per_page: int
) -> Tuple[List[Dict[str, Any]], int, int]:
    total = len(items)
    pages = max(1, math.ceil(total / per_page)) if per_page > 0 else 1
    page = max(1, min(page, pages))
    start = (page - 1) * per_page
    return items[start : start + per_page], total, pages


def generate_referral_code() -> str:
    return secrets.token_hex(4)


def parse_referral_payload(payload: Optional[str]) -> Optional[str]:
    if not payload:
        return None
    payload = payload.strip()
    if not payload.startswith(REFERRAL_PREFIX):
        return None
    code = payload[len(REFERRAL_PREFIX):].lower()
    return code if REFERRAL_CODE_RE.match(code) else None


def referral_link(bot_username: str, code: str) -> Optional[str]:
    if not bot_username:
        return None
    return f"https://t.me/{bot_username}?start={REFERRAL_PREFIX}{code}"


def is_premium(profile: Optional[Dict[str, Any]], now: datetime) -> bool:
    if not profile:
        return False
    until = parse_iso(profile.get("premium_until"))
    return bool(until and until > now)


def extend_until(current: Optional[str], days: int, now: datetime) -> datetime:
    base = parse_iso(current)
    if not base or base < now:
        base = now
    return base + timedelta(days=days)


def skill_limit(premium: bool) -> int:
    return DEFAULTS.skill_limit_premium if premium else DEFAULTS.skill_limit_free


def display_name(user: Optional[Dict[str, Any]]) -> str:
    if not user:
        return "Пользователь"
    nickname = user.get("display_name")
    if nickname:
        return nickname
    first = user.get("first_name")
    last = user.get("last_name")
    if first or last:
        return " ".join(p for p in (first, last) if p)
    return user.get("username") or "Пользователь"


def fmt_stars(amount: int) -> str:
    return f"{amount} {STAR_EMOJI}"
