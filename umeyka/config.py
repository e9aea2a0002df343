from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv


load_dotenv()


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", BASE_DIR / "data"))
DB_PATH = Path(os.getenv("DB_PATH", BASE_DIR / "umeyka.db"))
BOT_TOKEN = os.getenv("BOT_TOKEN", "").strip()
BOT_USERNAME = os.getenv("BOT_USERNAME", "").strip().lstrip("@")
WEB_APP_URL = os.getenv("WEB_APP_URL", "").strip()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"


@dataclass(frozen=True)
class MarketDefaults:
    commission_rate: float = 0.05
    deal_min_amount: int = 1
    deal_max_amount: int = 10_000_000
    deal_master_stars: int = 5
    deal_client_stars: int = 2
    referral_bonus_stars: int = 10
    referral_welcome_stars: int = 5
    premium_price_stars: int = 100
    premium_days: int = 30
    premium_max_months: int = 12
    boost_price_stars: int = 20
    boost_days: int = 7
    skill_limit_free: int = 5
    skill_limit_premium: int = 20
    page_size: int = 20
    page_size_max: int = 50
    message_max_len: int = 4000
    review_comment_max_len: int = 1000
    recent_reviews: int = 5
    star_history_limit: int = 30
    notification_limit: int = 50


DEFAULTS = MarketDefaults()
