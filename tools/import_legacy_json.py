import json
import logging
import os
import sqlite3
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from umeyka.config import DB_PATH, DATA_DIR, LOG_LEVEL  # noqa: E402
from umeyka.market import generate_referral_code  # noqa: E402


logger = logging.getLogger("import_legacy_json")

LEGACY_PATH = Path(os.getenv("LEGACY_DB_PATH", DATA_DIR / "db.json"))


def load_legacy(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise SystemExit(f"legacy db not found: {path}")
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise SystemExit(f"unexpected legacy format in {path}")
    return payload


def to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_timestamp(value: Any) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed.strftime("%Y-%m-%d %H:%M:%S")


def pick_coords(skill: Dict[str, Any]) -> tuple:
    location = skill.get("location") or {}
    if not isinstance(location, dict):
        location = {}
    lat = to_float(location.get("lat", location.get("latitude", skill.get("lat"))))
    lon = to_float(
        location.get("lng", location.get("lon", location.get("longitude", skill.get("lon"))))
    )
    if lat is None or lon is None or not (-90 <= lat <= 90 and -180 <= lon <= 180):
        return None, None
    return lat, lon


def ensure_user(
    conn: sqlite3.Connection, tg_id: int, info: Dict[str, Any]
) -> Tuple[int, bool]:
    cursor = conn.cursor()
    row = cursor.execute("SELECT id FROM users WHERE tg_id = ?", (tg_id,)).fetchone()
    if row:
        return row[0], False
    cursor.execute(
        "INSERT INTO users (tg_id, username, first_name, last_name) VALUES (?, ?, ?, ?)",
        (
            tg_id,
            info.get("username"),
            info.get("firstName") or info.get("first_name"),
            info.get("lastName") or info.get("last_name"),
        ),
    )
    user_id = cursor.lastrowid
    code = generate_referral_code()
    while cursor.execute(
        "SELECT 1 FROM profiles WHERE referral_code = ?", (code,)
    ).fetchone():
        code = generate_referral_code()
    cursor.execute(
        "INSERT INTO profiles (user_id, referral_code) VALUES (?, ?)",
        (user_id, code),
    )
    stars = to_int(info.get("stars")) or 0
    if stars > 0:
        cursor.execute(
            "UPDATE profiles SET stars = ? WHERE user_id = ?",
            (stars, user_id),
        )
        cursor.execute(
            "INSERT INTO star_transactions (user_id, delta, reason) VALUES (?, ?, ?)",
            (user_id, stars, "legacy_import"),
        )
    return user_id, True


def import_users(conn: sqlite3.Connection, users: Dict[str, Any]) -> int:
    imported = 0
    for key, info in (users or {}).items():
        tg_id = to_int(key)
        if tg_id is None or not isinstance(info, dict):
            continue
        _, created = ensure_user(conn, tg_id, info)
        if created:
            imported += 1
    return imported


def import_skills(
    conn: sqlite3.Connection, skills: list, users: Dict[str, Any]
) -> Dict[str, int]:
    cursor = conn.cursor()
    imported = 0
    skipped = 0
    for skill in skills or []:
        legacy_id = str(skill.get("_id") or "")
        tg_id = to_int(skill.get("userId"))
        title = (skill.get("skill") or "").strip()
        if not legacy_id or tg_id is None or not title:
            skipped += 1
            continue
        exists = cursor.execute(
            "SELECT 1 FROM skills WHERE legacy_id = ?", (legacy_id,)
        ).fetchone()
        if exists:
            skipped += 1
            continue
        user_id, _ = ensure_user(conn, tg_id, (users or {}).get(str(tg_id)) or {})
        rating = skill.get("rating") if isinstance(skill.get("rating"), dict) else {}
        lat, lon = pick_coords(skill)
        created_at = to_timestamp(skill.get("createdAt"))
        updated_at = to_timestamp(skill.get("updatedAt")) or created_at
        cursor.execute(
            """
            INSERT INTO skills (
                user_id, skill, experience, description, category, price, city,
                lat, lon, rating_avg, rating_count, views, contacts, is_active,
                legacy_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                      COALESCE(?, CURRENT_TIMESTAMP), COALESCE(?, CURRENT_TIMESTAMP))
            """,
            (
                user_id,
                title[:100],
                (skill.get("experience") or "")[:500],
                skill.get("description"),
                skill.get("category"),
                max(0, to_int(skill.get("price")) or 0),
                skill.get("city"),
                lat,
                lon,
                round(to_float(rating.get("average")) or 0.0, 2),
                max(0, to_int(rating.get("count")) or 0),
                max(0, to_int(skill.get("views")) or 0),
                max(0, to_int(skill.get("contacts")) or 0),
                0 if skill.get("isActive") is False else 1,
                legacy_id,
                created_at,
                updated_at,
            ),
        )
        imported += 1
    return {"imported": imported, "skipped": skipped}


def run_import(db_path: Path, legacy_path: Path) -> Dict[str, int]:
    if not Path(db_path).exists():
        raise SystemExit(f"DB not found: {db_path}. Start the API once to create it.")
    legacy = load_legacy(Path(legacy_path))
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA foreign_keys = ON")
        columns = {row[1] for row in conn.execute("PRAGMA table_info(skills)")}
        if "legacy_id" not in columns:
            raise SystemExit("skills.legacy_id is missing, run the API once to migrate.")
        users_total = import_users(conn, legacy.get("users") or {})
        result = import_skills(conn, legacy.get("skills") or [], legacy.get("users") or {})
        conn.commit()
    finally:
        conn.close()
    result["users"] = users_total
    return result


def main() -> None:
    logging.basicConfig(level=LOG_LEVEL)
    legacy_path = Path(sys.argv[1]) if len(sys.argv) > 1 else LEGACY_PATH
    result = run_import(DB_PATH, legacy_path)
    logger.info(
        "Import complete: %s users, %s skills imported, %s skipped",
        result["users"],
        result["imported"],
        result["skipped"],
    )


if __name__ == "__main__":
    main()
