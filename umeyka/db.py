from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiosqlite

from .config import DB_PATH
from .market import extend_until, generate_referral_code, iso, utcnow


logger = logging.getLogger(__name__)

SKILL_FIELDS = (
    "skill",
    "experience",
    "description",
    "category",
    "price",
    "city",
    "lat",
    "lon",
)
PROFILE_FIELDS = ("display_name", "bio", "city", "avatar_emoji", "accent_color")


class Database:
    def __init__(self, path=DB_PATH):
        self.path = str(path)
        self.conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        self.conn = await aiosqlite.connect(self.path)
        self.conn.row_factory = aiosqlite.Row
        await self.conn.execute("PRAGMA foreign_keys = ON")
        await self.conn.execute("PRAGMA journal_mode = WAL")
        await self.conn.commit()

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialize writers on the shared connection and commit as one unit."""
        assert self.conn is not None
        async with self._write_lock:
            try:
                yield self.conn
            except BaseException:
                await self.conn.rollback()
                raise
            await self.conn.commit()

    async def init(self) -> None:
        assert self.conn is not None
        await self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tg_id INTEGER UNIQUE NOT NULL,
                username TEXT,
                first_name TEXT,
                last_name TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS profiles (
                user_id INTEGER PRIMARY KEY,
                stars INTEGER NOT NULL DEFAULT 0 CHECK (stars >= 0),
                premium_until TEXT,
                referral_code TEXT UNIQUE NOT NULL,
                referred_by INTEGER,
                referral_count INTEGER NOT NULL DEFAULT 0,
                display_name TEXT,
                bio TEXT,
                city TEXT,
                avatar_emoji TEXT,
                accent_color TEXT,
                FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
                FOREIGN KEY(referred_by) REFERENCES users(id) ON DELETE SET NULL
            );

            CREATE TABLE IF NOT EXISTS skills (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                skill TEXT NOT NULL,
                experience TEXT NOT NULL DEFAULT '',
                description TEXT,
                category TEXT,
                price INTEGER NOT NULL DEFAULT 0,
                city TEXT,
                lat REAL,
                lon REAL,
                rating_avg REAL NOT NULL DEFAULT 0,
                rating_count INTEGER NOT NULL DEFAULT 0,
                views INTEGER NOT NULL DEFAULT 0,
                contacts INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                boosted_until TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS skills_active_idx ON skills(is_active);
            CREATE INDEX IF NOT EXISTS skills_user_idx ON skills(user_id);

            CREATE TABLE IF NOT EXISTS chats (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                client_id INTEGER NOT NULL,
                master_id INTEGER NOT NULL,
                skill_id INTEGER NOT NULL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(client_id, master_id, skill_id),
                FOREIGN KEY(client_id) REFERENCES users(id) ON DELETE CASCADE,
                FOREIGN KEY(master_id) REFERENCES users(id) ON DELETE CASCADE,
                FOREIGN KEY(skill_id) REFERENCES skills(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id INTEGER NOT NULL,
                sender_id INTEGER NOT NULL,
                text TEXT NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(chat_id) REFERENCES chats(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS messages_chat_idx ON messages(chat_id, id);

            CREATE TABLE IF NOT EXISTS deals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id INTEGER,
                skill_id INTEGER NOT NULL,
                client_id INTEGER NOT NULL,
                master_id INTEGER NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                amount INTEGER NOT NULL,
                commission INTEGER NOT NULL,
                master_payout INTEGER NOT NULL,
                client_signed INTEGER NOT NULL DEFAULT 0,
                master_signed INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'draft',
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                activated_at TEXT,
                completed_at TEXT,
                cancelled_at TEXT,
                cancelled_by INTEGER,
                FOREIGN KEY(chat_id) REFERENCES chats(id) ON DELETE SET NULL,
                FOREIGN KEY(skill_id) REFERENCES skills(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS deals_client_idx ON deals(client_id);
            CREATE INDEX IF NOT EXISTS deals_master_idx ON deals(master_id);

            CREATE TABLE IF NOT EXISTS reviews (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                skill_id INTEGER NOT NULL,
                master_id INTEGER NOT NULL,
                author_id INTEGER NOT NULL,
                deal_id INTEGER,
                chat_id INTEGER,
                quality INTEGER NOT NULL,
                speed INTEGER NOT NULL,
                communication INTEGER NOT NULL,
                price INTEGER NOT NULL,
                overall REAL NOT NULL,
                comment TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(author_id, deal_id),
                UNIQUE(author_id, chat_id),
                FOREIGN KEY(skill_id) REFERENCES skills(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS reviews_skill_idx ON reviews(skill_id);
            CREATE INDEX IF NOT EXISTS reviews_master_idx ON reviews(master_id);

            CREATE TABLE IF NOT EXISTS star_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                delta INTEGER NOT NULL,
                reason TEXT NOT NULL,
                ref_id INTEGER,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS star_tx_user_idx ON star_transactions(user_id);

            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                kind TEXT NOT NULL,
                text TEXT NOT NULL,
                payload_json TEXT,
                is_read INTEGER NOT NULL DEFAULT 0,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS notifications_user_idx
                ON notifications(user_id, is_read);
            """
        )
        await self._ensure_column("skills", "legacy_id", "TEXT")
        await self.conn.commit()

    # users and profiles

    async def upsert_user(self, user) -> int:
        async with self.transaction() as conn:
            row = await self._fetchone(
                "SELECT id FROM users WHERE tg_id = ?",
                (user.id,),
            )
            if row:
                user_id = row["id"]
                await conn.execute(
                    """
                    UPDATE users
                    SET username = ?, first_name = ?, last_name = ?
                    WHERE id = ?
                    """,
                    (user.username, user.first_name, user.last_name, user_id),
                )
            else:
                cursor = await conn.execute(
                    """
                    INSERT INTO users (tg_id, username, first_name, last_name)
                    VALUES (?, ?, ?, ?)
                    """,
                    (user.id, user.username, user.first_name, user.last_name),
                )
                user_id = cursor.lastrowid
                logger.info("New user %s (tg_id=%s)", user_id, user.id)
            await self._ensure_profile(conn, user_id)
        return user_id

    async def _ensure_profile(self, conn: aiosqlite.Connection, user_id: int) -> None:
        row = await self._fetchone(
            "SELECT user_id FROM profiles WHERE user_id = ?",
            (user_id,),
        )
        if row:
            return
        code = generate_referral_code()
        while await self._fetchone(
            "SELECT user_id FROM profiles WHERE referral_code = ?", (code,)
        ):
            code = generate_referral_code()
        await conn.execute(
            "INSERT INTO profiles (user_id, referral_code) VALUES (?, ?)",
            (user_id, code),
        )

    async def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        row = await self._fetchone(
            """
            SELECT u.*, p.stars, p.premium_until, p.referral_code, p.referred_by,
                   p.referral_count, p.display_name, p.bio, p.city,
                   p.avatar_emoji, p.accent_color
            FROM users u
            LEFT JOIN profiles p ON p.user_id = u.id
            WHERE u.id = ?
            """,
            (user_id,),
        )
        return dict(row) if row else None

    async def get_user_id_by_tg(self, tg_id: int) -> Optional[int]:
        row = await self._fetchone(
            "SELECT id FROM users WHERE tg_id = ?",
            (tg_id,),
        )
        return row["id"] if row else None

    async def get_user_id_by_referral_code(self, code: str) -> Optional[int]:
        row = await self._fetchone(
            "SELECT user_id FROM profiles WHERE referral_code = ?",
            (code,),
        )
        return row["user_id"] if row else None

    async def update_profile(self, user_id: int, **kwargs: Any) -> Dict[str, Any]:
        fields = {k: v for k, v in kwargs.items() if k in PROFILE_FIELDS}
        if fields:
            cols = ", ".join(f"{k} = ?" for k in fields)
            async with self.transaction() as conn:
                await conn.execute(
                    f"UPDATE profiles SET {cols} WHERE user_id = ?",
                    (*fields.values(), user_id),
                )
        return await self.get_user(user_id)

    async def apply_referral(
        self, user_id: int, referrer_id: int, bonus: int, welcome: int
    ) -> bool:
        async with self.transaction() as conn:
            # refuses a circular pair even when both sides apply at once
            cursor = await conn.execute(
                """
                UPDATE profiles SET referred_by = ?
                WHERE user_id = ? AND referred_by IS NULL
                  AND NOT EXISTS (
                      SELECT 1 FROM profiles
                      WHERE user_id = ? AND referred_by = ?
                  )
                """,
                (referrer_id, user_id, referrer_id, user_id),
            )
            if cursor.rowcount == 0:
                return False
            await conn.execute(
                "UPDATE profiles SET referral_count = referral_count + 1 WHERE user_id = ?",
                (referrer_id,),
            )
            await self._add_stars(conn, referrer_id, bonus, "referral_bonus", user_id)
            await self._add_stars(conn, user_id, welcome, "referral_welcome", referrer_id)
            await self._insert_notification(
                conn,
                {
                    "user_id": referrer_id,
                    "kind": "referral",
                    "text": f"По вашей ссылке пришёл новый пользователь: +{bonus} ⭐",
                    "payload": {"user_id": user_id},
                },
            )
        logger.info("Referral applied: %s invited by %s", user_id, referrer_id)
        return True

    # stars

    async def _add_stars(
        self,
        conn: aiosqlite.Connection,
        user_id: int,
        delta: int,
        reason: str,
        ref_id: Optional[int] = None,
    ) -> bool:
        if delta == 0:
            return True
        cursor = await conn.execute(
            "UPDATE profiles SET stars = stars + ? WHERE user_id = ? AND stars + ? >= 0",
            (delta, user_id, delta),
        )
        if cursor.rowcount == 0:
            return False
        await conn.execute(
            """
            INSERT INTO star_transactions (user_id, delta, reason, ref_id)
            VALUES (?, ?, ?, ?)
            """,
            (user_id, delta, reason, ref_id),
        )
        return True

    async def adjust_stars(
        self, user_id: int, delta: int, reason: str, ref_id: Optional[int] = None
    ) -> bool:
        async with self.transaction() as conn:
            return await self._add_stars(conn, user_id, delta, reason, ref_id)

    async def get_stars(self, user_id: int) -> int:
        row = await self._fetchone(
            "SELECT stars FROM profiles WHERE user_id = ?",
            (user_id,),
        )
        return int(row["stars"]) if row else 0

    async def get_star_history(self, user_id: int, limit: int = 30) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT id, delta, reason, ref_id, created_at
            FROM star_transactions
            WHERE user_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (user_id, limit),
        )
        return [dict(row) for row in rows]

    async def buy_premium(self, user_id: int, cost: int, days: int) -> Optional[str]:
        """Charge stars and extend premium; the expiry is read under the write lock."""
        async with self.transaction() as conn:
            row = await self._fetchone(
                "SELECT premium_until FROM profiles WHERE user_id = ?",
                (user_id,),
            )
            if not row:
                return None
            if not await self._add_stars(conn, user_id, -cost, "premium"):
                return None
            until = iso(extend_until(row["premium_until"], days, utcnow()))
            await conn.execute(
                "UPDATE profiles SET premium_until = ? WHERE user_id = ?",
                (until, user_id),
            )
        return until

    async def boost_skill(
        self, skill_id: int, user_id: int, cost: int, days: int
    ) -> Optional[str]:
        async with self.transaction() as conn:
            row = await self._fetchone(
                "SELECT boosted_until FROM skills WHERE id = ? AND is_active = 1",
                (skill_id,),
            )
            if not row:
                return None
            if not await self._add_stars(conn, user_id, -cost, "boost", skill_id):
                return None
            until = iso(extend_until(row["boosted_until"], days, utcnow()))
            await conn.execute(
                "UPDATE skills SET boosted_until = ? WHERE id = ?",
                (until, skill_id),
            )
        return until

    # skills

    async def create_skill(
        self, user_id: int, fields: Dict[str, Any], limit: Optional[int] = None
    ) -> Optional[int]:
        """Insert a skill; None when the owner already has `limit` active skills."""
        values = {k: fields.get(k) for k in SKILL_FIELDS}
        values["experience"] = values["experience"] or ""
        values["price"] = values["price"] or 0
        cols = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        async with self.transaction() as conn:
            if limit is not None:
                row = await self._fetchone(
                    "SELECT COUNT(*) AS total FROM skills WHERE user_id = ? AND is_active = 1",
                    (user_id,),
                )
                if row["total"] >= limit:
                    return None
            cursor = await conn.execute(
                f"INSERT INTO skills (user_id, {cols}) VALUES (?, {marks})",
                (user_id, *values.values()),
            )
        return cursor.lastrowid

    async def get_skill(
        self, skill_id: int, include_inactive: bool = False
    ) -> Optional[Dict[str, Any]]:
        query = self._skill_select() + " WHERE s.id = ?"
        if not include_inactive:
            query += " AND s.is_active = 1"
        row = await self._fetchone(query, (skill_id,))
        return self._row_to_skill(row) if row else None

    async def update_skill(self, skill_id: int, **kwargs: Any) -> None:
        fields = {k: v for k, v in kwargs.items() if k in SKILL_FIELDS}
        if not fields:
            return
        cols = ", ".join(f"{k} = ?" for k in fields)
        async with self.transaction() as conn:
            await conn.execute(
                f"UPDATE skills SET {cols}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (*fields.values(), skill_id),
            )

    async def deactivate_skill(self, skill_id: int) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                """
                UPDATE skills SET is_active = 0, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (skill_id,),
            )

    async def increment_skill_views(self, skill_id: int) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                "UPDATE skills SET views = views + 1 WHERE id = ? AND is_active = 1",
                (skill_id,),
            )

    async def list_active_skills(
        self,
        category: Optional[str] = None,
        min_price: Optional[int] = None,
        max_price: Optional[int] = None,
        min_rating: Optional[float] = None,
        city: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        clauses = ["s.is_active = 1"]
        params: List[Any] = []
        if category:
            clauses.append("s.category = ?")
            params.append(category)
        if min_price is not None:
            clauses.append("s.price >= ?")
            params.append(min_price)
        if max_price is not None:
            clauses.append("s.price <= ?")
            params.append(max_price)
        if min_rating is not None:
            clauses.append("s.rating_avg >= ?")
            params.append(min_rating)
        rows = await self._fetchall(
            self._skill_select() + " WHERE " + " AND ".join(clauses),
            tuple(params),
        )
        skills = [self._row_to_skill(row) for row in rows]
        if city:
            wanted = city.strip().casefold()
            skills = [s for s in skills if (s.get("city") or "").casefold() == wanted]
        return skills

    async def get_user_skills(self, user_id: int) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            self._skill_select()
            + " WHERE s.user_id = ? AND s.is_active = 1 ORDER BY s.id DESC",
            (user_id,),
        )
        return [self._row_to_skill(row) for row in rows]

    async def count_active_skills(self, user_id: int) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS total FROM skills WHERE user_id = ? AND is_active = 1",
            (user_id,),
        )
        return int(row["total"]) if row else 0

    async def get_categories(self) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT category, COUNT(*) AS total
            FROM skills
            WHERE is_active = 1 AND category IS NOT NULL AND category != ''
            GROUP BY category
            ORDER BY total DESC, category
            """,
            (),
        )
        return [{"category": row["category"], "count": row["total"]} for row in rows]

    # chats

    async def get_or_create_chat(
        self, client_id: int, master_id: int, skill_id: int
    ) -> Tuple[Dict[str, Any], bool]:
        created = False
        async with self.transaction() as conn:
            row = await self._fetchone(
                """
                SELECT * FROM chats
                WHERE client_id = ? AND master_id = ? AND skill_id = ?
                """,
                (client_id, master_id, skill_id),
            )
            if not row:
                cursor = await conn.execute(
                    "INSERT INTO chats (client_id, master_id, skill_id) VALUES (?, ?, ?)",
                    (client_id, master_id, skill_id),
                )
                await conn.execute(
                    "UPDATE skills SET contacts = contacts + 1 WHERE id = ?",
                    (skill_id,),
                )
                row = await self._fetchone(
                    "SELECT * FROM chats WHERE id = ?",
                    (cursor.lastrowid,),
                )
                created = True
        return dict(row), created

    async def get_chat(self, chat_id: int) -> Optional[Dict[str, Any]]:
        row = await self._fetchone(
            "SELECT * FROM chats WHERE id = ?",
            (chat_id,),
        )
        return dict(row) if row else None

    async def get_user_chats(self, user_id: int) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT c.*,
                   s.skill AS skill_title,
                   (SELECT m.text FROM messages m
                    WHERE m.chat_id = c.id ORDER BY m.id DESC LIMIT 1) AS last_text,
                   (SELECT m.created_at FROM messages m
                    WHERE m.chat_id = c.id ORDER BY m.id DESC LIMIT 1) AS last_at,
                   (SELECT COUNT(*) FROM messages m
                    WHERE m.chat_id = c.id AND m.sender_id != ? AND m.is_read = 0) AS unread
            FROM chats c
            JOIN skills s ON s.id = c.skill_id
            WHERE c.client_id = ? OR c.master_id = ?
            ORDER BY c.updated_at DESC, c.id DESC
            """,
            (user_id, user_id, user_id),
        )
        return [dict(row) for row in rows]

    async def get_messages(
        self, chat_id: int, after_id: int = 0, limit: int = 200
    ) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT id, chat_id, sender_id, text, is_read, created_at
            FROM messages
            WHERE chat_id = ? AND id > ?
            ORDER BY id
            LIMIT ?
            """,
            (chat_id, after_id, limit),
        )
        return [self._row_to_message(row) for row in rows]

    async def mark_messages_read(self, chat_id: int, reader_id: int) -> int:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE messages SET is_read = 1
                WHERE chat_id = ? AND sender_id != ? AND is_read = 0
                """,
                (chat_id, reader_id),
            )
        return cursor.rowcount

    async def add_message(
        self,
        chat_id: int,
        sender_id: int,
        text: str,
        notice: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "INSERT INTO messages (chat_id, sender_id, text) VALUES (?, ?, ?)",
                (chat_id, sender_id, text),
            )
            await conn.execute(
                "UPDATE chats SET updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (chat_id,),
            )
            if notice:
                await self._insert_notification(conn, notice)
            row = await self._fetchone(
                """
                SELECT id, chat_id, sender_id, text, is_read, created_at
                FROM messages WHERE id = ?
                """,
                (cursor.lastrowid,),
            )
        return self._row_to_message(row)

    async def chat_has_message_from(self, chat_id: int, sender_id: int) -> bool:
        row = await self._fetchone(
            "SELECT 1 FROM messages WHERE chat_id = ? AND sender_id = ? LIMIT 1",
            (chat_id, sender_id),
        )
        return row is not None

    # deals

    async def create_deal(
        self,
        chat: Dict[str, Any],
        totals: Dict[str, int],
        description: str,
        notice: Optional[Dict[str, Any]] = None,
    ) -> int:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO deals (
                    chat_id, skill_id, client_id, master_id, description,
                    amount, commission, master_payout
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    chat["id"],
                    chat["skill_id"],
                    chat["client_id"],
                    chat["master_id"],
                    description,
                    totals["amount"],
                    totals["commission"],
                    totals["master_payout"],
                ),
            )
            if notice:
                await self._insert_notification(conn, notice)
        return cursor.lastrowid

    async def get_deal(self, deal_id: int) -> Optional[Dict[str, Any]]:
        row = await self._fetchone(
            """
            SELECT d.*, s.skill AS skill_title
            FROM deals d
            LEFT JOIN skills s ON s.id = d.skill_id
            WHERE d.id = ?
            """,
            (deal_id,),
        )
        return self._row_to_deal(row) if row else None

    async def get_user_deals(
        self, user_id: int, status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        query = """
            SELECT d.*, s.skill AS skill_title
            FROM deals d
            LEFT JOIN skills s ON s.id = d.skill_id
            WHERE (d.client_id = ? OR d.master_id = ?)
        """
        params: List[Any] = [user_id, user_id]
        if status:
            query += " AND d.status = ?"
            params.append(status)
        query += " ORDER BY d.id DESC"
        rows = await self._fetchall(query, tuple(params))
        return [self._row_to_deal(row) for row in rows]

    async def update_deal_terms(
        self,
        deal_id: int,
        totals: Dict[str, int],
        description: str,
        notice: Optional[Dict[str, Any]] = None,
    ) -> bool:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE deals
                SET amount = ?, commission = ?, master_payout = ?, description = ?,
                    client_signed = 0, master_signed = 0, status = 'draft',
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status IN ('draft', 'pending_signature')
                """,
                (
                    totals["amount"],
                    totals["commission"],
                    totals["master_payout"],
                    description,
                    deal_id,
                ),
            )
            if cursor.rowcount == 0:
                return False
            if notice:
                await self._insert_notification(conn, notice)
        return True

    async def sign_deal(
        self,
        deal: Dict[str, Any],
        role: str,
        new_status: str,
        notice: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Set one signature, guarded on the state the caller observed."""
        column = "client_signed" if role == "client" else "master_signed"
        async with self.transaction() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE deals
                SET {column} = 1,
                    status = ?,
                    activated_at = CASE WHEN ? = 'active'
                        THEN CURRENT_TIMESTAMP ELSE activated_at END,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status = ? AND {column} = 0
                  AND client_signed = ? AND master_signed = ?
                """,
                (
                    new_status,
                    new_status,
                    deal["id"],
                    deal["status"],
                    int(deal["client_signed"]),
                    int(deal["master_signed"]),
                ),
            )
            if cursor.rowcount == 0:
                return False
            if notice:
                await self._insert_notification(conn, notice)
        return True

    async def complete_deal(
        self,
        deal: Dict[str, Any],
        master_stars: int,
        client_stars: int,
        notice: Optional[Dict[str, Any]] = None,
    ) -> bool:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE deals
                SET status = 'completed', completed_at = CURRENT_TIMESTAMP,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status = 'active'
                """,
                (deal["id"],),
            )
            if cursor.rowcount == 0:
                return False
            await self._add_stars(
                conn, deal["master_id"], master_stars, "deal_completed", deal["id"]
            )
            await self._add_stars(
                conn, deal["client_id"], client_stars, "deal_completed", deal["id"]
            )
            if notice:
                await self._insert_notification(conn, notice)
        return True

    async def cancel_deal(
        self,
        deal_id: int,
        user_id: int,
        notice: Optional[Dict[str, Any]] = None,
    ) -> bool:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE deals
                SET status = 'cancelled', cancelled_at = CURRENT_TIMESTAMP,
                    cancelled_by = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status IN ('draft', 'pending_signature', 'active')
                """,
                (user_id, deal_id),
            )
            if cursor.rowcount == 0:
                return False
            if notice:
                await self._insert_notification(conn, notice)
        return True

    # reviews

    async def create_review(self, review: Dict[str, Any]) -> Optional[int]:
        try:
            async with self.transaction() as conn:
                cursor = await conn.execute(
                    """
                    INSERT INTO reviews (
                        skill_id, master_id, author_id, deal_id, chat_id,
                        quality, speed, communication, price, overall, comment
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        review["skill_id"],
                        review["master_id"],
                        review["author_id"],
                        review.get("deal_id"),
                        review.get("chat_id"),
                        review["quality"],
                        review["speed"],
                        review["communication"],
                        review["price"],
                        review["overall"],
                        review.get("comment"),
                    ),
                )
                await conn.execute(
                    """
                    UPDATE skills
                    SET rating_avg = (
                            SELECT ROUND(AVG(overall), 2) FROM reviews WHERE skill_id = ?
                        ),
                        rating_count = (
                            SELECT COUNT(*) FROM reviews WHERE skill_id = ?
                        )
                    WHERE id = ?
                    """,
                    (review["skill_id"], review["skill_id"], review["skill_id"]),
                )
        except aiosqlite.IntegrityError:
            return None
        return cursor.lastrowid

    async def has_review(
        self,
        author_id: int,
        deal_id: Optional[int] = None,
        chat_id: Optional[int] = None,
    ) -> bool:
        if deal_id is not None:
            row = await self._fetchone(
                "SELECT 1 FROM reviews WHERE author_id = ? AND deal_id = ?",
                (author_id, deal_id),
            )
        else:
            row = await self._fetchone(
                "SELECT 1 FROM reviews WHERE author_id = ? AND chat_id = ?",
                (author_id, chat_id),
            )
        return row is not None

    async def get_skill_reviews(self, skill_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT r.*, u.username AS author_username, u.first_name AS author_first_name,
                   p.display_name AS author_display_name
            FROM reviews r
            LEFT JOIN users u ON u.id = r.author_id
            LEFT JOIN profiles p ON p.user_id = r.author_id
            WHERE r.skill_id = ?
            ORDER BY r.id DESC
            LIMIT ?
            """,
            (skill_id, limit),
        )
        return [dict(row) for row in rows]

    async def get_master_rating(self, master_id: int) -> Dict[str, Any]:
        row = await self._fetchone(
            """
            SELECT ROUND(AVG(overall), 2) AS average, COUNT(*) AS total,
                   ROUND(AVG(quality), 2) AS quality, ROUND(AVG(speed), 2) AS speed,
                   ROUND(AVG(communication), 2) AS communication,
                   ROUND(AVG(price), 2) AS price
            FROM reviews WHERE master_id = ?
            """,
            (master_id,),
        )
        total = int(row["total"]) if row else 0
        if not total:
            return {"average": 0.0, "count": 0}
        return {
            "average": float(row["average"]),
            "count": total,
            "quality": float(row["quality"]),
            "speed": float(row["speed"]),
            "communication": float(row["communication"]),
            "price": float(row["price"]),
        }

    # notifications

    async def _insert_notification(
        self, conn: aiosqlite.Connection, notice: Dict[str, Any]
    ) -> None:
        payload = notice.get("payload")
        await conn.execute(
            """
            INSERT INTO notifications (user_id, kind, text, payload_json)
            VALUES (?, ?, ?, ?)
            """,
            (
                notice["user_id"],
                notice["kind"],
                notice["text"],
                json.dumps(payload, ensure_ascii=False) if payload else None,
            ),
        )

    async def add_notification(self, notice: Dict[str, Any]) -> None:
        async with self.transaction() as conn:
            await self._insert_notification(conn, notice)

    async def get_notifications(
        self, user_id: int, unread_only: bool = False, limit: int = 50
    ) -> List[Dict[str, Any]]:
        query = """
            SELECT id, kind, text, payload_json, is_read, created_at
            FROM notifications WHERE user_id = ?
        """
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY id DESC LIMIT ?"
        rows = await self._fetchall(query, (user_id, limit))
        return [
            {
                "id": row["id"],
                "kind": row["kind"],
                "text": row["text"],
                "payload": json.loads(row["payload_json"]) if row["payload_json"] else None,
                "is_read": bool(row["is_read"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def count_unread_notifications(self, user_id: int) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS total FROM notifications WHERE user_id = ? AND is_read = 0",
            (user_id,),
        )
        return int(row["total"]) if row else 0

    async def mark_notifications_read(
        self, user_id: int, ids: Optional[List[int]] = None
    ) -> int:
        query = "UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0"
        params: List[Any] = [user_id]
        if ids:
            query += f" AND id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        async with self.transaction() as conn:
            cursor = await conn.execute(query, tuple(params))
        return cursor.rowcount

    # helpers

    async def _fetchone(self, query: str, params: tuple) -> Optional[aiosqlite.Row]:
        assert self.conn is not None
        async with self.conn.execute(query, params) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, query: str, params: tuple) -> List[aiosqlite.Row]:
        assert self.conn is not None
        async with self.conn.execute(query, params) as cursor:
            return await cursor.fetchall()

    def _skill_select(self) -> str:
        return """
            SELECT s.*, u.tg_id AS owner_tg_id, u.username AS owner_username,
                   u.first_name AS owner_first_name, u.last_name AS owner_last_name,
                   p.display_name AS owner_display_name,
                   p.premium_until AS owner_premium_until
            FROM skills s
            JOIN users u ON u.id = s.user_id
            LEFT JOIN profiles p ON p.user_id = s.user_id
        """

    def _row_to_skill(self, row: aiosqlite.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "skill": row["skill"],
            "experience": row["experience"],
            "description": row["description"],
            "category": row["category"],
            "price": row["price"],
            "city": row["city"],
            "lat": row["lat"],
            "lon": row["lon"],
            "rating_avg": float(row["rating_avg"] or 0),
            "rating_count": row["rating_count"],
            "views": row["views"],
            "contacts": row["contacts"],
            "is_active": bool(row["is_active"]),
            "boosted_until": row["boosted_until"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "owner": {
                "id": row["user_id"],
                "username": row["owner_username"],
                "first_name": row["owner_first_name"],
                "last_name": row["owner_last_name"],
                "display_name": row["owner_display_name"],
                "premium_until": row["owner_premium_until"],
            },
        }

    def _row_to_message(self, row: aiosqlite.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "chat_id": row["chat_id"],
            "sender_id": row["sender_id"],
            "text": row["text"],
            "is_read": bool(row["is_read"]),
            "created_at": row["created_at"],
        }

    def _row_to_deal(self, row: aiosqlite.Row) -> Dict[str, Any]:
        deal = dict(row)
        deal["client_signed"] = bool(deal["client_signed"])
        deal["master_signed"] = bool(deal["master_signed"])
        return deal

    async def _ensure_column(self, table: str, column: str, column_type: str) -> None:
        assert self.conn is not None
        try:
            await self.conn.execute(
                f"ALTER TABLE {table} ADD COLUMN {column} {column_type}"
            )
        except aiosqlite.OperationalError:
            return
