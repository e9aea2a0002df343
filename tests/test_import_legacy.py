import json
import sqlite3

import pytest

from tools.import_legacy_json import pick_coords, run_import, to_timestamp


LEGACY = {
    "users": {
        "555": {"username": "old_master", "firstName": "Иван", "stars": 12},
    },
    "skills": [
        {
            "_id": "abc123",
            "userId": 555,
            "skill": "Сантехник",
            "experience": "3 года",
            "price": "2000",
            "location": {"lat": 55.7, "lng": 37.6},
            "rating": {"average": 4.666, "count": 3},
            "views": 17,
            "contacts": 2,
            "createdAt": "2024-03-01T10:00:00.000Z",
        },
        {
            "_id": "def456",
            "userId": "777",
            "skill": "Репетитор",
            "isActive": False,
        },
        {"_id": "broken", "userId": 555, "skill": ""},
    ],
}


def _write_legacy(tmp_path, payload=LEGACY):
    path = tmp_path / "db.json"
    path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
    return path


def test_to_timestamp():
    assert to_timestamp("2024-03-01T10:00:00.000Z") == "2024-03-01 10:00:00"
    assert to_timestamp("yesterday") is None


def test_pick_coords():
    assert pick_coords({"location": {"lat": 1.5, "lng": 2.5}}) == (1.5, 2.5)
    assert pick_coords({"location": {"lat": 100, "lng": 2.5}}) == (None, None)
    assert pick_coords({}) == (None, None)


async def test_import_skills_and_users(db, tmp_path):
    result = run_import(db.path, _write_legacy(tmp_path))
    assert result == {"imported": 2, "skipped": 1, "users": 1}

    conn = sqlite3.connect(db.path)
    try:
        rows = conn.execute(
            "SELECT legacy_id, price, lat, rating_avg, rating_count, views, is_active, created_at"
            " FROM skills ORDER BY id"
        ).fetchall()
        stars = conn.execute(
            "SELECT p.stars FROM profiles p JOIN users u ON u.id = p.user_id WHERE u.tg_id = 555"
        ).fetchone()[0]
        ledger = conn.execute(
            "SELECT reason, delta FROM star_transactions"
        ).fetchall()
    finally:
        conn.close()
    assert rows[0] == ("abc123", 2000, 55.7, 4.67, 3, 17, 1, "2024-03-01 10:00:00")
    assert rows[1][0] == "def456" and rows[1][6] == 0
    assert stars == 12
    assert ledger == [("legacy_import", 12)]

    skill = await db.get_skill(1)
    assert skill["owner"]["username"] == "old_master"


async def test_import_is_idempotent(db, tmp_path):
    legacy = _write_legacy(tmp_path)
    run_import(db.path, legacy)
    again = run_import(db.path, legacy)
    assert again == {"imported": 0, "skipped": 3, "users": 0}


def test_missing_database(tmp_path):
    with pytest.raises(SystemExit):
        run_import(tmp_path / "nope.db", _write_legacy(tmp_path))
