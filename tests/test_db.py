import asyncio
from datetime import timedelta

from umeyka.market import deal_totals, parse_iso, status_after_sign, utcnow
from umeyka.referrals import redeem_referral

from conftest import TgStub


async def _pair(db):
    master_id = await db.upsert_user(TgStub(1, "master", "Мастер"))
    client_id = await db.upsert_user(TgStub(2, "client", "Клиент"))
    skill_id = await db.create_skill(
        master_id, {"skill": "Плитка", "experience": "5 лет", "price": 1500}
    )
    chat, _ = await db.get_or_create_chat(client_id, master_id, skill_id)
    return master_id, client_id, skill_id, chat


async def _ledger_sum(db, user_id):
    return sum(entry["delta"] for entry in await db.get_star_history(user_id, limit=1000))


async def test_upsert_user_creates_profile_once(db):
    first = await db.upsert_user(TgStub(42, "old"))
    second = await db.upsert_user(TgStub(42, "new"))
    assert first == second
    user = await db.get_user(first)
    assert user["username"] == "new"
    assert user["stars"] == 0
    assert len(user["referral_code"]) == 8
    assert await db.get_user_id_by_referral_code(user["referral_code"]) == first


async def test_concurrent_upserts_do_not_duplicate(db):
    ids = await asyncio.gather(*(db.upsert_user(TgStub(7)) for _ in range(5)))
    assert len(set(ids)) == 1


async def test_star_balance_never_negative(db):
    user_id = await db.upsert_user(TgStub(5))
    assert await db.adjust_stars(user_id, 10, "referral_bonus")
    assert not await db.adjust_stars(user_id, -11, "premium")
    assert await db.get_stars(user_id) == 10
    history = await db.get_star_history(user_id)
    assert sum(entry["delta"] for entry in history) == 10


async def test_apply_referral_only_once(db):
    referrer = await db.upsert_user(TgStub(10))
    invited = await db.upsert_user(TgStub(11))
    assert await db.apply_referral(invited, referrer, 10, 5)
    assert not await db.apply_referral(invited, referrer, 10, 5)
    assert await db.get_stars(referrer) == 10
    assert await db.get_stars(invited) == 5
    user = await db.get_user(referrer)
    assert user["referral_count"] == 1
    notifications = await db.get_notifications(referrer)
    assert notifications[0]["kind"] == "referral"


async def test_chat_creation_counts_contact_once(db):
    master_id, client_id, skill_id, chat = await _pair(db)
    again, created = await db.get_or_create_chat(client_id, master_id, skill_id)
    assert not created and again["id"] == chat["id"]
    skill = await db.get_skill(skill_id)
    assert skill["contacts"] == 1


async def test_messages_unread_tracking(db):
    master_id, client_id, _, chat = await _pair(db)
    await db.add_message(chat["id"], client_id, "Здравствуйте")
    await db.add_message(chat["id"], client_id, "Вы свободны?")
    chats = await db.get_user_chats(master_id)
    assert chats[0]["unread"] == 2
    assert chats[0]["last_text"] == "Вы свободны?"
    assert await db.mark_messages_read(chat["id"], master_id) == 2
    chats = await db.get_user_chats(master_id)
    assert chats[0]["unread"] == 0


async def test_sign_rejects_stale_state(db):
    master_id, client_id, _, chat = await _pair(db)
    deal_id = await db.create_deal(chat, deal_totals(1000), "Укладка")
    deal = await db.get_deal(deal_id)
    assert await db.sign_deal(deal, "client", status_after_sign(True, False))
    # the same observed state cannot be applied twice
    assert not await db.sign_deal(deal, "master", status_after_sign(False, True))
    fresh = await db.get_deal(deal_id)
    assert fresh["status"] == "pending_signature"
    assert await db.sign_deal(fresh, "master", status_after_sign(True, True))
    active = await db.get_deal(deal_id)
    assert active["status"] == "active"
    assert active["activated_at"] is not None


async def test_complete_awards_stars_once(db):
    master_id, client_id, _, chat = await _pair(db)
    deal_id = await db.create_deal(chat, deal_totals(1000), "")
    deal = await db.get_deal(deal_id)
    await db.sign_deal(deal, "client", "pending_signature")
    deal = await db.get_deal(deal_id)
    await db.sign_deal(deal, "master", "active")
    deal = await db.get_deal(deal_id)
    assert await db.complete_deal(deal, 5, 2)
    assert not await db.complete_deal(deal, 5, 2)
    assert await db.get_stars(master_id) == 5
    assert await db.get_stars(client_id) == 2
    assert await _ledger_sum(db, master_id) == 5
    assert not await db.cancel_deal(deal_id, client_id)


async def test_update_terms_resets_signatures(db):
    _, _, _, chat = await _pair(db)
    deal_id = await db.create_deal(chat, deal_totals(1000), "")
    deal = await db.get_deal(deal_id)
    await db.sign_deal(deal, "client", "pending_signature")
    assert await db.update_deal_terms(deal_id, deal_totals(2000), "Больше работы")
    deal = await db.get_deal(deal_id)
    assert deal["status"] == "draft"
    assert not deal["client_signed"]
    assert deal["commission"] == 100
    assert deal["master_payout"] == 1900


async def test_review_recomputes_skill_rating(db):
    master_id, client_id, skill_id, chat = await _pair(db)
    other_id = await db.upsert_user(TgStub(3))
    base = {"skill_id": skill_id, "master_id": master_id, "speed": 5,
            "communication": 5, "price": 5, "quality": 5}
    assert await db.create_review({**base, "author_id": client_id, "chat_id": chat["id"],
                                   "overall": 5.0})
    other_chat, _ = await db.get_or_create_chat(other_id, master_id, skill_id)
    assert await db.create_review({**base, "author_id": other_id, "chat_id": other_chat["id"],
                                   "overall": 4.0, "quality": 1})
    skill = await db.get_skill(skill_id)
    assert skill["rating_avg"] == 4.5
    assert skill["rating_count"] == 2
    duplicate = await db.create_review({**base, "author_id": client_id,
                                        "chat_id": chat["id"], "overall": 1.0})
    assert duplicate is None
    skill = await db.get_skill(skill_id)
    assert skill["rating_count"] == 2
    rating = await db.get_master_rating(master_id)
    assert rating["count"] == 2 and rating["average"] == 4.5


async def test_soft_delete_hides_skill(db):
    master_id = await db.upsert_user(TgStub(1))
    skill_id = await db.create_skill(master_id, {"skill": "Стрижка", "price": 500})
    await db.deactivate_skill(skill_id)
    assert await db.get_skill(skill_id) is None
    assert (await db.get_skill(skill_id, include_inactive=True))["is_active"] is False
    assert await db.list_active_skills() == []
    assert await db.count_active_skills(master_id) == 0


async def test_skill_without_experience_gets_defaults(db):
    master_id = await db.upsert_user(TgStub(1))
    skill_id = await db.create_skill(master_id, {"skill": "Стрижка"})
    skill = await db.get_skill(skill_id)
    assert skill["experience"] == ""
    assert skill["price"] == 0


async def test_skill_limit_holds_under_concurrent_creates(db):
    master_id = await db.upsert_user(TgStub(1))
    results = await asyncio.gather(
        *(db.create_skill(master_id, {"skill": f"Умейка {i}"}, 5) for i in range(8))
    )
    assert len([r for r in results if r is not None]) == 5
    assert results.count(None) == 3
    assert await db.count_active_skills(master_id) == 5


async def test_concurrent_premium_purchases_both_extend(db):
    user_id = await db.upsert_user(TgStub(5))
    await db.adjust_stars(user_id, 200, "referral_bonus")
    results = await asyncio.gather(
        db.buy_premium(user_id, 100, 30), db.buy_premium(user_id, 100, 30)
    )
    assert all(results)
    user = await db.get_user(user_id)
    assert user["stars"] == 0
    assert parse_iso(user["premium_until"]) >= utcnow() + timedelta(days=59)
    assert await _ledger_sum(db, user_id) == user["stars"]


async def test_premium_refused_without_stars(db):
    user_id = await db.upsert_user(TgStub(5))
    await db.adjust_stars(user_id, 99, "referral_bonus")
    assert await db.buy_premium(user_id, 100, 30) is None
    user = await db.get_user(user_id)
    assert user["premium_until"] is None
    assert user["stars"] == 99


async def test_concurrent_boosts_both_extend(db):
    master_id = await db.upsert_user(TgStub(1))
    skill_id = await db.create_skill(master_id, {"skill": "Плитка"})
    await db.adjust_stars(master_id, 40, "referral_bonus")
    results = await asyncio.gather(
        db.boost_skill(skill_id, master_id, 20, 7),
        db.boost_skill(skill_id, master_id, 20, 7),
        db.boost_skill(skill_id, master_id, 20, 7),
    )
    assert results.count(None) == 1
    skill = await db.get_skill(skill_id)
    assert parse_iso(skill["boosted_until"]) >= utcnow() + timedelta(days=13)
    assert await db.get_stars(master_id) == 0
    assert await _ledger_sum(db, master_id) == 0


async def test_circular_referral_race_applies_once(db):
    first = await db.upsert_user(TgStub(10))
    second = await db.upsert_user(TgStub(11))
    first_code = (await db.get_user(first))["referral_code"]
    second_code = (await db.get_user(second))["referral_code"]
    outcomes = await asyncio.gather(
        redeem_referral(db, first, second_code),
        redeem_referral(db, second, first_code),
    )
    assert [ok for ok, _ in outcomes].count(True) == 1
    first_user = await db.get_user(first)
    second_user = await db.get_user(second)
    assert not (first_user["referred_by"] == second and second_user["referred_by"] == first)
    assert first_user["stars"] + second_user["stars"] == 15
    assert await _ledger_sum(db, first) == first_user["stars"]
    assert await _ledger_sum(db, second) == second_user["stars"]
