import dataclasses
import time

import webapp.app as app_module

from conftest import auth_headers, make_init_data


LAPTOP = {
    "skill": "Ремонт ноутбуков",
    "experience": "10 лет",
    "category": "Техника",
    "price": 1500,
    "city": "Москва",
    "lat": 55.75,
    "lon": 37.61,
}


def _create_skill(client, headers, **overrides):
    response = client.post("/api/skills", json={**LAPTOP, **overrides}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["skill"]


def _open_chat(client, headers, skill_id):
    response = client.post("/api/chats", json={"skill_id": skill_id}, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()["chat"]


def _active_deal(client, master, customer, amount=1000):
    skill = _create_skill(client, master)
    chat = _open_chat(client, customer, skill["id"])
    response = client.post(
        "/api/deals",
        json={"chat_id": chat["id"], "amount": amount, "description": "Замена экрана"},
        headers=customer,
    )
    assert response.status_code == 201, response.text
    deal = response.json()["deal"]
    assert client.post(f"/api/deals/{deal['id']}/sign", headers=customer).status_code == 200
    assert client.post(f"/api/deals/{deal['id']}/sign", headers=master).status_code == 200
    return deal


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "OK", "message": "Server is running"}


def test_protected_route_requires_auth(client):
    response = client.get("/api/profile")
    assert response.status_code == 401
    assert response.json()["success"] is False


def test_tampered_init_data_is_rejected(client):
    init_data = make_init_data(1001).replace("query_id=AAHtest", "query_id=AAHfake")
    response = client.get("/api/profile", headers={"X-Telegram-Init-Data": init_data})
    assert response.status_code == 401


def test_expired_init_data_is_rejected(client):
    headers = auth_headers(1001, auth_date=int(time.time()) - 3 * 86400)
    assert client.get("/api/profile", headers=headers).status_code == 401


def test_undated_init_data_is_rejected(client):
    headers = {"X-Telegram-Init-Data": make_init_data(1001, dated=False)}
    assert client.get("/api/profile", headers=headers).status_code == 401
    response = client.post(
        "/api/auth/telegram/init", json={"init_data": make_init_data(1001, dated=False)}
    )
    assert response.status_code == 401


def test_init_returns_working_token(client):
    response = client.post(
        "/api/auth/telegram/init", json={"init_data": make_init_data(1001, username="master")}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["user"]["username"] == "master"
    assert body["profile"]["stars"] == 0
    token = body["token"]
    profile = client.get("/api/profile", headers={"Authorization": f"Bearer {token}"})
    assert profile.status_code == 200
    assert profile.json()["profile"]["id"] == body["user"]["id"]
    bad = client.get("/api/profile", headers={"Authorization": f"Bearer {token}x"})
    assert bad.status_code == 401


def test_validation_error_envelope(client, master):
    response = client.post("/api/skills", json={"price": 10}, headers=master)
    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["details"]


def test_skill_crud_and_permissions(client, master, stranger):
    skill = _create_skill(client, master)
    assert skill["owner"]["username"] == "master"
    assert skill["is_boosted"] is False

    forbidden = client.put(f"/api/skills/{skill['id']}", json={"price": 1}, headers=stranger)
    assert forbidden.status_code == 403

    updated = client.put(f"/api/skills/{skill['id']}", json={"price": 2000}, headers=master)
    assert updated.status_code == 200
    assert updated.json()["skill"]["price"] == 2000

    detail = client.get(f"/api/skills/{skill['id']}")
    assert detail.json()["skill"]["views"] == 1

    assert client.delete(f"/api/skills/{skill['id']}", headers=stranger).status_code == 403
    assert client.delete(f"/api/skills/{skill['id']}", headers=master).status_code == 200
    assert client.get(f"/api/skills/{skill['id']}").status_code == 404
    assert client.get("/api/my/skills", headers=master).json()["items"] == []


def test_skill_rejects_half_coordinates(client, master):
    response = client.post("/api/skills", json={**LAPTOP, "lon": None}, headers=master)
    assert response.status_code == 400


def test_free_skill_limit(client, master):
    for i in range(5):
        _create_skill(client, master, skill=f"Умейка {i}")
    response = client.post("/api/skills", json=LAPTOP, headers=master)
    assert response.status_code == 400
    assert response.json()["success"] is False
    profile = client.get("/api/profile", headers=master).json()["profile"]
    assert profile["active_skills"] == 5 and profile["skill_limit"] == 5


def test_search_filters_and_pagination(client, master, customer):
    _create_skill(client, master)
    _create_skill(client, master, skill="Укладка плитки", category="Ремонт", price=800,
                  city="Санкт-Петербург", lat=59.93, lon=30.33)
    _create_skill(client, customer, skill="Стрижка", category="Красота", price=500,
                  lat=None, lon=None, city=None)

    found = client.get("/api/skills", params={"q": "НОУТБУК"}).json()
    assert [s["skill"] for s in found["items"]] == ["Ремонт ноутбуков"]

    cheap = client.get("/api/skills", params={"max_price": 900, "sort": "price_asc"}).json()
    assert [s["price"] for s in cheap["items"]] == [500, 800]

    near = client.get(
        "/api/skills", params={"lat": 55.76, "lon": 37.62, "radius_km": 50}
    ).json()
    assert near["total"] == 1
    assert near["items"][0]["distance_km"] < 5

    paged = client.get("/api/skills", params={"per_page": 2, "page": 2}).json()
    assert paged["total"] == 3 and paged["pages"] == 2 and len(paged["items"]) == 1

    categories = client.get("/api/categories").json()["categories"]
    assert {c["category"] for c in categories} == {"Техника", "Ремонт", "Красота"}

    assert client.get("/api/skills", params={"lat": 55.0}).status_code == 400


def test_chat_flow_and_unread(client, master, customer, stranger):
    skill = _create_skill(client, master)
    own = client.post("/api/chats", json={"skill_id": skill["id"]}, headers=master)
    assert own.status_code == 400

    chat = _open_chat(client, customer, skill["id"])
    again = client.post("/api/chats", json={"skill_id": skill["id"]}, headers=customer)
    assert again.json()["created"] is False
    assert again.json()["chat"]["id"] == chat["id"]

    sent = client.post(
        f"/api/chats/{chat['id']}/messages", json={"text": "Здравствуйте!"}, headers=customer
    )
    assert sent.status_code == 201
    blank = client.post(
        f"/api/chats/{chat['id']}/messages", json={"text": "   "}, headers=customer
    )
    assert blank.status_code == 400

    chats = client.get("/api/chats", headers=master).json()["items"]
    assert chats[0]["unread"] == 1
    assert chats[0]["role"] == "master"
    assert chats[0]["counterpart"]["username"] == "client"

    messages = client.get(f"/api/chats/{chat['id']}/messages", headers=master).json()
    assert [m["text"] for m in messages["messages"]] == ["Здравствуйте!"]
    assert client.get("/api/chats", headers=master).json()["items"][0]["unread"] == 0

    denied = client.get(f"/api/chats/{chat['id']}/messages", headers=stranger)
    assert denied.status_code == 403

    notifications = client.get("/api/notifications", headers=master).json()
    assert notifications["unread"] == 1
    assert notifications["items"][0]["kind"] == "message"

    detail = client.get(f"/api/skills/{skill['id']}").json()["skill"]
    assert detail["contacts"] == 1


def test_deal_lifecycle(client, master, customer):
    skill = _create_skill(client, master)
    chat = _open_chat(client, customer, skill["id"])
    created = client.post(
        "/api/deals", json={"chat_id": chat["id"], "amount": 1999}, headers=customer
    )
    assert created.status_code == 201
    deal = created.json()["deal"]
    assert deal["status"] == "draft"
    assert deal["commission"] == 100
    assert deal["master_payout"] == 1899

    signed = client.post(f"/api/deals/{deal['id']}/sign", headers=customer).json()["deal"]
    assert signed["status"] == "pending_signature"
    twice = client.post(f"/api/deals/{deal['id']}/sign", headers=customer)
    assert twice.status_code == 400

    edited = client.put(f"/api/deals/{deal['id']}", json={"amount": 3000}, headers=master)
    assert edited.json()["deal"]["status"] == "draft"
    assert edited.json()["deal"]["client_signed"] is False

    client.post(f"/api/deals/{deal['id']}/sign", headers=customer)
    active = client.post(f"/api/deals/{deal['id']}/sign", headers=master).json()["deal"]
    assert active["status"] == "active"
    assert active["amount"] == 3000

    assert client.put(
        f"/api/deals/{deal['id']}", json={"amount": 10}, headers=master
    ).status_code == 400
    assert client.post(f"/api/deals/{deal['id']}/complete", headers=master).status_code == 403

    done = client.post(f"/api/deals/{deal['id']}/complete", headers=customer)
    assert done.json()["deal"]["status"] == "completed"
    assert client.get("/api/stars", headers=master).json()["stars"] == 5
    assert client.get("/api/stars", headers=customer).json()["stars"] == 2

    assert client.post(f"/api/deals/{deal['id']}/cancel", headers=customer).status_code == 400
    listed = client.get("/api/deals", params={"status": "completed"}, headers=master).json()
    assert [d["id"] for d in listed["items"]] == [deal["id"]]


def test_deal_access_and_cancel(client, master, customer, stranger):
    skill = _create_skill(client, master)
    chat = _open_chat(client, customer, skill["id"])
    deal = client.post(
        "/api/deals", json={"chat_id": chat["id"], "amount": 500}, headers=master
    ).json()["deal"]
    assert client.get(f"/api/deals/{deal['id']}", headers=stranger).status_code == 403
    assert client.get(f"/api/deals/{deal['id']}", headers=master).json()["role"] == "master"
    cancelled = client.post(f"/api/deals/{deal['id']}/cancel", headers=customer).json()["deal"]
    assert cancelled["status"] == "cancelled"
    assert client.post(f"/api/deals/{deal['id']}/sign", headers=master).status_code == 400
    assert client.get("/api/deals", params={"status": "bogus"}, headers=master).status_code == 400


def test_deal_amount_bounds(client, master, customer):
    skill = _create_skill(client, master)
    chat = _open_chat(client, customer, skill["id"])
    response = client.post(
        "/api/deals", json={"chat_id": chat["id"], "amount": 0}, headers=customer
    )
    assert response.status_code == 422


def test_review_after_completed_deal(client, master, customer):
    deal = _active_deal(client, master, customer)
    scores = {"quality": 5, "speed": 4, "communication": 5, "price": 4}

    early = client.post("/api/reviews", json={"deal_id": deal["id"], **scores}, headers=customer)
    assert early.status_code == 400

    client.post(f"/api/deals/{deal['id']}/complete", headers=customer)
    by_master = client.post("/api/reviews", json={"deal_id": deal["id"], **scores}, headers=master)
    assert by_master.status_code == 403

    bad = client.post(
        "/api/reviews", json={"deal_id": deal["id"], **scores, "speed": 7}, headers=customer
    )
    assert bad.status_code == 400

    ok = client.post(
        "/api/reviews",
        json={"deal_id": deal["id"], **scores, "comment": "  Отлично  "},
        headers=customer,
    )
    assert ok.status_code == 201
    body = ok.json()
    assert body["review"]["overall"] == 4.5
    assert body["review"]["comment"] == "Отлично"
    assert body["skill_rating"] == {"average": 4.5, "count": 1}

    again = client.post("/api/reviews", json={"deal_id": deal["id"], **scores}, headers=customer)
    assert again.status_code == 409

    reviews = client.get(f"/api/skills/{deal['skill_id']}/reviews").json()["reviews"]
    assert len(reviews) == 1


def test_chat_review_needs_master_reply(client, master, customer):
    skill = _create_skill(client, master)
    chat = _open_chat(client, customer, skill["id"])
    scores = {"quality": 3, "speed": 3, "communication": 3, "price": 3}
    early = client.post("/api/reviews", json={"chat_id": chat["id"], **scores}, headers=customer)
    assert early.status_code == 400
    client.post(f"/api/chats/{chat['id']}/messages", json={"text": "Готов"}, headers=master)
    ok = client.post("/api/reviews", json={"chat_id": chat["id"], **scores}, headers=customer)
    assert ok.status_code == 201


def test_premium_requires_stars(client, master):
    response = client.post("/api/premium/buy", json={"months": 1}, headers=master)
    assert response.status_code == 400
    too_long = client.post("/api/premium/buy", json={"months": 13}, headers=master)
    assert too_long.status_code == 400


def test_premium_unlocks_accent_color(client, master, customer, monkeypatch):
    monkeypatch.setattr(
        app_module, "DEFAULTS", dataclasses.replace(app_module.DEFAULTS, premium_price_stars=3)
    )
    locked = client.put("/api/profile", json={"accent_color": "#ff8800"}, headers=master)
    assert locked.status_code == 403

    deal = _active_deal(client, master, customer)
    client.post(f"/api/deals/{deal['id']}/complete", headers=customer)

    bought = client.post("/api/premium/buy", json={"months": 1}, headers=master)
    assert bought.status_code == 200
    profile = bought.json()["profile"]
    assert profile["is_premium"] is True
    assert profile["stars"] == 2
    assert profile["skill_limit"] == 20

    bad = client.put("/api/profile", json={"accent_color": "orange"}, headers=master)
    assert bad.status_code == 400
    ok = client.put("/api/profile", json={"accent_color": "#ff8800"}, headers=master)
    assert ok.json()["profile"]["accent_color"] == "#ff8800"

    history = client.get("/api/stars", headers=master).json()["history"]
    assert [h["reason"] for h in history] == ["premium", "deal_completed"]


def test_referral_apply(client, master, customer):
    code = client.get("/api/referral", headers=master).json()["code"]
    link = client.get("/api/referral", headers=master).json()["link"]
    assert link.endswith(f"?start=ref_{code}")

    self_apply = client.post("/api/referral/apply", json={"code": code}, headers=master)
    assert self_apply.status_code == 400

    applied = client.post("/api/referral/apply", json={"code": code}, headers=customer)
    assert applied.status_code == 200
    assert applied.json()["stars"] == 5
    assert client.get("/api/stars", headers=master).json()["stars"] == 10

    twice = client.post("/api/referral/apply", json={"code": code}, headers=customer)
    assert twice.status_code == 400

    customer_code = client.get("/api/referral", headers=customer).json()["code"]
    circular = client.post("/api/referral/apply", json={"code": customer_code}, headers=master)
    assert circular.status_code == 400


def test_referral_via_start_param(client, master):
    code = client.get("/api/referral", headers=master).json()["code"]
    response = client.post(
        "/api/auth/telegram/init",
        json={"init_data": make_init_data(4004), "start_param": f"ref_{code}"},
    )
    body = response.json()
    assert body["referral_notice"]
    assert body["profile"]["stars"] == 5


def test_notifications_mark_read(client, master, customer):
    skill = _create_skill(client, master)
    chat = _open_chat(client, customer, skill["id"])
    for text in ("Раз", "Два"):
        client.post(f"/api/chats/{chat['id']}/messages", json={"text": text}, headers=customer)
    items = client.get("/api/notifications", headers=master).json()["items"]
    assert len(items) == 2
    marked = client.post(
        "/api/notifications/read", json={"ids": [items[0]["id"]]}, headers=master
    )
    assert marked.json()["updated"] == 1
    unread = client.get("/api/notifications", params={"unread": True}, headers=master).json()
    assert unread["unread"] == 1 and len(unread["items"]) == 1
    client.post("/api/notifications/read", json={}, headers=master)
    assert client.get("/api/notifications", headers=master).json()["unread"] == 0


def test_boost_costs_stars(client, master):
    skill = _create_skill(client, master)
    response = client.post(f"/api/skills/{skill['id']}/boost", headers=master)
    assert response.status_code == 400


def test_boost_extends_and_charges(client, master, customer, monkeypatch):
    monkeypatch.setattr(
        app_module, "DEFAULTS", dataclasses.replace(app_module.DEFAULTS, boost_price_stars=2)
    )
    deal = _active_deal(client, master, customer)
    client.post(f"/api/deals/{deal['id']}/complete", headers=customer)

    first = client.post(f"/api/skills/{deal['skill_id']}/boost", headers=master).json()
    second = client.post(f"/api/skills/{deal['skill_id']}/boost", headers=master).json()
    assert first["skill"]["is_boosted"] is True
    assert second["skill"]["boosted_until"] > first["skill"]["boosted_until"]
    assert second["stars"] == 1
