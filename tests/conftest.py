import hashlib
import hmac
import json
import os
import time
from urllib.parse import urlencode

os.environ["BOT_TOKEN"] = "123456:TEST-umeyka-token"
os.environ["BOT_USERNAME"] = "umeyka_test_bot"
os.environ["WEBAPP_AUTH_SECRET"] = "test-secret"
os.environ["WEB_APP_URL"] = ""

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from umeyka.db import Database  # noqa: E402
from umeyka.notify import Notifier  # noqa: E402
import webapp.app as app_module  # noqa: E402


BOT_TOKEN = os.environ["BOT_TOKEN"]


def make_init_data(
    tg_id, username=None, first_name="Тест", auth_date=None, dated=True, **extra
):
    user = json.dumps(
        {"id": tg_id, "first_name": first_name, "username": username},
        separators=(",", ":"),
        ensure_ascii=False,
    )
    pairs = {
        "query_id": "AAHtest",
        "user": user,
        **extra,
    }
    if dated:
        pairs["auth_date"] = str(auth_date or int(time.time()))
    data_check_string = "\n".join(f"{k}={pairs[k]}" for k in sorted(pairs))
    secret = hmac.new(b"WebAppData", BOT_TOKEN.encode("utf-8"), hashlib.sha256).digest()
    pairs["hash"] = hmac.new(
        secret, data_check_string.encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return urlencode(pairs)


def auth_headers(tg_id, **kwargs):
    return {"X-Telegram-Init-Data": make_init_data(tg_id, **kwargs)}


class TgStub:
    def __init__(self, id, username=None, first_name=None, last_name=None):
        self.id = id
        self.username = username
        self.first_name = first_name
        self.last_name = last_name


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "test.db")
    await database.connect()
    await database.init()
    yield database
    await database.close()


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(app_module, "db", Database(tmp_path / "api.db"))
    monkeypatch.setattr(app_module, "notifier", Notifier(""))
    with TestClient(app_module.app) as test_client:
        yield test_client


@pytest.fixture
def master():
    return auth_headers(1001, username="master", first_name="Мастер")


@pytest.fixture
def customer():
    return auth_headers(2002, username="client", first_name="Клиент")


@pytest.fixture
def stranger():
    return auth_headers(3003, username="stranger", first_name="Чужой")
