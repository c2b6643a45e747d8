import os
import tempfile

# Point the app at a throwaway database before qrvault is imported
_tmp = tempfile.mkdtemp(prefix="qrvault-test-")
os.environ["DATA_DIR"] = _tmp
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_tmp}/test.db"
os.environ.setdefault("JWT_SECRET", "test-access-secret")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret")

import asyncio

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import update

from qrvault import store
from qrvault.database import AsyncSessionLocal, Base, User, engine
from qrvault.limiter import limiter
from qrvault.main import app

PASSWORD = "Str0ng!Pass"


async def _reset_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def _update_user(email, **values):
    async with AsyncSessionLocal() as session:
        await session.execute(update(User).where(User.email == email).values(**values))
        await session.commit()


def update_user(email, **values):
    """Change a user row directly (roles, quotas) outside the API."""
    asyncio.run(_update_user(email, **values))


def bearer(tokens):
    return {"Authorization": f"Bearer {tokens['accessToken']}"}


@pytest.fixture
def client():
    asyncio.run(_reset_db())
    store.set_redis(fakeredis.aioredis.FakeRedis(decode_responses=True))
    limiter.reset()
    with TestClient(app) as c:
        yield c
    store.set_redis(None)


@pytest.fixture
def register(client):
    def _register(email="alice@example.com", password=PASSWORD, name="Alice", **headers):
        resp = client.post(
            "/api/auth/register",
            json={"email": email, "password": password, "name": name},
            headers=headers or None,
        )
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]
    return _register


@pytest.fixture
def login(client):
    def _login(email="alice@example.com", password=PASSWORD, totp_code=None, headers=None):
        body = {"email": email, "password": password}
        if totp_code:
            body["totp_code"] = totp_code
        return client.post("/api/auth/login", json=body, headers=headers)
    return _login


@pytest.fixture
def alice(register):
    data = register()
    return bearer(data["tokens"])
