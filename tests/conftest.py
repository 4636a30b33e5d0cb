import itertools
import os
import tempfile
from types import SimpleNamespace

# Env phải set trước khi import billsledger (config đọc lúc import)
_TMP_DIR = tempfile.mkdtemp(prefix="bills-ledger-tests-")
os.environ["DATABASE_URL"] = f"sqlite+pysqlite:///{_TMP_DIR}/test.db"
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
from fastapi.testclient import TestClient

from billsledger.db import Base, engine
from billsledger.main import create_app


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the session store."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, key):
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self.data[key] = value
        return True

    async def delete(self, *keys):
        return sum(self.data.pop(k, None) is not None for k in keys)

    async def ping(self):
        return True

    async def aclose(self):
        return None


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def app():
    app = create_app()
    app.state.redis = FakeRedis()
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user(client):
    counter = itertools.count(1)

    def _make(name: str | None = None):
        name = name or f"user{next(counter)}"
        r = client.post(
            "/api/auth/register",
            json={
                "email": f"{name}@example.com",
                "username": name,
                "full_name": name.title(),
                "password": "secret123",
            },
        )
        assert r.status_code == 201, r.text
        body = r.json()
        token = body["token"]
        return SimpleNamespace(
            id=body["user"]["id"],
            name=name,
            token=token,
            headers={"Authorization": f"Bearer {token}"},
        )

    return _make
