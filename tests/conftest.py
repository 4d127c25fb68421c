import time

import pytest
import redis
from flask import Flask
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

import gatekeeper as m

ACCESS_SECRET = "access-secret-for-tests-0123456789"
REFRESH_SECRET = "refresh-secret-for-tests-0123456789"


@pytest.fixture()
def app():
    app = Flask(__name__)
    app.config["TESTING"] = True
    return app


class Clock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, start: float):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> Clock:
    """
    Freeze ``time.time`` at the real current time.

    Starts at "now" because PyJWT checks exp/iat against the real wall clock;
    tests move it with ``clock.advance(...)``.
    """
    c = Clock(time.time())
    monkeypatch.setattr(time, "time", c)
    return c


class FakePipeline:
    def __init__(self, redis_: "FakeRedis"):
        self._redis = redis_
        self._ops: list[tuple[str, str]] = []

    def incr(self, key: str):
        self._ops.append(("incr", key))
        return self

    def pttl(self, key: str):
        self._ops.append(("pttl", key))
        return self

    def execute(self):
        self._redis._check()
        return [getattr(self._redis, op)(key) for op, key in self._ops]


class FakeRedis:
    """
    Minimal redis stub for RedisStore tests.
    Stores strings (decode_responses=True) with millisecond expiry.
    Set ``fail = True`` to make every call raise ConnectionError.
    """

    def __init__(self):
        self._store: dict[str, tuple[str, float | None]] = {}
        self.fail = False
        self.pexpire_calls: list[tuple[str, int]] = []

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("redis is down")

    def _live(self, key: str):
        item = self._store.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and time.time() >= expires_at:
            self._store.pop(key, None)
            return None
        return item

    def get(self, key: str):
        self._check()
        item = self._live(key)
        return item[0] if item else None

    def set(self, key: str, value: str, px: int | None = None):
        self._check()
        expires_at = time.time() + px / 1000 if px is not None else None
        self._store[key] = (value, expires_at)
        return True

    def delete(self, *keys: str):
        self._check()
        return sum(1 for k in keys if self._store.pop(k, None) is not None)

    def incr(self, key: str):
        self._check()
        item = self._live(key)
        value, expires_at = item if item else ("0", None)
        count = int(value) + 1
        self._store[key] = (str(count), expires_at)
        return count

    def pttl(self, key: str):
        self._check()
        item = self._live(key)
        if item is None:
            return -2
        if item[1] is None:
            return -1
        return round((item[1] - time.time()) * 1000)

    def pexpire(self, key: str, ms: int):
        self._check()
        self.pexpire_calls.append((key, ms))
        item = self._live(key)
        if item is None:
            return False
        self._store[key] = (item[0], time.time() + ms / 1000)
        return True

    def pipeline(self, transaction: bool = True):
        return FakePipeline(self)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


class BrokenStore:
    """KeyValueStore whose every operation fails like an unreachable backend."""

    def get(self, key):
        raise m.StoreError("store down")

    def set(self, key, value, ttl_seconds=None):
        raise m.StoreError("store down")

    def delete(self, *keys):
        raise m.StoreError("store down")

    def incr(self, key, ttl_seconds=None):
        raise m.StoreError("store down")

    def ttl(self, key):
        raise m.StoreError("store down")


@pytest.fixture
def broken_store() -> BrokenStore:
    return BrokenStore()


@pytest.fixture
def store() -> m.InMemoryStore:
    return m.InMemoryStore()


@pytest.fixture
def codec() -> m.TokenCodec:
    return m.TokenCodec(m.TokenOptions(issuer="gatekeeper", audience="gatekeeper-clients"))


@pytest.fixture
def sqlite_engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def settings() -> m.SecuritySettings:
    return m.SecuritySettings(
        JWT_ACCESS_TOKEN_SECRET=ACCESS_SECRET,
        JWT_REFRESH_TOKEN_SECRET=REFRESH_SECRET,
        ENVIRONMENT="development",
        LOG_LEVEL="WARNING",
        REDIS_URL=None,
        RECAPTCHA_SITE_KEY="",
        RECAPTCHA_SECRET_KEY="",
    )
