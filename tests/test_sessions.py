from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

import gatekeeper as m
from gatekeeper.sessions import UserSessionRow


@pytest.fixture
def sql_store(sqlite_engine) -> m.SqlSessionStore:
    store = m.SqlSessionStore(sqlite_engine)
    store.create_all()
    return store


@pytest.fixture(params=["memory", "sql"])
def sessions(request, sqlite_engine):
    if request.param == "memory":
        return m.InMemorySessionStore()
    store = m.SqlSessionStore(sqlite_engine)
    store.create_all()
    return store


def _create(store, subject_id="u1", token="rt-1", ttl=3600):
    return store.create_session(
        subject_id=subject_id,
        token_value=token,
        device_info="pytest",
        ip_address="203.0.113.7",
        ttl_seconds=ttl,
    )


def test_create_and_find_active(sessions):
    created = _create(sessions)

    found = sessions.find_active_session("rt-1")

    assert found is not None
    assert found.id == created.id
    assert found.subject_id == "u1"
    assert found.device_info == "pytest"
    assert found.is_active is True
    assert found.last_used_at is None
    assert not found.is_expired()


def test_sessions_are_additive(sessions):
    a = _create(sessions, token="rt-a")
    b = _create(sessions, token="rt-b")

    assert a.id != b.id
    assert sessions.find_active_session("rt-a").id == a.id
    assert sessions.find_active_session("rt-b").id == b.id


def test_unknown_token_not_found(sessions):
    _create(sessions)
    assert sessions.find_active_session("nope") is None


def test_revoke_session(sessions):
    s = _create(sessions)
    sessions.revoke_session(s.id)
    assert sessions.find_active_session("rt-1") is None


def test_revoke_by_token(sessions):
    _create(sessions)
    sessions.revoke_by_token("rt-1")
    assert sessions.find_active_session("rt-1") is None


def test_revoke_all_sessions_invalidates_every_token_of_subject(sessions):
    _create(sessions, token="rt-a")
    _create(sessions, token="rt-b")
    _create(sessions, subject_id="u2", token="rt-other")

    assert sessions.revoke_all_sessions("u1") == 2

    assert sessions.find_active_session("rt-a") is None
    assert sessions.find_active_session("rt-b") is None
    assert sessions.find_active_session("rt-other") is not None
    # Already inactive rows are not counted twice
    assert sessions.revoke_all_sessions("u1") == 0


def test_rotate_replaces_token_in_same_row(sessions):
    s = _create(sessions)

    sessions.rotate(s.id, "rt-2")

    assert sessions.find_active_session("rt-1") is None
    rotated = sessions.find_active_session("rt-2")
    assert rotated is not None
    assert rotated.id == s.id
    assert rotated.last_used_at is not None
    assert rotated.expires_at == s.expires_at


def test_rotate_can_move_expiry(sessions):
    s = _create(sessions)
    later = datetime.now(UTC) + timedelta(days=30)

    sessions.rotate(s.id, "rt-2", expires_at=later)

    assert abs(sessions.get(s.id).expires_at - later) < timedelta(seconds=1)


def test_touch_updates_last_used(sessions):
    s = _create(sessions)
    sessions.touch(s.id)
    assert sessions.get(s.id).last_used_at is not None


def test_is_expired():
    s = _create(m.InMemorySessionStore(), ttl=60)
    assert not s.is_expired()
    assert s.is_expired(datetime.now(UTC) + timedelta(seconds=61))


def test_sql_rotation_never_adds_rows(sql_store: m.SqlSessionStore, sqlite_engine):
    s = _create(sql_store)
    for i in range(5):
        sql_store.rotate(s.id, f"rt-{i + 2}")

    with sqlite_engine.connect() as conn:
        rows = conn.execute(select(func.count()).select_from(UserSessionRow)).scalar_one()
    assert rows == 1


def test_sql_datetimes_come_back_timezone_aware(sql_store: m.SqlSessionStore):
    s = _create(sql_store)
    loaded = sql_store.get(s.id)
    assert loaded.expires_at.tzinfo is not None
    assert loaded.created_at.tzinfo is not None


def test_sql_errors_become_store_error(sqlite_engine):
    store = m.SqlSessionStore(sqlite_engine)  # tables never created

    with pytest.raises(m.StoreError) as exc_info:
        store.find_active_session("rt-1")
    assert isinstance(exc_info.value.__cause__, OperationalError)

    with pytest.raises(m.StoreError):
        _create(store)
    with pytest.raises(m.StoreError):
        store.revoke_all_sessions("u1")
