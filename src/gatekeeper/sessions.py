"""Refresh-token session storage.

A session is created per login and holds the current refresh token. The
refresh flow rotates the token inside the same row; logout, password change
and password reset deactivate rows. Rows are never deleted by the core.

Implementations of the SessionStore protocol:
- InMemorySessionStore: dict-backed, for tests and development
- SqlSessionStore: SQLAlchemy table ``user_sessions``
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    String,
    Update,
    create_engine,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import StoreError
from .logging import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone=True columns
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


@dataclass(frozen=True, slots=True)
class Session:
    """One login on one device.

    Attributes:
        id: Session id, also embedded in tokens as ``sid``.
        subject_id: Owning user id.
        token_value: Current refresh token.
        device_info: Free-form client description (user agent).
        ip_address: Client IP at login time.
        is_active: False once revoked.
        expires_at: End of the refresh window.
        created_at: Login time.
        last_used_at: Last successful refresh, None if never refreshed.
    """

    id: str
    subject_id: str
    token_value: str
    device_info: str | None
    ip_address: str | None
    is_active: bool
    expires_at: datetime
    created_at: datetime
    last_used_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _utcnow()) > _aware(self.expires_at)


class InMemorySessionStore:
    """Dict-backed SessionStore.

    Thread-safe; token lookups scan all rows, which is fine for the sizes
    this is meant for.
    """

    def __init__(self) -> None:
        self._rows: dict[str, Session] = {}
        self._lock = threading.Lock()

    def create_session(
        self,
        subject_id: str,
        token_value: str,
        device_info: str | None,
        ip_address: str | None,
        ttl_seconds: int,
    ) -> Session:
        now = _utcnow()
        session = Session(
            id=uuid.uuid4().hex,
            subject_id=subject_id,
            token_value=token_value,
            device_info=device_info,
            ip_address=ip_address,
            is_active=True,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )
        with self._lock:
            self._rows[session.id] = session
        return session

    def find_active_session(self, token_value: str) -> Session | None:
        with self._lock:
            for row in self._rows.values():
                if row.is_active and row.token_value == token_value:
                    return row
        return None

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._rows.get(session_id)

    def rotate(
        self,
        session_id: str,
        new_token_value: str,
        expires_at: datetime | None = None,
    ) -> None:
        with self._lock:
            row = self._rows.get(session_id)
            if row is None:
                return
            self._rows[session_id] = replace(
                row,
                token_value=new_token_value,
                expires_at=expires_at or row.expires_at,
                last_used_at=_utcnow(),
            )

    def touch(self, session_id: str) -> None:
        with self._lock:
            row = self._rows.get(session_id)
            if row is not None:
                self._rows[session_id] = replace(row, last_used_at=_utcnow())

    def revoke_session(self, session_id: str) -> None:
        with self._lock:
            row = self._rows.get(session_id)
            if row is not None:
                self._rows[session_id] = replace(row, is_active=False)

    def revoke_by_token(self, token_value: str) -> None:
        with self._lock:
            for sid, row in self._rows.items():
                if row.token_value == token_value:
                    self._rows[sid] = replace(row, is_active=False)

    def revoke_all_sessions(self, subject_id: str) -> int:
        changed = 0
        with self._lock:
            for sid, row in self._rows.items():
                if row.subject_id == subject_id and row.is_active:
                    self._rows[sid] = replace(row, is_active=False)
                    changed += 1
        return changed

    def __len__(self) -> int:
        return len(self._rows)


# ============================================================================
# SQL storage
# ============================================================================


class Base(DeclarativeBase):
    pass


class UserSessionRow(Base):
    """Database table for refresh sessions.

    ``token_value`` is highly sensitive and must never be exposed via an API.
    """

    __tablename__ = "user_sessions"
    __table_args__ = (
        Index("ix_user_sessions_token_value", "token_value"),
        Index("ix_user_sessions_subject_id", "subject_id"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(64))
    token_value: Mapped[str] = mapped_column(String(1024))
    device_info: Mapped[str | None] = mapped_column(String(512), default=None)
    ip_address: Mapped[str | None] = mapped_column(String(45), default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    def to_session(self) -> Session:
        return Session(
            id=self.id,
            subject_id=self.subject_id,
            token_value=self.token_value,
            device_info=self.device_info,
            ip_address=self.ip_address,
            is_active=self.is_active,
            expires_at=_aware(self.expires_at),
            created_at=_aware(self.created_at),
            last_used_at=_aware(self.last_used_at) if self.last_used_at else None,
        )


class SqlSessionStore:
    """SQLAlchemy-backed SessionStore.

    Every operation runs in its own short transaction. Database errors are
    wrapped in StoreError; the authentication flow treats those as
    "not authenticated".

    Example:
        ```python
        store = SqlSessionStore.from_url("sqlite:///gatekeeper.db")
        store.create_all()
        ```
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str) -> SqlSessionStore:
        return cls(create_engine(url, pool_pre_ping=True))

    def create_all(self) -> None:
        Base.metadata.create_all(self._engine)

    def create_session(
        self,
        subject_id: str,
        token_value: str,
        device_info: str | None,
        ip_address: str | None,
        ttl_seconds: int,
    ) -> Session:
        now = _utcnow()
        row = UserSessionRow(
            id=uuid.uuid4().hex,
            subject_id=subject_id,
            token_value=token_value,
            device_info=device_info,
            ip_address=ip_address,
            is_active=True,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )
        try:
            with self._sessions.begin() as db:
                db.add(row)
                db.flush()
                return row.to_session()
        except SQLAlchemyError as e:
            logger.error("session_create_failed", subject_id=subject_id, error=str(e))
            raise StoreError("Session creation failed") from e

    def find_active_session(self, token_value: str) -> Session | None:
        stmt = (
            select(UserSessionRow)
            .where(UserSessionRow.token_value == token_value)
            .where(UserSessionRow.is_active == True)  # noqa: E712
            .limit(1)
        )
        try:
            with self._sessions() as db:
                row = db.scalars(stmt).first()
                return row.to_session() if row else None
        except SQLAlchemyError as e:
            logger.error("session_lookup_failed", error=str(e))
            raise StoreError("Session lookup failed") from e

    def get(self, session_id: str) -> Session | None:
        try:
            with self._sessions() as db:
                row = db.get(UserSessionRow, session_id)
                return row.to_session() if row else None
        except SQLAlchemyError as e:
            raise StoreError("Session lookup failed") from e

    def _update(self, stmt: Update, what: str) -> int:
        try:
            with self._sessions.begin() as db:
                return db.execute(stmt).rowcount
        except SQLAlchemyError as e:
            logger.error("session_update_failed", operation=what, error=str(e))
            raise StoreError(f"Session {what} failed") from e

    def rotate(
        self,
        session_id: str,
        new_token_value: str,
        expires_at: datetime | None = None,
    ) -> None:
        values: dict[str, object] = {
            "token_value": new_token_value,
            "last_used_at": _utcnow(),
        }
        if expires_at is not None:
            values["expires_at"] = expires_at
        stmt = update(UserSessionRow).where(UserSessionRow.id == session_id).values(**values)
        self._update(stmt, "rotate")

    def touch(self, session_id: str) -> None:
        stmt = (
            update(UserSessionRow)
            .where(UserSessionRow.id == session_id)
            .values(last_used_at=_utcnow())
        )
        self._update(stmt, "touch")

    def revoke_session(self, session_id: str) -> None:
        stmt = update(UserSessionRow).where(UserSessionRow.id == session_id).values(is_active=False)
        self._update(stmt, "revoke")

    def revoke_by_token(self, token_value: str) -> None:
        stmt = (
            update(UserSessionRow)
            .where(UserSessionRow.token_value == token_value)
            .values(is_active=False)
        )
        self._update(stmt, "revoke")

    def revoke_all_sessions(self, subject_id: str) -> int:
        stmt = (
            update(UserSessionRow)
            .where(UserSessionRow.subject_id == subject_id)
            .where(UserSessionRow.is_active == True)  # noqa: E712
            .values(is_active=False)
        )
        return self._update(stmt, "revoke_all")
