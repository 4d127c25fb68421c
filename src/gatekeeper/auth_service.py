"""Account and session flows.

Ties the token codec, the session store and IP reputation together:

- register: email + password -> new account (no session)
- login: credentials -> IP reputation update -> new session -> token pair
- refresh: refresh token -> active session -> rotated token pair (same row)
- logout: refresh token -> session deactivated
- change_password / reset_password: new hash -> every session revoked
- request_password_reset: one-hour single-use token handed to a delivery hook

Failures come back as ``AuthResult(success=False, message=...)`` with
messages that never reveal whether an email is registered.
"""

from __future__ import annotations

import hashlib
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace

from werkzeug.security import check_password_hash, generate_password_hash

from .errors import StoreError
from .logging import get_logger
from .protocols import KeyValueStore, SessionStore, UserDirectory
from .reputation import IPReputationTracker
from .stores import InMemoryStore
from .tokens import (
    ACCESS_TOKEN_TTL,
    REFRESH_TOKEN_TTL,
    TokenClaims,
    TokenCodec,
    TokenPair,
    generate_secure_token,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
ACCOUNT_DEACTIVATED = "Account is deactivated. Please contact support."
INVALID_REFRESH = "Invalid refresh token"
SESSION_NOT_FOUND = "Session not found or expired"
SESSION_EXPIRED = "Session expired"
USER_UNAVAILABLE = "User not found or deactivated"
EMAIL_TAKEN = "User with this email already exists"
REGISTERED = "User registered successfully. Please check your email for verification."
WRONG_PASSWORD = "Current password is incorrect"
RESET_REQUESTED = "If an account exists with this email, a password reset link has been sent."
INVALID_RESET = "Invalid or expired reset token"

MIN_PASSWORD_LENGTH = 8
PASSWORD_RESET_TTL = 60 * 60

type ResetTokenSender = Callable[[UserRecord, str], None]


def password_problem(password: str) -> str | None:
    """Reason ``password`` is unacceptable as a new password, or None."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    return None


@dataclass(frozen=True, slots=True)
class UserRecord:
    id: str
    email: str
    password_hash: str
    role: str = "user"
    is_active: bool = True

    def public(self) -> dict[str, str]:
        """Fields safe to return to the client."""
        return {"id": self.id, "email": self.email, "role": self.role}


class InMemoryUserDirectory:
    """Dict-backed UserDirectory for tests and demos.

    Emails are matched case-insensitively.
    """

    def __init__(self) -> None:
        self._by_id: dict[str, UserRecord] = {}
        self._lock = threading.Lock()

    def add_user(self, email: str, password: str, role: str = "user") -> UserRecord:
        """Create an account.

        Raises:
            ValueError: If the email is already registered.
        """
        user = UserRecord(
            id=uuid.uuid4().hex,
            email=email.strip().lower(),
            password_hash=generate_password_hash(password),
            role=role,
        )
        with self._lock:
            if any(u.email == user.email for u in self._by_id.values()):
                raise ValueError(f"{user.email} is already registered")
            self._by_id[user.id] = user
        return user

    def find_by_email(self, email: str) -> UserRecord | None:
        wanted = email.strip().lower()
        with self._lock:
            return next((u for u in self._by_id.values() if u.email == wanted), None)

    def find_by_id(self, user_id: str) -> UserRecord | None:
        with self._lock:
            return self._by_id.get(user_id)

    def set_password(self, user_id: str, password: str) -> None:
        with self._lock:
            user = self._by_id[user_id]
            self._by_id[user_id] = replace(user, password_hash=generate_password_hash(password))

    def deactivate(self, user_id: str) -> None:
        with self._lock:
            user = self._by_id[user_id]
            self._by_id[user_id] = replace(user, is_active=False)


@dataclass(frozen=True, slots=True)
class AuthResult:
    success: bool
    message: str
    tokens: TokenPair | None = None
    user: UserRecord | None = None


class AuthService:
    """Authentication flows over injected stores.

    Authentication fails closed: a session-store outage during refresh is
    reported as an invalid refresh, never as success.

    Example:
        ```python
        service = AuthService(users, sessions, codec, tracker,
                              access_secret=..., refresh_secret=...)

        result = service.login("a@example.com", "hunter22", ip="203.0.113.7")
        if result.success:
            ...  # set cookies from result.tokens
        ```

    Reset tokens are kept in ``reset_store`` only as SHA-256 digests.
    Delivery is up to ``send_reset_token(user, token)``; without it the
    token is dropped and only a log line records the request.
    """

    def __init__(
        self,
        users: UserDirectory,
        sessions: SessionStore,
        codec: TokenCodec,
        reputation: IPReputationTracker | None,
        *,
        access_secret: str,
        refresh_secret: str,
        access_ttl: int = ACCESS_TOKEN_TTL,
        refresh_ttl: int = REFRESH_TOKEN_TTL,
        reset_store: KeyValueStore | None = None,
        reset_ttl: int = PASSWORD_RESET_TTL,
        send_reset_token: ResetTokenSender | None = None,
    ) -> None:
        self._users = users
        self._sessions = sessions
        self._codec = codec
        self._reputation = reputation
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self._access_ttl = access_ttl
        self._refresh_ttl = refresh_ttl
        self._reset_store = reset_store if reset_store is not None else InMemoryStore()
        self._reset_ttl = reset_ttl
        self._send_reset_token = send_reset_token

    @property
    def users(self) -> UserDirectory:
        return self._users

    def _issue_pair(self, user: UserRecord, session_id: str) -> TokenPair:
        claims = TokenClaims(
            subject_id=user.id,
            email=user.email,
            role=user.role,
            session_id=session_id,
        )
        return TokenPair(
            access_token=self._codec.issue(claims, self._access_secret, self._access_ttl),
            refresh_token=self._codec.issue(
                claims, self._refresh_secret, self._refresh_ttl, token_type="refresh"
            ),
            expires_in=self._access_ttl,
        )

    def _record_failure(self, ip: str | None) -> None:
        if self._reputation is None or not ip:
            return
        try:
            self._reputation.record_failure(ip)
        except StoreError:
            logger.warning("ip_failure_not_recorded", ip=ip, exc_info=True)

    def _record_success(self, ip: str | None) -> None:
        if self._reputation is None or not ip:
            return
        try:
            self._reputation.record_success(ip)
        except StoreError:
            logger.warning("ip_success_not_recorded", ip=ip, exc_info=True)

    def login(
        self,
        email: str,
        password: str,
        ip: str | None = None,
        device_info: str | None = None,
    ) -> AuthResult:
        """Check credentials and open a new session.

        Unknown emails and wrong passwords produce the same message and both
        count as a failed attempt for ``ip``.

        Raises:
            StoreError: If the session store is unavailable.
        """
        user = self._users.find_by_email(email)
        if user is None or not check_password_hash(user.password_hash, password):
            self._record_failure(ip)
            logger.info("login_failed", ip=ip, reason="bad_credentials")
            return AuthResult(success=False, message=INVALID_CREDENTIALS)

        if not user.is_active:
            logger.info("login_failed", ip=ip, reason="deactivated", user_id=user.id)
            return AuthResult(success=False, message=ACCOUNT_DEACTIVATED)

        self._record_success(ip)

        # The refresh token embeds the session id, so the row exists before
        # the token does; the placeholder is replaced immediately.
        session = self._sessions.create_session(
            subject_id=user.id,
            token_value=generate_secure_token(),
            device_info=device_info,
            ip_address=ip,
            ttl_seconds=self._refresh_ttl,
        )
        tokens = self._issue_pair(user, session.id)
        self._sessions.rotate(session.id, tokens.refresh_token)

        logger.info("login_succeeded", user_id=user.id, session_id=session.id, ip=ip)
        return AuthResult(success=True, message="Login successful", tokens=tokens, user=user)

    def refresh(self, refresh_token: str) -> AuthResult:
        """Exchange a refresh token for a new pair, rotating the session row."""
        payload = self._codec.verify(refresh_token, self._refresh_secret, token_type="refresh")
        if payload is None:
            return AuthResult(success=False, message=INVALID_REFRESH)

        try:
            session = self._sessions.find_active_session(refresh_token)
        except StoreError:
            logger.warning("refresh_session_lookup_failed", exc_info=True)
            return AuthResult(success=False, message=INVALID_REFRESH)

        if session is None or session.id != payload.session_id:
            logger.info("refresh_rejected", reason="no_active_session", user_id=payload.subject_id)
            return AuthResult(success=False, message=SESSION_NOT_FOUND)

        if session.is_expired():
            self._sessions.revoke_session(session.id)
            logger.info("refresh_rejected", reason="session_expired", session_id=session.id)
            return AuthResult(success=False, message=SESSION_EXPIRED)

        user = self._users.find_by_id(payload.subject_id)
        if user is None or not user.is_active:
            return AuthResult(success=False, message=USER_UNAVAILABLE)

        tokens = self._issue_pair(user, session.id)
        # Session lifetime is fixed at login; rotation does not extend it
        self._sessions.rotate(session.id, tokens.refresh_token)
        logger.info("token_refreshed", user_id=user.id, session_id=session.id)
        return AuthResult(
            success=True, message="Token refreshed successfully", tokens=tokens, user=user
        )

    def logout(self, refresh_token: str) -> AuthResult:
        """Deactivate the session holding ``refresh_token``.

        Idempotent: unknown tokens still log out successfully.
        """
        try:
            self._sessions.revoke_by_token(refresh_token)
        except StoreError:
            logger.error("logout_failed", exc_info=True)
            return AuthResult(success=False, message="Logout failed")
        return AuthResult(success=True, message="Logged out successfully")

    def revoke_all(self, subject_id: str) -> int:
        """Deactivate every session of a user (password change, reset, ban)."""
        count = self._sessions.revoke_all_sessions(subject_id)
        logger.info("sessions_revoked", user_id=subject_id, count=count)
        return count

    def register(self, email: str, password: str) -> AuthResult:
        """Create an account. No session is opened; the client logs in next."""
        problem = password_problem(password)
        if problem is not None:
            return AuthResult(success=False, message=problem)

        if self._users.find_by_email(email) is not None:
            return AuthResult(success=False, message=EMAIL_TAKEN)
        try:
            user = self._users.add_user(email, password)
        except ValueError:
            # Lost a race with a concurrent registration
            return AuthResult(success=False, message=EMAIL_TAKEN)

        logger.info("user_registered", user_id=user.id)
        return AuthResult(success=True, message=REGISTERED, user=user)

    def change_password(self, subject_id: str, current: str, new: str) -> AuthResult:
        """Replace the password of a signed-in user and end all their sessions.

        Raises:
            StoreError: If the session store is unavailable.
        """
        user = self._users.find_by_id(subject_id)
        if user is None or not user.is_active:
            return AuthResult(success=False, message=USER_UNAVAILABLE)
        if not check_password_hash(user.password_hash, current):
            logger.info("password_change_rejected", user_id=subject_id)
            return AuthResult(success=False, message=WRONG_PASSWORD)

        problem = password_problem(new)
        if problem is not None:
            return AuthResult(success=False, message=problem)

        self._users.set_password(subject_id, new)
        self.revoke_all(subject_id)
        logger.info("password_changed", user_id=subject_id)
        return AuthResult(success=True, message="Password changed successfully")

    @staticmethod
    def _reset_key(token: str) -> str:
        return f"password_reset:{hashlib.sha256(token.encode()).hexdigest()}"

    def request_password_reset(self, email: str) -> AuthResult:
        """Issue a single-use reset token for ``email`` if it has an account.

        The answer is the same whether or not the account exists.

        Raises:
            StoreError: If the reset store is unavailable.
        """
        user = self._users.find_by_email(email)
        if user is None or not user.is_active:
            logger.info("password_reset_requested", found=False)
            return AuthResult(success=True, message=RESET_REQUESTED)

        token = generate_secure_token()
        self._reset_store.set(self._reset_key(token), user.id, ttl_seconds=self._reset_ttl)
        logger.info("password_reset_requested", found=True, user_id=user.id)

        if self._send_reset_token is not None:
            self._send_reset_token(user, token)
        return AuthResult(success=True, message=RESET_REQUESTED)

    def reset_password(self, token: str, new: str) -> AuthResult:
        """Set a new password from a reset token and end every session.

        The token is consumed before the password changes and never works twice.

        Raises:
            StoreError: If the reset store or session store is unavailable.
        """
        problem = password_problem(new)
        if problem is not None:
            return AuthResult(success=False, message=problem)

        key = self._reset_key(token)
        subject_id = self._reset_store.get(key)
        if subject_id is None:
            return AuthResult(success=False, message=INVALID_RESET)
        self._reset_store.delete(key)

        user = self._users.find_by_id(subject_id)
        if user is None or not user.is_active:
            return AuthResult(success=False, message=INVALID_RESET)

        self._users.set_password(subject_id, new)
        self.revoke_all(subject_id)
        logger.info("password_reset_completed", user_id=subject_id)
        return AuthResult(success=True, message="Password reset successfully")
