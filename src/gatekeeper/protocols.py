"""Protocol definitions for the security core.

This module defines structural interfaces using Protocol (PEP 544) for:
- Shared key-value storage (counters, block records, audit entries)
- Refresh-session storage
- Human-verification challenges
- User lookup for the authentication flows
- Value extraction from the Flask request

Every component receives its collaborators through these interfaces, so the
whole core runs against in-memory implementations in tests and against
Redis / SQL in production without code changes.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .auth_service import UserRecord
    from .challenge import ChallengeResult
    from .sessions import Session

# ============================================================================
# Type Aliases
# ============================================================================

type ViewFunc = Callable[..., Any]
"""Type alias for Flask view functions."""


# ============================================================================
# Core Protocols
# ============================================================================


class KeyValueStore(Protocol):
    """Protocol for the shared key-value store.

    All rate counters, IP block records and security events live here. The
    store is shared by every worker process, so ``incr`` must be atomic:
    two concurrent requests for the same key must observe different counts.

    Implementations raise StoreError when the backend is unreachable.
    """

    def get(self, key: str) -> str | None:
        """Return the stored string, or None when missing or expired."""
        ...

    def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        """Store a string, optionally expiring after ``ttl_seconds``."""
        ...

    def delete(self, *keys: str) -> None:
        """Remove keys; missing keys are ignored."""
        ...

    def incr(self, key: str, ttl_seconds: float | None = None) -> tuple[int, int]:
        """Atomically increment an integer counter.

        Args:
            key: Counter key. Created at 1 when missing.
            ttl_seconds: Expiry applied only when this call created the key.

        Returns:
            ``(count, ttl_ms)`` where ``count`` is the post-increment value and
            ``ttl_ms`` the remaining lifetime in milliseconds (-1 if none).
        """
        ...

    def ttl(self, key: str) -> float | None:
        """Remaining lifetime in seconds, or None for missing/persistent keys."""
        ...


class SessionStore(Protocol):
    """Protocol for refresh-token session persistence.

    One row per login. Sessions are never deleted by the core, only
    deactivated, so an audit trail of logins remains.
    """

    def create_session(
        self,
        subject_id: str,
        token_value: str,
        device_info: str | None,
        ip_address: str | None,
        ttl_seconds: int,
    ) -> Session: ...

    def find_active_session(self, token_value: str) -> Session | None:
        """Return the session holding ``token_value`` only if it is active."""
        ...

    def rotate(
        self,
        session_id: str,
        new_token_value: str,
        expires_at: datetime | None = None,
    ) -> None:
        """Replace the refresh token of an existing session in place."""
        ...

    def touch(self, session_id: str) -> None: ...

    def revoke_session(self, session_id: str) -> None: ...

    def revoke_by_token(self, token_value: str) -> None: ...

    def revoke_all_sessions(self, subject_id: str) -> int:
        """Deactivate every session of a subject and return how many changed."""
        ...


class ChallengeVerifier(Protocol):
    """Protocol for human-verification services (reCAPTCHA and friends).

    ``verify`` never raises: transport problems are reported as a failed
    result so that callers have a single code path.
    """

    def verify(
        self,
        response_token: str,
        remote_ip: str | None = None,
        expected_action: str | None = None,
    ) -> ChallengeResult: ...

    def is_enabled(self) -> bool: ...


class UserDirectory(Protocol):
    """Protocol for the account store behind the authentication flows.

    Emails are matched case-insensitively. Passwords arrive in clear text
    and the directory stores only their hash.
    """

    def find_by_email(self, email: str) -> UserRecord | None: ...

    def find_by_id(self, user_id: str) -> UserRecord | None: ...

    def add_user(self, email: str, password: str, role: str = "user") -> UserRecord:
        """Create an account; raise ValueError if the email is taken."""
        ...

    def set_password(self, user_id: str, password: str) -> None:
        """Replace the password hash; raise KeyError for unknown ids."""
        ...


class Extractor(Protocol):
    """Protocol for pulling a single value out of the current Flask request."""

    def extract(self) -> str | None:
        """Return the value, or None when the request does not carry it.

        Implementations for mandatory credentials (bearer tokens, cookies)
        raise MissingToken instead of returning None.
        """
        ...
