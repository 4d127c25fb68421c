"""Windowed request quotas per key and purpose.

Each (purpose, key) pair owns one counter in the shared store. The first
request creates the counter with the purpose's window as TTL; every request
increments it atomically, including requests that end up denied. Denied
attempts still count, so hammering an exhausted quota never frees it up
early.

The window and the counter expire together, so when the store drops the key
the next request starts a fresh window with ``remaining = max - 1``.

This is a fixed window, not a sliding one: a client can spend the whole
quota just before the window ends and the whole quota again just after, so
up to ``2 * max_requests`` can pass within one window length around the
boundary. Limits are sized with that burst in mind.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Final

from .logging import get_logger
from .protocols import KeyValueStore

logger = get_logger(__name__)


class Purpose(StrEnum):
    """What a counter protects. The value is part of the store key."""

    LOGIN_BY_IP = "login_by_ip"
    LOGIN_BY_EMAIL = "login_by_email"
    REGISTER_BY_IP = "register_by_ip"
    PASSWORD_RESET_BY_EMAIL = "password_reset_by_email"
    API_BY_IP = "api_by_ip"
    CHALLENGE_FAILURES_BY_IP = "challenge_failures_by_ip"
    PRICE_ALERT_CREATE = "price_alert_create"
    TRADING_ACCOUNT_CREATE = "trading_account_create"


@dataclass(frozen=True, slots=True)
class RateLimit:
    """Quota definition: at most ``max_requests`` per ``window_seconds``."""

    window_seconds: int
    max_requests: int

    def __post_init__(self) -> None:
        if self.window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {self.window_seconds}")
        if self.max_requests < 1:
            raise ValueError(f"max_requests must be at least 1, got {self.max_requests}")


DEFAULT_LIMITS: Final[dict[Purpose, RateLimit]] = {
    Purpose.LOGIN_BY_IP: RateLimit(window_seconds=5 * 60, max_requests=5),
    Purpose.LOGIN_BY_EMAIL: RateLimit(window_seconds=15 * 60, max_requests=3),
    Purpose.REGISTER_BY_IP: RateLimit(window_seconds=10 * 60, max_requests=3),
    Purpose.PASSWORD_RESET_BY_EMAIL: RateLimit(window_seconds=60 * 60, max_requests=3),
    Purpose.API_BY_IP: RateLimit(window_seconds=60, max_requests=60),
    Purpose.CHALLENGE_FAILURES_BY_IP: RateLimit(window_seconds=10 * 60, max_requests=5),
    Purpose.PRICE_ALERT_CREATE: RateLimit(window_seconds=60, max_requests=20),
    Purpose.TRADING_ACCOUNT_CREATE: RateLimit(window_seconds=60 * 60, max_requests=5),
}

_EMAIL_PURPOSES: Final[frozenset[Purpose]] = frozenset(
    {Purpose.LOGIN_BY_EMAIL, Purpose.PASSWORD_RESET_BY_EMAIL}
)

_RESOURCE_PURPOSES: Final[frozenset[Purpose]] = frozenset(
    {Purpose.PRICE_ALERT_CREATE, Purpose.TRADING_ACCOUNT_CREATE}
)


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    """Outcome of one quota check.

    Attributes:
        allowed: False once the post-increment count exceeds the limit.
        limit: Configured maximum for the window.
        remaining: Requests left in the window (never negative).
        reset_at: Window end as Unix epoch milliseconds.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int

    def retry_after(self, now: float | None = None) -> int:
        """Whole seconds a client should wait, at least 1."""
        return retry_after_seconds(self.reset_at, now)


def retry_after_seconds(reset_ms: int, now: float | None = None) -> int:
    """Seconds until ``reset_ms`` (epoch ms), at least 1."""
    now_ms = (now if now is not None else time.time()) * 1000
    return max(1, math.ceil((reset_ms - now_ms) / 1000))


class TrafficCounter:
    """Enforces per-purpose quotas on top of a KeyValueStore.

    Store failures propagate as StoreError; the admission gate decides
    whether to fail open.

    Example:
        ```python
        counter = TrafficCounter(store)

        result = counter.check_and_consume(Purpose.API_BY_IP, "203.0.113.7")
        if not result.allowed:
            ...  # 429 with Retry-After: result.retry_after()
        ```
    """

    def __init__(
        self,
        store: KeyValueStore,
        limits: dict[Purpose, RateLimit] | None = None,
        *,
        prefix: str = "rate",
    ) -> None:
        self._store = store
        self._limits = {**DEFAULT_LIMITS, **(limits or {})}
        self._prefix = prefix

    def limit_for(self, purpose: Purpose) -> RateLimit:
        return self._limits[purpose]

    def _key(self, purpose: Purpose, key: str) -> str:
        if purpose in _EMAIL_PURPOSES:
            key = key.strip().lower()
        return f"{self._prefix}:{purpose.value}:{key}"

    def check_and_consume(self, purpose: Purpose, key: str) -> RateLimitResult:
        """Count one request for ``(purpose, key)`` and report whether it fits.

        Raises:
            StoreError: If the backing store is unavailable.
        """
        rule = self._limits[purpose]
        now = time.time()

        count, ttl_ms = self._store.incr(self._key(purpose, key), ttl_seconds=rule.window_seconds)
        if ttl_ms < 0:
            # Counter lost its TTL somehow; report a full window
            ttl_ms = rule.window_seconds * 1000

        result = RateLimitResult(
            allowed=count <= rule.max_requests,
            limit=rule.max_requests,
            remaining=max(0, rule.max_requests - count),
            reset_at=int(now * 1000) + ttl_ms,
        )

        if not result.allowed:
            logger.warning(
                "rate_limit_exceeded",
                purpose=purpose.value,
                count=count,
                limit=rule.max_requests,
            )
        return result

    def check_login(self, ip: str, email: str) -> RateLimitResult:
        """Consume both login counters.

        Denied if either quota is exhausted. ``remaining`` and ``limit`` are
        the stricter of the two, ``reset_at`` the later one so the client
        waits out whichever constraint binds longest.
        """
        by_ip = self.check_and_consume(Purpose.LOGIN_BY_IP, ip)
        by_email = self.check_and_consume(Purpose.LOGIN_BY_EMAIL, email)
        return RateLimitResult(
            allowed=by_ip.allowed and by_email.allowed,
            limit=min(by_ip.limit, by_email.limit),
            remaining=min(by_ip.remaining, by_email.remaining),
            reset_at=max(by_ip.reset_at, by_email.reset_at),
        )

    def check_resource_creation(self, purpose: Purpose, user_id: str) -> RateLimitResult:
        """Per-user quota for creating alerts, accounts and similar resources."""
        if purpose not in _RESOURCE_PURPOSES:
            raise ValueError(f"{purpose.value} is not a resource-creation purpose")
        return self.check_and_consume(purpose, user_id)

    def reset(self, purpose: Purpose, key: str) -> None:
        """Administrative clear of one counter."""
        self._store.delete(self._key(purpose, key))
