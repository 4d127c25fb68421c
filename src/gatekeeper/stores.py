"""Key-value store implementations.

This module provides implementations of the KeyValueStore protocol used for
rate counters, IP block records and security events.

Implementations:
- InMemoryStore: in-process dict (tests, development, single-process servers)
- RedisStore: Redis-backed, shared by every worker (multi-instance production)

Both implementations support:
- TTL-based expiration
- Atomic increment that sets the TTL only on key creation
- Thread-safe operations

Security Note:
    The in-memory store is per process. With N workers every quota is
    effectively multiplied by N, so production deployments must set REDIS_URL.
"""

from __future__ import annotations

import heapq
import threading
import time
from dataclasses import dataclass
from typing import Any

import redis

from .errors import StoreError
from .logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class _StoreItem:
    """Internal store entry with TTL tracking.

    Attributes:
        value: Stored string.
        expires_at: Unix timestamp after which the entry is gone, None for no expiry.
    """

    value: str
    expires_at: float | None

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class InMemoryStore:
    """In-process key-value store with TTLs.

    Expired entries are removed on access, and every write also purges the
    entries whose TTL has passed. Expiry times sit in a min-heap, so a purge
    only touches what is actually due; keys that are written once and never
    read again (audit entries, counters for one-off IPs) do not accumulate.

    Example:
        ```python
        store = InMemoryStore()

        count, ttl_ms = store.incr("rate:api_by_ip:1.2.3.4", ttl_seconds=60)
        store.set("ip_block:1.2.3.4", '{"type": "permanent"}')
        ```
    """

    def __init__(self) -> None:
        self._store: dict[str, _StoreItem] = {}
        self._expiry_heap: list[tuple[float, str]] = []
        self._lock = threading.Lock()

    def _schedule(self, key: str, expires_at: float | None) -> None:
        # Caller holds the lock.
        if expires_at is not None:
            heapq.heappush(self._expiry_heap, (expires_at, key))

    def _purge(self, now: float) -> None:
        # Caller holds the lock. Heap entries can be stale when a key was
        # rewritten or deleted; only drop the key if its current item is due.
        heap = self._expiry_heap
        while heap and heap[0][0] <= now:
            _, key = heapq.heappop(heap)
            item = self._store.get(key)
            if item is not None and item.expired(now):
                del self._store[key]

    def _live(self, key: str, now: float) -> _StoreItem | None:
        # Caller holds the lock.
        item = self._store.get(key)
        if item is None:
            return None
        if item.expired(now):
            del self._store[key]
            return None
        return item

    def get(self, key: str) -> str | None:
        with self._lock:
            item = self._live(key, time.time())
            return item.value if item else None

    def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        now = time.time()
        expires_at = now + ttl_seconds if ttl_seconds is not None else None
        with self._lock:
            self._purge(now)
            self._store[key] = _StoreItem(value=value, expires_at=expires_at)
            self._schedule(key, expires_at)

    def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._store.pop(key, None)

    def incr(self, key: str, ttl_seconds: float | None = None) -> tuple[int, int]:
        """Increment a counter atomically.

        Raises:
            StoreError: If the existing value is not an integer.
        """
        now = time.time()
        with self._lock:
            self._purge(now)
            item = self._live(key, now)
            if item is None:
                expires_at = now + ttl_seconds if ttl_seconds is not None else None
                item = _StoreItem(value="0", expires_at=expires_at)
                self._store[key] = item
                self._schedule(key, expires_at)

            try:
                count = int(item.value) + 1
            except ValueError as e:
                raise StoreError(f"Value at {key!r} is not an integer") from e

            item.value = str(count)
            ttl_ms = -1 if item.expires_at is None else round((item.expires_at - now) * 1000)
            return count, ttl_ms

    def ttl(self, key: str) -> float | None:
        now = time.time()
        with self._lock:
            item = self._live(key, now)
            if item is None or item.expires_at is None:
                return None
            return item.expires_at - now


class RedisStore:
    """Redis-backed key-value store.

    Counters use a MULTI pipeline of INCR + PTTL so that the count and the
    window reset time come back in one round trip. PEXPIRE is only sent when
    the counter has no TTL yet (new key), so later increments never extend
    the window.

    Dependencies:
        Requires the redis package. Any redis-py compatible client works.

    Example:
        ```python
        store = RedisStore.from_url("redis://localhost:6379/0")
        count, ttl_ms = store.incr("rate:login_by_ip:1.2.3.4", ttl_seconds=300)
        ```

    Attributes:
        _client: Redis client created with ``decode_responses=True``.
    """

    def __init__(self, redis_client: Any) -> None:
        """Initialize the store.

        Args:
            redis_client: redis-py client (or compatible). Values are expected
                back as ``str``; bytes are decoded defensively.
        """
        self._client = redis_client

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float = 2.0) -> RedisStore:
        """Build a store from a Redis URL.

        A short socket timeout keeps an unreachable Redis from hanging requests;
        callers see StoreError quickly instead.
        """
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    @staticmethod
    def _decode(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    def get(self, key: str) -> str | None:
        try:
            return self._decode(self._client.get(key))
        except redis.RedisError as e:
            raise StoreError("Failed to read from Redis") from e

    def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        try:
            if ttl_seconds is None:
                self._client.set(key, value)
            else:
                self._client.set(key, value, px=max(1, int(ttl_seconds * 1000)))
        except redis.RedisError as e:
            raise StoreError("Failed to write to Redis") from e

    def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            self._client.delete(*keys)
        except redis.RedisError as e:
            raise StoreError("Failed to delete from Redis") from e

    def incr(self, key: str, ttl_seconds: float | None = None) -> tuple[int, int]:
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.incr(key)
            pipe.pttl(key)
            count, ttl_ms = pipe.execute()
            count, ttl_ms = int(count), int(ttl_ms)

            # -1 means the key exists without expiry, i.e. this call created it
            if ttl_seconds is not None and ttl_ms == -1:
                ttl_ms = max(1, int(ttl_seconds * 1000))
                self._client.pexpire(key, ttl_ms)

            return count, ttl_ms
        except redis.RedisError as e:
            logger.warning("redis_incr_failed", key=key, error=str(e))
            raise StoreError("Failed to increment counter in Redis") from e

    def ttl(self, key: str) -> float | None:
        try:
            ttl_ms = int(self._client.pttl(key))
        except redis.RedisError as e:
            raise StoreError("Failed to read TTL from Redis") from e
        # -2: missing key, -1: no expiry
        if ttl_ms < 0:
            return None
        return ttl_ms / 1000
