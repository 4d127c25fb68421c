"""Escalating IP blocks for repeat offenders.

State per IP:

    Clean -> (failures accumulate) -> TemporarilyBlocked
          -> (block expires, failures accumulate again) -> TemporarilyBlocked
          -> ... -> PermanentlyBlocked

Store layout:
- ``ip_failed:{ip}``       failed-attempt counter, expires after 24h
- ``ip_block:{ip}``        JSON block record (temporary ones also carry a TTL)
- ``ip_block_count:{ip}``  number of blocks ever issued, never expires

The escalation count outlives both the block and the failure counter, so an
IP that keeps coming back is remembered even after a successful login.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from enum import StrEnum

from .errors import StoreError
from .logging import get_logger
from .protocols import KeyValueStore

logger = get_logger(__name__)


class BlockType(StrEnum):
    NONE = "none"
    TEMPORARY = "temporary"
    PERMANENT = "permanent"


@dataclass(frozen=True, slots=True)
class ReputationPolicy:
    """Thresholds for IP blocking.

    Attributes:
        failed_attempts_threshold: Failures that trigger a block.
        block_duration_seconds: Default length of a temporary block.
        permanent_block_threshold: Block number at which blocks become permanent.
        failed_attempts_ttl_seconds: Lifetime of the failure counter.
    """

    failed_attempts_threshold: int = 10
    block_duration_seconds: int = 24 * 60 * 60
    permanent_block_threshold: int = 3
    failed_attempts_ttl_seconds: int = 24 * 60 * 60


@dataclass(frozen=True, slots=True)
class IPBlockRecord:
    """Reputation snapshot for one IP.

    Timestamps are Unix epoch milliseconds. ``expires_at`` is None for
    permanent blocks and for unblocked IPs.
    """

    ip: str
    block_type: BlockType
    failed_attempt_count: int
    block_escalation_count: int
    reason: str | None = None
    created_at: int | None = None
    expires_at: int | None = None

    @property
    def is_blocked(self) -> bool:
        return self.block_type is not BlockType.NONE

    def describe(self) -> str:
        """Client-facing explanation of the block."""
        if self.block_type is BlockType.PERMANENT:
            return "Your IP address has been permanently blocked due to repeated violations."
        if self.block_type is BlockType.TEMPORARY and self.expires_at is not None:
            until = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.expires_at / 1000))
            return f"Your IP address is temporarily blocked until {until}"
        return "Your IP address is not blocked."


class IPReputationTracker:
    """Tracks failures per IP and escalates to temporary then permanent blocks.

    Example:
        ```python
        tracker = IPReputationTracker(store)

        tracker.record_failure(ip)   # bad password, failed challenge, ...
        tracker.record_success(ip)   # clean login

        if tracker.check_block(ip).is_blocked:
            ...  # 403
        ```
    """

    def __init__(self, store: KeyValueStore, policy: ReputationPolicy | None = None) -> None:
        self._store = store
        self._policy = policy or ReputationPolicy()

    @property
    def policy(self) -> ReputationPolicy:
        return self._policy

    @staticmethod
    def _keys(ip: str) -> tuple[str, str, str]:
        return f"ip_block:{ip}", f"ip_failed:{ip}", f"ip_block_count:{ip}"

    @staticmethod
    def _int(value: str | None) -> int:
        try:
            return int(value) if value is not None else 0
        except ValueError:
            return 0

    def record_failure(self, ip: str) -> int:
        """Count a failed attempt and block the IP once the threshold is reached.

        Returns:
            The failure count after this attempt.
        """
        _, failed_key, _ = self._keys(ip)
        count, _ = self._store.incr(
            failed_key, ttl_seconds=self._policy.failed_attempts_ttl_seconds
        )
        logger.info("ip_failed_attempt", ip=ip, failed_attempts=count)

        # Exactly one caller sees the threshold value; later increments never re-block
        if count == self._policy.failed_attempts_threshold:
            self.block(ip, "too many failed attempts")
        return count

    def record_success(self, ip: str) -> None:
        """Forget recent failures. Past blocks still count toward escalation."""
        _, failed_key, _ = self._keys(ip)
        self._store.delete(failed_key)

    def block(self, ip: str, reason: str, duration_seconds: int | None = None) -> IPBlockRecord:
        """Issue a block, permanent once the escalation threshold is reached.

        The failure counter is cleared, so the next block needs a fresh run of
        failures after this one expires.
        """
        block_key, failed_key, count_key = self._keys(ip)
        escalation, _ = self._store.incr(count_key)
        now_ms = int(time.time() * 1000)

        if escalation >= self._policy.permanent_block_threshold:
            block_type = BlockType.PERMANENT
            expires_at = None
            ttl_seconds = None
        else:
            block_type = BlockType.TEMPORARY
            ttl_seconds = duration_seconds or self._policy.block_duration_seconds
            expires_at = now_ms + ttl_seconds * 1000

        record = {
            "type": block_type.value,
            "reason": reason,
            "created_at": now_ms,
            "expires_at": expires_at,
        }
        self._store.set(block_key, json.dumps(record), ttl_seconds=ttl_seconds)
        self._store.delete(failed_key)

        logger.warning(
            "ip_blocked",
            ip=ip,
            reason=reason,
            block_type=block_type.value,
            escalation=escalation,
            expires_at=expires_at,
        )
        return IPBlockRecord(
            ip=ip,
            block_type=block_type,
            failed_attempt_count=0,
            block_escalation_count=escalation,
            reason=reason,
            created_at=now_ms,
            expires_at=expires_at,
        )

    def check_block(self, ip: str) -> IPBlockRecord:
        """Report the current block state.

        Temporary blocks past their expiry are deleted here (lazy expiry); the
        escalation count is left untouched. Permanent blocks never expire.

        Raises:
            StoreError: If the store is unavailable or the record is corrupt.
        """
        block_key, failed_key, count_key = self._keys(ip)
        raw = self._store.get(block_key)
        failed = self._int(self._store.get(failed_key))
        escalation = self._int(self._store.get(count_key))

        if raw is not None:
            try:
                data = json.loads(raw)
                block_type = BlockType(data["type"])
            except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                raise StoreError(f"Corrupt block record for {ip}") from e

            expires_at = data.get("expires_at")
            now_ms = int(time.time() * 1000)
            active = block_type is BlockType.PERMANENT or (
                block_type is BlockType.TEMPORARY
                and expires_at is not None
                and now_ms < expires_at
            )
            if active:
                return IPBlockRecord(
                    ip=ip,
                    block_type=block_type,
                    failed_attempt_count=failed,
                    block_escalation_count=escalation,
                    reason=data.get("reason"),
                    created_at=data.get("created_at"),
                    expires_at=expires_at if block_type is BlockType.TEMPORARY else None,
                )

            self._store.delete(block_key)
            logger.info("ip_block_expired", ip=ip, escalation=escalation)

        return IPBlockRecord(
            ip=ip,
            block_type=BlockType.NONE,
            failed_attempt_count=failed,
            block_escalation_count=escalation,
        )

    def manual_block(
        self, ip: str, reason: str, duration_seconds: int | None = None
    ) -> IPBlockRecord:
        """Administrative block. Same escalation rule as automatic blocks."""
        logger.warning("ip_manual_block", ip=ip, reason=reason)
        return self.block(ip, reason, duration_seconds)

    def manual_unblock(self, ip: str) -> None:
        """Administrative unblock.

        Removes the active block and the failure counter. The escalation count
        is kept, so unblocking cannot be used to launder a repeat offender;
        use reset_escalation() for that explicitly.
        """
        block_key, failed_key, _ = self._keys(ip)
        self._store.delete(block_key, failed_key)
        logger.warning("ip_manual_unblock", ip=ip)

    def reset_escalation(self, ip: str) -> None:
        """Administrative reset of the block history for an IP."""
        _, _, count_key = self._keys(ip)
        self._store.delete(count_key)
        logger.warning("ip_escalation_reset", ip=ip)
