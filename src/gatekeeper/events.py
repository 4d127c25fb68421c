"""Append-only security audit log.

Every denial and notable transition is written to the shared store under
``security_log:{epoch_ms}:{id}`` with a 7 day TTL, and mirrored to the
structured logger. Recording is best effort: a store failure is logged and
swallowed so that auditing never breaks the request it describes.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any

from .errors import StoreError
from .logging import get_logger
from .protocols import KeyValueStore

logger = get_logger(__name__)

SECURITY_EVENT_TTL = 7 * 24 * 60 * 60


@dataclass(frozen=True, slots=True)
class SecurityEvent:
    ip: str
    event: str
    timestamp: str
    details: dict[str, Any] = field(default_factory=dict)


class SecurityEventLog:
    def __init__(self, store: KeyValueStore, ttl_seconds: int = SECURITY_EVENT_TTL) -> None:
        self._store = store
        self._ttl = ttl_seconds

    def record(self, ip: str, event: str, **details: Any) -> SecurityEvent:
        now = time.time()
        entry = SecurityEvent(
            ip=ip,
            event=event,
            timestamp=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(now)),
            details=details,
        )
        key = f"security_log:{int(now * 1000)}:{uuid.uuid4().hex[:8]}"

        logger.info("security_event", ip=ip, security_event=event, **details)
        try:
            self._store.set(key, json.dumps(asdict(entry), default=str), ttl_seconds=self._ttl)
        except StoreError:
            logger.warning("security_event_write_failed", ip=ip, security_event=event, exc_info=True)
        return entry
