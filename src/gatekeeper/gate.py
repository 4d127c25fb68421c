"""Request admission gate.

Composes IP reputation, quotas and human verification into one decision per
request. Stages run in a fixed order and the first denial wins:

1. IP block check          -> 403 IP_BLOCKED
2. Purpose-specific quota  -> 429 RATE_LIMIT_EXCEEDED
3. Challenge verification  -> 400 RECAPTCHA_MISSING / RECAPTCHA_FAILED

Each denial produces exactly one security event. A request that passes every
enabled stage gets ``None`` ("no objection"); authentication is up to the
caller.

Store outages in stages 1 and 2 are logged and the stage is skipped: the gate
is a best-effort layer in front of authentication, which itself fails closed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Final, Literal

from .errors import StoreError
from .events import SecurityEventLog
from .logging import get_logger
from .protocols import ChallengeVerifier
from .rate_limit import Purpose, RateLimitResult, TrafficCounter, retry_after_seconds
from .reputation import BlockType, IPReputationTracker

logger = get_logger(__name__)

type RateLimitPolicy = Literal["login", "register", "password_reset", "api"]

IP_BLOCKED: Final[str] = "IP_BLOCKED"
RATE_LIMIT_EXCEEDED: Final[str] = "RATE_LIMIT_EXCEEDED"
RECAPTCHA_MISSING: Final[str] = "RECAPTCHA_MISSING"
RECAPTCHA_FAILED: Final[str] = "RECAPTCHA_FAILED"


@dataclass(frozen=True, slots=True)
class GateConfig:
    """Per-route gate configuration.

    Attributes:
        enable_ip_block: Run stage 1.
        enable_rate_limit: Run stage 2 (only when ``rate_limit`` is set).
        rate_limit: Which quota applies to the route.
        enable_challenge: Run stage 3.
        challenge_action: reCAPTCHA v3 action expected for this route.
        bypass_paths: Path prefixes the gate never inspects.
    """

    enable_ip_block: bool = True
    enable_rate_limit: bool = True
    rate_limit: RateLimitPolicy | None = None
    enable_challenge: bool = False
    challenge_action: str | None = None
    bypass_paths: tuple[str, ...] = ("/api/health", "/api/test")


LOGIN_GATE: Final = GateConfig(rate_limit="login", enable_challenge=True, challenge_action="login")
REGISTER_GATE: Final = GateConfig(
    rate_limit="register", enable_challenge=True, challenge_action="register"
)
PASSWORD_RESET_GATE: Final = GateConfig(
    rate_limit="password_reset", enable_challenge=True, challenge_action="password_reset"
)
API_GATE: Final = GateConfig(rate_limit="api")


@dataclass(frozen=True, slots=True)
class GateRequest:
    """What the gate needs to know about an inbound request."""

    ip: str
    path: str
    email: str | None = None
    challenge_token: str | None = None


@dataclass(frozen=True, slots=True)
class GateDenial:
    """Structured deny response.

    ``reset`` is epoch milliseconds, ``retry_after`` seconds.
    """

    status: int
    code: str
    message: str
    reset: int | None = None
    limit: int | None = None
    remaining: int | None = None
    retry_after: int | None = None

    def body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "message": self.message, "code": self.code}
        if self.reset is not None:
            body["reset"] = self.reset
        return body

    def headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.limit is not None:
            headers["X-RateLimit-Limit"] = str(self.limit)
        if self.remaining is not None:
            headers["X-RateLimit-Remaining"] = str(self.remaining)
        if self.reset is not None:
            headers["X-RateLimit-Reset"] = str(self.reset)
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class SecurityGate:
    """Single admission decision per request.

    Example:
        ```python
        gate = SecurityGate(tracker, counter, events, challenge=recaptcha)

        denial = gate.evaluate(GateRequest(ip=ip, path="/api/auth/login", email=email), LOGIN_GATE)
        if denial is not None:
            return jsonify(denial.body()), denial.status, denial.headers()
        ```
    """

    def __init__(
        self,
        reputation: IPReputationTracker,
        counter: TrafficCounter,
        events: SecurityEventLog,
        challenge: ChallengeVerifier | None = None,
    ) -> None:
        self._reputation = reputation
        self._counter = counter
        self._events = events
        self._challenge = challenge

    @property
    def reputation(self) -> IPReputationTracker:
        return self._reputation

    @property
    def counter(self) -> TrafficCounter:
        return self._counter

    @property
    def events(self) -> SecurityEventLog:
        return self._events

    def evaluate(self, request: GateRequest, config: GateConfig) -> GateDenial | None:
        if any(request.path.startswith(p) for p in config.bypass_paths):
            return None

        if config.enable_ip_block:
            denial = self._check_ip_block(request)
            if denial is not None:
                return denial

        if config.enable_rate_limit and config.rate_limit is not None:
            denial = self._check_rate_limit(request, config.rate_limit)
            if denial is not None:
                return denial

        if config.enable_challenge:
            denial = self._check_challenge(request, config.challenge_action)
            if denial is not None:
                return denial

        return None

    def _check_ip_block(self, request: GateRequest) -> GateDenial | None:
        try:
            record = self._reputation.check_block(request.ip)
        except StoreError:
            logger.warning("gate_ip_block_check_skipped", ip=request.ip, exc_info=True)
            return None

        if not record.is_blocked:
            return None

        self._events.record(
            request.ip,
            "blocked_request",
            path=request.path,
            block_type=record.block_type.value,
            block_expiry=record.expires_at,
        )
        if record.block_type is BlockType.TEMPORARY and record.expires_at is not None:
            return GateDenial(
                status=403,
                code=IP_BLOCKED,
                message=record.describe(),
                reset=record.expires_at,
                retry_after=retry_after_seconds(record.expires_at),
            )
        return GateDenial(status=403, code=IP_BLOCKED, message=record.describe())

    def _consume(self, request: GateRequest, policy: RateLimitPolicy) -> RateLimitResult:
        ip = request.ip
        match policy:
            case "login":
                return self._counter.check_login(ip, request.email or "unknown")
            case "register":
                return self._counter.check_and_consume(Purpose.REGISTER_BY_IP, ip)
            case "password_reset":
                return self._counter.check_and_consume(
                    Purpose.PASSWORD_RESET_BY_EMAIL, request.email or "unknown"
                )
            case _:
                return self._counter.check_and_consume(Purpose.API_BY_IP, ip)

    def _check_rate_limit(self, request: GateRequest, policy: RateLimitPolicy) -> GateDenial | None:
        try:
            result = self._consume(request, policy)
        except StoreError:
            logger.warning(
                "gate_rate_limit_check_skipped", ip=request.ip, policy=policy, exc_info=True
            )
            return None

        if result.allowed:
            return None

        retry_after = result.retry_after()
        self._events.record(
            request.ip,
            "rate_limit_exceeded",
            path=request.path,
            rate_limit_type=policy,
            limit=result.limit,
            remaining=result.remaining,
            reset=result.reset_at,
        )
        return GateDenial(
            status=429,
            code=RATE_LIMIT_EXCEEDED,
            message=f"Too many requests. Please try again in {retry_after} seconds.",
            reset=result.reset_at,
            limit=result.limit,
            remaining=result.remaining,
            retry_after=retry_after,
        )

    def _check_challenge(self, request: GateRequest, action: str | None) -> GateDenial | None:
        if self._challenge is None or not self._challenge.is_enabled():
            return None

        if not request.challenge_token:
            self._events.record(request.ip, "recaptcha_missing", path=request.path, action=action)
            return GateDenial(
                status=400,
                code=RECAPTCHA_MISSING,
                message="Please complete the reCAPTCHA verification.",
            )

        result = self._challenge.verify(
            request.challenge_token, remote_ip=request.ip, expected_action=action
        )
        if result.success:
            self._events.record(
                request.ip,
                "recaptcha_success",
                path=request.path,
                action=action,
                score=result.score,
            )
            return None

        failures_remaining: int | None = None
        try:
            self._reputation.record_failure(request.ip)
            failures = self._counter.check_and_consume(
                Purpose.CHALLENGE_FAILURES_BY_IP, request.ip
            )
            failures_remaining = failures.remaining
            # Exhausting the challenge-failure quota earns a block on top of
            # the regular failure count, unless one is already in place
            if not failures.allowed and not self._reputation.check_block(request.ip).is_blocked:
                self._reputation.block(request.ip, "too many failed challenges")
        except StoreError:
            logger.warning("gate_challenge_failure_not_recorded", ip=request.ip, exc_info=True)

        self._events.record(
            request.ip,
            "recaptcha_failed",
            path=request.path,
            action=action,
            error=result.error,
            score=result.score,
            failures_remaining=failures_remaining,
        )
        return GateDenial(
            status=400,
            code=RECAPTCHA_FAILED,
            message=result.error or "Please complete the reCAPTCHA verification again.",
        )
