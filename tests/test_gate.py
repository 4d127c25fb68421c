import json

import pytest

import gatekeeper as m
from gatekeeper.gate import IP_BLOCKED, RATE_LIMIT_EXCEEDED, RECAPTCHA_FAILED, RECAPTCHA_MISSING
from gatekeeper.rate_limit import Purpose
from gatekeeper.reputation import BlockType

IP = "203.0.113.7"


class StubChallenge:
    """ChallengeVerifier returning a fixed result and recording calls."""

    def __init__(self, result: m.ChallengeResult, enabled: bool = True):
        self.result = result
        self.enabled = enabled
        self.calls: list[tuple[str, str | None, str | None]] = []

    def is_enabled(self) -> bool:
        return self.enabled

    def verify(self, response_token, remote_ip=None, expected_action=None):
        self.calls.append((response_token, remote_ip, expected_action))
        return self.result


PASS = m.ChallengeResult(success=True, score=0.9, action="login")
FAIL = m.ChallengeResult(success=False, score=0.1, error="reCAPTCHA score too low: 0.1 (minimum: 0.5)")


def events(store: m.InMemoryStore) -> list[str]:
    return [
        json.loads(item.value)["event"]
        for key, item in store._store.items()
        if key.startswith("security_log:")
    ]


@pytest.fixture
def make_gate(store: m.InMemoryStore):
    def _make(challenge=None, kv=None) -> m.SecurityGate:
        kv = kv if kv is not None else store
        return m.SecurityGate(
            m.IPReputationTracker(kv),
            m.TrafficCounter(kv),
            m.SecurityEventLog(kv),
            challenge=challenge,
        )

    return _make


def login_request(**kwargs) -> m.GateRequest:
    return m.GateRequest(ip=IP, path="/api/auth/login", email="user@example.com", **kwargs)


def test_clean_request_passes(make_gate, store):
    gate = make_gate()
    assert gate.evaluate(login_request(), m.LOGIN_GATE) is None
    assert events(store) == []


def test_bypass_paths_skip_every_stage(make_gate, store):
    gate = make_gate()
    gate.reputation.manual_block(IP, "test")

    request = m.GateRequest(ip=IP, path="/api/health/live")
    assert gate.evaluate(request, m.API_GATE) is None


class TestIPBlockStage:
    def test_temporary_block(self, make_gate, store, clock):
        gate = make_gate()
        gate.reputation.block(IP, "abuse", duration_seconds=120)

        denial = gate.evaluate(login_request(), m.LOGIN_GATE)

        assert denial.status == 403
        assert denial.code == IP_BLOCKED
        assert "temporarily blocked until" in denial.message
        assert denial.reset == int(clock.now * 1000) + 120_000
        assert denial.retry_after == 120
        assert denial.body()["reset"] == denial.reset
        assert denial.headers()["Retry-After"] == "120"
        assert events(store) == ["blocked_request"]

    def test_permanent_block_has_no_reset(self, make_gate):
        gate = make_gate()
        for _ in range(3):
            gate.reputation.block(IP, "abuse")

        denial = gate.evaluate(login_request(), m.LOGIN_GATE)

        assert denial.code == IP_BLOCKED
        assert "permanently" in denial.message
        assert denial.body() == {"success": False, "message": denial.message, "code": IP_BLOCKED}
        assert denial.headers() == {}

    def test_block_short_circuits_rate_limit(self, make_gate, store):
        gate = make_gate()
        gate.reputation.manual_block(IP, "abuse")

        for _ in range(10):
            assert gate.evaluate(login_request(), m.LOGIN_GATE).code == IP_BLOCKED

        # Quota untouched: the blocked requests never reached stage 2
        assert store.get(f"rate:login_by_ip:{IP}") is None
        assert events(store) == ["blocked_request"] * 10

    def test_stage_can_be_disabled(self, make_gate):
        gate = make_gate()
        gate.reputation.manual_block(IP, "abuse")
        config = m.GateConfig(enable_ip_block=False, rate_limit="api")
        assert gate.evaluate(login_request(), config) is None


class TestRateLimitStage:
    def test_login_sixth_attempt_denied(self, make_gate, store, clock):
        gate = make_gate()
        results = [
            gate.evaluate(
                m.GateRequest(ip=IP, path="/api/auth/login", email=f"u{i}@example.com"),
                m.LOGIN_GATE,
            )
            for i in range(6)
        ]

        assert results[:5] == [None] * 5
        denial = results[5]
        assert denial.status == 429
        assert denial.code == RATE_LIMIT_EXCEEDED
        assert denial.retry_after == 900
        assert denial.message == "Too many requests. Please try again in 900 seconds."
        assert denial.headers() == {
            "X-RateLimit-Limit": "3",
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(denial.reset),
            "Retry-After": "900",
        }
        assert events(store) == ["rate_limit_exceeded"]

    @pytest.mark.parametrize(
        "config, purpose, key",
        [
            (m.REGISTER_GATE, Purpose.REGISTER_BY_IP, IP),
            (m.PASSWORD_RESET_GATE, Purpose.PASSWORD_RESET_BY_EMAIL, "user@example.com"),
            (m.API_GATE, Purpose.API_BY_IP, IP),
        ],
    )
    def test_policy_selects_purpose(self, make_gate, store, config, purpose, key):
        gate = make_gate()
        gate.evaluate(login_request(), config)
        assert store.get(f"rate:{purpose.value}:{key}") == "1"

    def test_no_rate_limit_configured(self, make_gate, store):
        gate = make_gate()
        gate.evaluate(login_request(), m.GateConfig())
        assert not any(k.startswith("rate:") for k in store._store)


class TestChallengeStage:
    def test_missing_token(self, make_gate, store):
        challenge = StubChallenge(PASS)
        gate = make_gate(challenge)

        denial = gate.evaluate(login_request(), m.LOGIN_GATE)

        assert denial.status == 400
        assert denial.code == RECAPTCHA_MISSING
        assert challenge.calls == []
        assert events(store) == ["recaptcha_missing"]

    def test_success(self, make_gate, store):
        challenge = StubChallenge(PASS)
        gate = make_gate(challenge)

        assert gate.evaluate(login_request(challenge_token="tok"), m.LOGIN_GATE) is None
        assert challenge.calls == [("tok", IP, "login")]
        assert events(store) == ["recaptcha_success"]

    def test_failure_counts_against_ip(self, make_gate, store):
        gate = make_gate(StubChallenge(FAIL))

        denial = gate.evaluate(login_request(challenge_token="tok"), m.LOGIN_GATE)

        assert denial.status == 400
        assert denial.code == RECAPTCHA_FAILED
        assert denial.message == FAIL.error
        assert gate.reputation.check_block(IP).failed_attempt_count == 1
        assert store.get(f"rate:challenge_failures_by_ip:{IP}") == "1"
        assert events(store) == ["recaptcha_failed"]

    def test_exhausted_failure_quota_blocks_ip(self, make_gate, store):
        gate = make_gate(StubChallenge(FAIL))
        config = m.GateConfig(enable_challenge=True, challenge_action="login")
        request = login_request(challenge_token="tok")

        for _ in range(5):
            assert gate.evaluate(request, config).code == RECAPTCHA_FAILED
        assert gate.reputation.check_block(IP).is_blocked is False

        assert gate.evaluate(request, config).code == RECAPTCHA_FAILED
        record = gate.reputation.check_block(IP)
        assert record.block_type is BlockType.TEMPORARY
        assert record.block_escalation_count == 1

        assert gate.evaluate(request, config).code == IP_BLOCKED
        assert events(store) == ["recaptcha_failed"] * 6 + ["blocked_request"]

    def test_exhausted_quota_does_not_escalate_twice(self, make_gate):
        gate = make_gate(StubChallenge(FAIL))
        config = m.GateConfig(
            enable_ip_block=False, enable_challenge=True, challenge_action="login"
        )
        request = login_request(challenge_token="tok")

        for _ in range(8):
            gate.evaluate(request, config)

        assert gate.reputation.check_block(IP).block_escalation_count == 1

    def test_disabled_verifier_is_skipped(self, make_gate):
        gate = make_gate(StubChallenge(FAIL, enabled=False))
        assert gate.evaluate(login_request(), m.LOGIN_GATE) is None

    def test_api_gate_never_challenges(self, make_gate):
        challenge = StubChallenge(FAIL)
        gate = make_gate(challenge)
        assert gate.evaluate(login_request(), m.API_GATE) is None
        assert challenge.calls == []


class TestStoreOutage:
    def test_fails_open(self, make_gate, broken_store):
        gate = make_gate(kv=broken_store)
        assert gate.evaluate(login_request(), m.LOGIN_GATE) is None

    def test_challenge_still_enforced(self, make_gate, broken_store):
        gate = make_gate(StubChallenge(FAIL), kv=broken_store)
        denial = gate.evaluate(login_request(challenge_token="tok"), m.LOGIN_GATE)
        assert denial.code == RECAPTCHA_FAILED


def test_denial_body_shape():
    denial = m.GateDenial(status=429, code=RATE_LIMIT_EXCEEDED, message="slow down", reset=123)
    assert denial.body() == {
        "success": False,
        "message": "slow down",
        "code": RATE_LIMIT_EXCEEDED,
        "reset": 123,
    }
