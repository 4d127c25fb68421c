import time

import jwt
import pytest

import gatekeeper as m

SECRET = "token-secret-0123456789abcdef"

CLAIMS = m.TokenClaims(
    subject_id="u1",
    email="user@example.com",
    role="user",
    session_id="s1",
)


def test_issue_verify_roundtrip(codec: m.TokenCodec):
    token = codec.issue(CLAIMS, SECRET, ttl_seconds=m.ACCESS_TOKEN_TTL)

    payload = codec.verify(token, SECRET)

    assert payload is not None
    assert payload.claims == CLAIMS
    assert payload.token_type == "access"
    assert payload.issuer == "gatekeeper"
    assert payload.audience == "gatekeeper-clients"
    assert payload.expires_at - payload.issued_at == m.ACCESS_TOKEN_TTL


@pytest.mark.parametrize("ttl", [1, 60, m.ACCESS_TOKEN_TTL, m.REFRESH_TOKEN_TTL])
def test_roundtrip_preserves_claims_for_any_positive_ttl(codec: m.TokenCodec, ttl: int):
    token = codec.issue(CLAIMS, SECRET, ttl_seconds=ttl, token_type="refresh")
    payload = codec.decode(token, SECRET, token_type="refresh")
    assert payload.claims == CLAIMS


def test_token_is_three_urlsafe_segments(codec: m.TokenCodec):
    token = codec.issue(CLAIMS, SECRET, ttl_seconds=60)
    parts = token.split(".")
    assert len(parts) == 3
    assert all("+" not in p and "/" not in p and "=" not in p for p in parts)


def test_tokens_issued_in_same_second_differ(codec: m.TokenCodec):
    assert codec.issue(CLAIMS, SECRET, 60) != codec.issue(CLAIMS, SECRET, 60)


def test_non_positive_ttl_rejected(codec: m.TokenCodec):
    with pytest.raises(ValueError):
        codec.issue(CLAIMS, SECRET, ttl_seconds=0)


def test_wrong_secret_is_invalid_signature(codec: m.TokenCodec):
    token = codec.issue(CLAIMS, "another-secret-0123456789", ttl_seconds=60)

    with pytest.raises(m.InvalidSignature):
        codec.decode(token, SECRET)
    assert codec.verify(token, SECRET) is None


def test_tampered_payload_is_rejected(codec: m.TokenCodec):
    token = codec.issue(CLAIMS, SECRET, ttl_seconds=60)
    other = codec.issue(
        m.TokenClaims(subject_id="admin", email="a@example.com", role="admin", session_id="s"),
        "attacker-secret-0123456789",
        ttl_seconds=60,
    )
    header, _, signature = token.split(".")
    forged = ".".join([header, other.split(".")[1], signature])

    with pytest.raises(m.InvalidSignature):
        codec.decode(forged, SECRET)


def test_expired_token_rejected_despite_valid_signature(
    codec: m.TokenCodec, monkeypatch: pytest.MonkeyPatch
):
    # Issue an hour in the past; PyJWT checks exp against the real clock.
    real_now = time.time()
    monkeypatch.setattr(time, "time", lambda: real_now - 3600)
    token = codec.issue(CLAIMS, SECRET, ttl_seconds=60)
    monkeypatch.setattr(time, "time", lambda: real_now)

    with pytest.raises(m.ExpiredToken):
        codec.decode(token, SECRET)
    assert codec.verify(token, SECRET) is None


def test_issuer_mismatch(codec: m.TokenCodec):
    token = codec.issue(CLAIMS, SECRET, ttl_seconds=60, issuer="someone-else")
    with pytest.raises(m.InvalidIssuer):
        codec.decode(token, SECRET)


def test_audience_mismatch(codec: m.TokenCodec):
    token = codec.issue(CLAIMS, SECRET, ttl_seconds=60)
    with pytest.raises(m.InvalidAudience):
        codec.decode(token, SECRET, audience="mobile-clients")


def test_wrong_token_type(codec: m.TokenCodec):
    token = codec.issue(CLAIMS, SECRET, ttl_seconds=60, token_type="access")
    with pytest.raises(m.WrongTokenType):
        codec.decode(token, SECRET, token_type="refresh")


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "not.a.token"])
def test_malformed_tokens(codec: m.TokenCodec, token: str):
    with pytest.raises(m.MalformedToken):
        codec.decode(token, SECRET)
    assert codec.verify(token, SECRET) is None


def test_missing_custom_claims_is_malformed(codec: m.TokenCodec):
    now = int(time.time())
    token = jwt.encode(
        {"sub": "u1", "iat": now, "exp": now + 60, "iss": "gatekeeper", "aud": "gatekeeper-clients"},
        SECRET,
        algorithm="HS256",
    )
    with pytest.raises(m.MalformedToken):
        codec.decode(token, SECRET)


def test_all_failures_share_generic_description():
    for exc in (m.MalformedToken, m.InvalidSignature, m.InvalidIssuer, m.ExpiredToken):
        assert exc.description == "Invalid or expired token"
        assert exc.error_code == 401


@pytest.mark.parametrize("algorithms", [(), ("none",), ("HS256", "None")])
def test_options_reject_none_algorithm(algorithms):
    with pytest.raises(ValueError):
        m.TokenCodec(m.TokenOptions(issuer="i", audience="a", algorithms=algorithms))


def test_token_pair_as_dict():
    pair = m.TokenPair(access_token="a", refresh_token="r", expires_in=900)
    assert pair.as_dict() == {"accessToken": "a", "refreshToken": "r", "expiresIn": 900}


def test_generate_secure_token():
    t1, t2 = m.generate_secure_token(), m.generate_secure_token()
    assert len(t1) == 64
    assert t1 != t2
