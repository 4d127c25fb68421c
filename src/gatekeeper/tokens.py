"""Signed token issuance and verification using PyJWT.

This module provides the TokenCodec which:
- Issues compact HS256 tokens (``header.payload.signature``, URL-safe)
- Embeds issued-at, expiry, issuer, audience, token id and token type
- Verifies signature, expiry, issuer and audience
- Maps PyJWT exceptions to domain-specific error types

Tokens carry a fixed, typed payload (TokenPayload). There is no open claims
map: the subject is always ``sub`` and the session always ``sid``.
"""

from __future__ import annotations

import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Final, Literal

import jwt

from .errors import (
    ExpiredToken,
    InvalidAudience,
    InvalidIssuer,
    InvalidSignature,
    InvalidToken,
    MalformedToken,
    SecurityError,
    WrongTokenType,
)
from .logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_TTL: Final[int] = 15 * 60
"""Access-token lifetime in seconds."""

REFRESH_TOKEN_TTL: Final[int] = 7 * 24 * 60 * 60
"""Refresh-token lifetime in seconds."""

type TokenType = Literal["access", "refresh"]


@dataclass(frozen=True, slots=True)
class TokenClaims:
    """Caller-supplied part of a token.

    Attributes:
        subject_id: User id the token is issued for.
        email: User email at issuance time.
        role: User role (``user``, ``admin``, ...).
        session_id: Refresh session this token belongs to.
    """

    subject_id: str
    email: str
    role: str
    session_id: str


@dataclass(frozen=True, slots=True)
class TokenPayload:
    """Verified token contents.

    ``issued_at`` and ``expires_at`` are Unix timestamps in seconds.
    """

    subject_id: str
    email: str
    role: str
    session_id: str
    token_id: str
    token_type: TokenType
    issued_at: int
    expires_at: int
    issuer: str
    audience: str

    @property
    def claims(self) -> TokenClaims:
        return TokenClaims(
            subject_id=self.subject_id,
            email=self.email,
            role=self.role,
            session_id=self.session_id,
        )


@dataclass(frozen=True, slots=True)
class TokenPair:
    """Access + refresh token returned by login and refresh.

    Attributes:
        access_token: Short-lived token for API calls.
        refresh_token: Long-lived token, persisted server-side as a session.
        expires_in: Access-token lifetime in seconds.
    """

    access_token: str
    refresh_token: str
    expires_in: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
        }


@dataclass(frozen=True, slots=True)
class TokenOptions:
    """Configuration for token issuance and validation.

    Attributes:
        issuer: Value written to and required in ``iss``.
        audience: Value written to and required in ``aud``.
        algorithms: Allowed signing algorithms. The first one signs. MUST be
            an explicit allowlist to prevent algorithm confusion attacks.
        leeway: Clock skew tolerance in seconds for expiry validation.

    Security Invariants:
        - Never allow algorithm='none'
        - Keep leeway minimal (<30 seconds)
    """

    issuer: str
    audience: str
    algorithms: tuple[str, ...] = ("HS256",)
    leeway: int = 0


_REQUIRED_CLAIMS: Final[tuple[str, ...]] = (
    "sub",
    "email",
    "role",
    "sid",
    "jti",
    "typ",
    "iat",
    "exp",
    "iss",
    "aud",
)


class TokenCodec:
    """Issues and verifies compact signed tokens without external services.

    The codec is a pure function of its inputs and the wall clock. Secrets are
    passed per call so the same codec serves both access tokens and refresh
    tokens, which are signed with different secrets.

    Example:
        ```python
        codec = TokenCodec(TokenOptions(issuer="gatekeeper", audience="web"))

        token = codec.issue(claims, secret, ttl_seconds=ACCESS_TOKEN_TTL)

        payload = codec.verify(token, secret)
        if payload is None:
            ...  # unauthenticated
        ```
    """

    def __init__(self, options: TokenOptions) -> None:
        if not options.algorithms or "none" in (a.lower() for a in options.algorithms):
            raise ValueError("algorithms must be a non-empty allowlist without 'none'")
        self._opt = options

    def issue(
        self,
        claims: TokenClaims,
        secret: str,
        ttl_seconds: int,
        *,
        token_type: TokenType = "access",
        issuer: str | None = None,
        audience: str | None = None,
    ) -> str:
        """Sign a new token.

        Args:
            claims: Subject, email, role and session to embed.
            secret: HMAC secret.
            ttl_seconds: Lifetime; ``exp = iat + ttl_seconds``.
            token_type: ``access`` or ``refresh``.
            issuer: Overrides the configured issuer.
            audience: Overrides the configured audience.

        Returns:
            ``header.payload.signature`` in URL-safe base64.

        Raises:
            ValueError: If ``ttl_seconds`` is not positive.
        """
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")

        now = int(time.time())
        payload = {
            "sub": claims.subject_id,
            "email": claims.email,
            "role": claims.role,
            "sid": claims.session_id,
            # Unique per token so two tokens issued in the same second differ
            "jti": uuid.uuid4().hex,
            "typ": token_type,
            "iat": now,
            "exp": now + ttl_seconds,
            "iss": issuer or self._opt.issuer,
            "aud": audience or self._opt.audience,
        }
        return jwt.encode(payload, secret, algorithm=self._opt.algorithms[0])

    def decode(
        self,
        token: str,
        secret: str,
        *,
        token_type: TokenType | None = None,
        issuer: str | None = None,
        audience: str | None = None,
    ) -> TokenPayload:
        """Verify a token and return its payload.

        Raises:
            MalformedToken: Not a signed token, or required claims missing.
            InvalidSignature: MAC mismatch under ``secret``.
            ExpiredToken: ``exp`` has passed (accounting for leeway).
            InvalidIssuer: ``iss`` differs from the expected issuer.
            InvalidAudience: ``aud`` differs from the expected audience.
            WrongTokenType: ``typ`` differs from ``token_type``.
        """
        if not token or not isinstance(token, str) or token.count(".") != 2:
            raise MalformedToken("Token is not a three-segment signed token")

        try:
            decoded = jwt.decode(
                token,
                secret,
                algorithms=list(self._opt.algorithms),
                issuer=issuer or self._opt.issuer,
                audience=audience or self._opt.audience,
                leeway=self._opt.leeway,
                options={"require": ["exp", "iat", "iss", "aud", "sub"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise ExpiredToken("Token has expired") from e
        except jwt.InvalidSignatureError as e:
            # Must precede DecodeError, which it subclasses
            raise InvalidSignature("Signature verification failed") from e
        except jwt.InvalidIssuerError as e:
            raise InvalidIssuer("Token issuer mismatch") from e
        except jwt.InvalidAudienceError as e:
            raise InvalidAudience("Token audience mismatch") from e
        except (jwt.DecodeError, jwt.MissingRequiredClaimError) as e:
            raise MalformedToken(f"Token could not be decoded: {e}") from e
        except jwt.InvalidTokenError as e:
            raise InvalidToken(f"Token validation failed: {e}") from e

        payload = self._to_payload(decoded)

        if token_type is not None and payload.token_type != token_type:
            raise WrongTokenType(f"Expected {token_type} token, got {payload.token_type}")

        return payload

    def verify(
        self,
        token: str,
        secret: str,
        *,
        token_type: TokenType | None = None,
        issuer: str | None = None,
        audience: str | None = None,
    ) -> TokenPayload | None:
        """Verify a token, returning None instead of raising.

        Any failure means "unauthenticated". The reason is logged here and
        never returned, so callers cannot leak it to clients.
        """
        try:
            return self.decode(
                token,
                secret,
                token_type=token_type,
                issuer=issuer,
                audience=audience,
            )
        except SecurityError as e:
            logger.info("token_rejected", reason=type(e).__name__, token_type=token_type)
            return None

    @staticmethod
    def _to_payload(decoded: dict[str, Any]) -> TokenPayload:
        missing = [name for name in _REQUIRED_CLAIMS if name not in decoded]
        if missing:
            raise MalformedToken(f"Token missing claims: {', '.join(missing)}")

        token_type = decoded["typ"]
        if token_type not in ("access", "refresh"):
            raise MalformedToken("Token has an unknown type")

        text_fields = ("sub", "email", "role", "sid", "jti", "iss", "aud")
        if not all(isinstance(decoded[name], str) for name in text_fields):
            raise MalformedToken("Token claims have unexpected types")

        try:
            issued_at = int(decoded["iat"])
            expires_at = int(decoded["exp"])
        except (TypeError, ValueError) as e:
            raise MalformedToken("Token timestamps are not numeric") from e

        return TokenPayload(
            subject_id=decoded["sub"],
            email=decoded["email"],
            role=decoded["role"],
            session_id=decoded["sid"],
            token_id=decoded["jti"],
            token_type=token_type,
            issued_at=issued_at,
            expires_at=expires_at,
            issuer=decoded["iss"],
            audience=decoded["aud"],
        )


def generate_secure_token(num_bytes: int = 32) -> str:
    """Random hex token for email verification and password reset links."""
    return secrets.token_hex(num_bytes)
