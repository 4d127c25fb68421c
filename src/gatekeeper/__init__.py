"""
Security core and Flask extension: tokens, sessions, quotas, IP reputation
and human verification behind one admission gate.

High-level flow (per request)
-----------------------------
1. `SecurityExtension.protect(config)` (or `gate_request`) runs.
2. Extractors pull the client IP, email and reCAPTCHA token from the request.
3. `SecurityGate.evaluate(...)` runs, first denial wins:
   - IP block check (`IPReputationTracker`)          -> 403 IP_BLOCKED
   - Purpose quota (`TrafficCounter`)                -> 429 RATE_LIMIT_EXCEEDED
   - Challenge (`RecaptchaVerifier`)                 -> 400 RECAPTCHA_*
   Every denial is written to the `SecurityEventLog`.
4. `SecurityExtension.require_auth(...)` verifies the access token with
   `TokenCodec` and stores the payload in `flask.g.token`.
5. `AuthService` handles login / refresh / logout against a `SessionStore`.

Security notes
--------------
- Token failures all look alike to clients; the reason is only logged.
- Quota counters, block records and events live in one shared store; use
  Redis (`RedisStore`) whenever more than one process serves requests.
- The gate fails open on store outages, authentication fails closed.

Example usage
-------------

.. code-block:: python

    from gatekeeper import API_GATE, create_app, get_extension

    app = create_app()
    security = get_extension(app)

    @app.get("/api/orders")
    @security.protect(API_GATE)
    @security.require_auth(roles=["admin"])
    def orders():
        return {"ok": True}
"""

# Application factory
from .app import create_app

# Authentication flows
from .auth_service import AuthResult, AuthService, InMemoryUserDirectory, UserRecord

# Challenge verification
from .challenge import ChallengeConfig, ChallengeResult, RecaptchaVerifier

# Configuration
from .config import SecuritySettings, get_settings, validate_security_config

# Errors
from .errors import (
    ChallengeUnavailable,
    ExpiredToken,
    Forbidden,
    InvalidAudience,
    InvalidIssuer,
    InvalidSignature,
    InvalidToken,
    MalformedToken,
    MissingToken,
    SecurityError,
    StoreError,
    WrongTokenType,
)

# Security events
from .events import SecurityEvent, SecurityEventLog

# Extractors
from .extractors import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    BearerExtractor,
    ChallengeTokenExtractor,
    ClientIPExtractor,
    CookieExtractor,
    EmailExtractor,
    RefreshTokenExtractor,
)

# Flask extension
from .flask_extension import SecurityExtension, current_token, get_extension

# Admission gate
from .gate import (
    API_GATE,
    LOGIN_GATE,
    PASSWORD_RESET_GATE,
    REGISTER_GATE,
    GateConfig,
    GateDenial,
    GateRequest,
    SecurityGate,
)

# Protocols
from .protocols import (
    ChallengeVerifier,
    Extractor,
    KeyValueStore,
    SessionStore,
    UserDirectory,
    ViewFunc,
)

# Quotas
from .rate_limit import DEFAULT_LIMITS, Purpose, RateLimit, RateLimitResult, TrafficCounter

# IP reputation
from .reputation import BlockType, IPBlockRecord, IPReputationTracker, ReputationPolicy

# Sessions
from .sessions import InMemorySessionStore, Session, SqlSessionStore

# Key-value stores
from .stores import InMemoryStore, RedisStore

# Tokens
from .tokens import (
    ACCESS_TOKEN_TTL,
    REFRESH_TOKEN_TTL,
    TokenClaims,
    TokenCodec,
    TokenOptions,
    TokenPair,
    TokenPayload,
    generate_secure_token,
)

__all__ = [
    # Errors
    "SecurityError",
    "MissingToken",
    "InvalidToken",
    "MalformedToken",
    "InvalidSignature",
    "InvalidIssuer",
    "InvalidAudience",
    "WrongTokenType",
    "ExpiredToken",
    "Forbidden",
    "StoreError",
    "ChallengeUnavailable",
    # Protocols
    "ChallengeVerifier",
    "Extractor",
    "KeyValueStore",
    "SessionStore",
    "UserDirectory",
    "ViewFunc",
    # Configuration
    "SecuritySettings",
    "get_settings",
    "validate_security_config",
    # Key-value stores
    "InMemoryStore",
    "RedisStore",
    # Tokens
    "ACCESS_TOKEN_TTL",
    "REFRESH_TOKEN_TTL",
    "TokenClaims",
    "TokenCodec",
    "TokenOptions",
    "TokenPair",
    "TokenPayload",
    "generate_secure_token",
    # Sessions
    "InMemorySessionStore",
    "Session",
    "SqlSessionStore",
    # Quotas
    "DEFAULT_LIMITS",
    "Purpose",
    "RateLimit",
    "RateLimitResult",
    "TrafficCounter",
    # IP reputation
    "BlockType",
    "IPBlockRecord",
    "IPReputationTracker",
    "ReputationPolicy",
    # Challenge verification
    "ChallengeConfig",
    "ChallengeResult",
    "RecaptchaVerifier",
    # Security events
    "SecurityEvent",
    "SecurityEventLog",
    # Admission gate
    "API_GATE",
    "LOGIN_GATE",
    "PASSWORD_RESET_GATE",
    "REGISTER_GATE",
    "GateConfig",
    "GateDenial",
    "GateRequest",
    "SecurityGate",
    # Extractors
    "BearerExtractor",
    "ChallengeTokenExtractor",
    "ClientIPExtractor",
    "CookieExtractor",
    "EmailExtractor",
    "RefreshTokenExtractor",
    "ACCESS_COOKIE",
    "REFRESH_COOKIE",
    # Flask extension
    "SecurityExtension",
    "current_token",
    "get_extension",
    # Authentication flows
    "AuthResult",
    "AuthService",
    "InMemoryUserDirectory",
    "UserRecord",
    # Application factory
    "create_app",
]
