"""Application factory.

Builds a Flask app with every security component wired from
SecuritySettings:

    store      RedisStore when REDIS_URL is set, InMemoryStore otherwise
    sessions   SqlSessionStore on DATABASE_URL
    gate       IP reputation + quotas + reCAPTCHA (when keys are configured)
    routes     /api/auth/*, /api/health, /api/security/recaptcha-config
    resets     password-reset tokens in the shared store, handed to send_reset_token
    cors       credentialed CORS for CORS_ORIGINS, when any are configured

Collaborators can be injected, which is how the test-suite runs the whole
stack without Redis, a database file or network access.
"""

from __future__ import annotations

import httpx
from flask import Flask, jsonify
from flask_cors import CORS

from .auth_service import AuthService, InMemoryUserDirectory, ResetTokenSender
from .challenge import ChallengeConfig, RecaptchaVerifier
from .config import SecuritySettings, get_settings, validate_security_config
from .events import SecurityEventLog
from .extractors import ClientIPExtractor
from .flask_extension import SecurityExtension
from .gate import SecurityGate
from .logging import configure_logging, get_logger
from .protocols import KeyValueStore, SessionStore, UserDirectory
from .rate_limit import TrafficCounter
from .reputation import IPReputationTracker, ReputationPolicy
from .routes import create_auth_blueprint
from .sessions import SqlSessionStore
from .stores import InMemoryStore, RedisStore
from .tokens import TokenCodec, TokenOptions

logger = get_logger(__name__)


def build_store(settings: SecuritySettings) -> KeyValueStore:
    if settings.REDIS_URL:
        return RedisStore.from_url(settings.REDIS_URL)
    return InMemoryStore()


def build_session_store(settings: SecuritySettings) -> SessionStore:
    store = SqlSessionStore.from_url(settings.DATABASE_URL)
    store.create_all()
    return store


def create_app(
    settings: SecuritySettings | None = None,
    *,
    store: KeyValueStore | None = None,
    sessions: SessionStore | None = None,
    users: UserDirectory | None = None,
    http_client: httpx.Client | None = None,
    send_reset_token: ResetTokenSender | None = None,
) -> Flask:
    """Create the Flask application.

    Args:
        settings: Configuration; defaults to the environment.
        store: Shared key-value store; built from ``REDIS_URL`` when omitted.
        sessions: Refresh-session store; built from ``DATABASE_URL`` when omitted.
        users: Account lookup; an empty in-memory directory when omitted.
        http_client: httpx client for reCAPTCHA verification.
        send_reset_token: Delivers password-reset tokens (email, queue, ...).
    """
    settings = settings or get_settings()
    configure_logging(settings)
    for warning in validate_security_config(settings):
        logger.warning("security_config_warning", detail=warning)

    store = store if store is not None else build_store(settings)
    sessions = sessions if sessions is not None else build_session_store(settings)
    users = users if users is not None else InMemoryUserDirectory()

    reputation = IPReputationTracker(
        store,
        ReputationPolicy(
            failed_attempts_threshold=settings.IP_FAILED_ATTEMPTS_THRESHOLD,
            block_duration_seconds=settings.IP_BLOCK_DURATION_SECONDS,
            permanent_block_threshold=settings.IP_PERMANENT_BLOCK_THRESHOLD,
            failed_attempts_ttl_seconds=settings.IP_FAILED_ATTEMPTS_TTL_SECONDS,
        ),
    )
    recaptcha = RecaptchaVerifier(
        ChallengeConfig(
            site_key=settings.RECAPTCHA_SITE_KEY,
            secret_key=settings.RECAPTCHA_SECRET_KEY,
            version=settings.RECAPTCHA_VERSION,  # type: ignore[arg-type]
            min_score=settings.RECAPTCHA_MIN_SCORE,
            verify_url=settings.RECAPTCHA_VERIFY_URL,
            timeout_seconds=settings.RECAPTCHA_TIMEOUT_SECONDS,
        ),
        client=http_client,
    )
    gate = SecurityGate(
        reputation,
        TrafficCounter(store),
        SecurityEventLog(store, ttl_seconds=settings.SECURITY_EVENT_TTL_SECONDS),
        challenge=recaptcha,
    )

    codec = TokenCodec(TokenOptions(issuer=settings.JWT_ISSUER, audience=settings.JWT_AUDIENCE))
    extension = SecurityExtension(
        gate,
        codec,
        settings.JWT_ACCESS_TOKEN_SECRET,
        ip_extractor=ClientIPExtractor(trust_proxy_headers=settings.TRUST_PROXY_HEADERS),
        ip_block_enabled=settings.IP_BLOCK_ENABLED,
        rate_limit_enabled=settings.RATE_LIMIT_ENABLED,
    )
    service = AuthService(
        users,
        sessions,
        codec,
        reputation,
        access_secret=settings.JWT_ACCESS_TOKEN_SECRET,
        refresh_secret=settings.refresh_secret,
        access_ttl=settings.ACCESS_TOKEN_TTL_SECONDS,
        refresh_ttl=settings.REFRESH_TOKEN_TTL_SECONDS,
        reset_store=store,
        reset_ttl=settings.PASSWORD_RESET_TOKEN_TTL_SECONDS,
        send_reset_token=send_reset_token,
    )

    app = Flask(__name__)
    if settings.CORS_ORIGINS:
        CORS(
            app,
            origins=settings.CORS_ORIGINS,
            supports_credentials=True,
            allow_headers=["Content-Type", "Authorization", "X-Recaptcha-Token"],
            expose_headers=[
                "X-RateLimit-Limit",
                "X-RateLimit-Remaining",
                "X-RateLimit-Reset",
                "Retry-After",
            ],
            methods=["GET", "POST", "OPTIONS"],
            max_age=3600,
        )
    extension.init_app(app)
    app.extensions["gatekeeper_auth"] = service
    app.register_blueprint(
        create_auth_blueprint(
            service,
            extension,
            access_cookie_max_age=settings.ACCESS_COOKIE_MAX_AGE,
            refresh_cookie_max_age=settings.REFRESH_COOKIE_MAX_AGE,
            cookie_secure=settings.COOKIE_SECURE,
        )
    )

    @app.get("/api/health")
    def health():
        return jsonify({"status": "ok"})

    @app.get("/api/security/recaptcha-config")
    def recaptcha_config():
        return jsonify({"enabled": recaptcha.is_enabled(), **recaptcha.client_config()})

    logger.info(
        "app_created",
        environment=settings.ENVIRONMENT,
        redis=bool(settings.REDIS_URL),
        recaptcha=recaptcha.is_enabled(),
    )
    return app
