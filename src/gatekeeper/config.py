"""
Security configuration.
Uses Pydantic Settings for environment-based configuration.
"""

from __future__ import annotations

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

_MIN_SECRET_LENGTH = 16


class SecuritySettings(BaseSettings):
    """Security settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    ENVIRONMENT: str = Field(default="development", pattern="^(development|staging|production)$")
    LOG_LEVEL: str = "INFO"

    # Tokens
    JWT_ACCESS_TOKEN_SECRET: str = Field(min_length=_MIN_SECRET_LENGTH)
    # Falls back to the access secret when unset
    JWT_REFRESH_TOKEN_SECRET: str | None = None
    JWT_ISSUER: str = "gatekeeper"
    JWT_AUDIENCE: str = "gatekeeper-clients"
    ACCESS_TOKEN_TTL_SECONDS: int = Field(default=900, gt=0)
    REFRESH_TOKEN_TTL_SECONDS: int = Field(default=7 * 24 * 60 * 60, gt=0)
    PASSWORD_RESET_TOKEN_TTL_SECONDS: int = Field(default=60 * 60, gt=0)

    # Cookies. Intentionally longer than the tokens they carry; the refresh
    # flow keeps the session alive once the access token inside has expired.
    ACCESS_COOKIE_MAX_AGE: int = 24 * 60 * 60
    REFRESH_COOKIE_MAX_AGE: int = 30 * 24 * 60 * 60
    COOKIE_SECURE: bool = False

    # Storage
    REDIS_URL: str | None = None
    DATABASE_URL: str = "sqlite:///gatekeeper.db"

    # Feature switches
    RATE_LIMIT_ENABLED: bool = True
    IP_BLOCK_ENABLED: bool = True
    TRUST_PROXY_HEADERS: bool = True

    # Browser front ends allowed to call the API with credentials (JSON list)
    CORS_ORIGINS: list[str] = Field(default_factory=list)

    # IP blocking
    IP_FAILED_ATTEMPTS_THRESHOLD: int = Field(default=10, ge=1)
    IP_BLOCK_DURATION_SECONDS: int = Field(default=24 * 60 * 60, gt=0)
    IP_PERMANENT_BLOCK_THRESHOLD: int = Field(default=3, ge=1)
    IP_FAILED_ATTEMPTS_TTL_SECONDS: int = Field(default=24 * 60 * 60, gt=0)

    # reCAPTCHA
    RECAPTCHA_SITE_KEY: str = ""
    RECAPTCHA_SECRET_KEY: str = ""
    RECAPTCHA_VERSION: str = Field(default="v3", pattern="^(v2|v3)$")
    RECAPTCHA_MIN_SCORE: float = 0.5
    RECAPTCHA_VERIFY_URL: str = "https://www.google.com/recaptcha/api/siteverify"
    RECAPTCHA_TIMEOUT_SECONDS: float = 10.0

    # Audit
    SECURITY_EVENT_TTL_SECONDS: int = 7 * 24 * 60 * 60

    @field_validator("JWT_REFRESH_TOKEN_SECRET")
    @classmethod
    def validate_refresh_secret(cls, v: str | None) -> str | None:
        if v is not None and len(v) < _MIN_SECRET_LENGTH:
            raise ValueError(
                f"JWT_REFRESH_TOKEN_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
            )
        return v

    @field_validator("RECAPTCHA_MIN_SCORE")
    @classmethod
    def validate_min_score(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("RECAPTCHA_MIN_SCORE must be between 0 and 1")
        return v

    @property
    def refresh_secret(self) -> str:
        return self.JWT_REFRESH_TOKEN_SECRET or self.JWT_ACCESS_TOKEN_SECRET

    @property
    def recaptcha_enabled(self) -> bool:
        return bool(self.RECAPTCHA_SITE_KEY and self.RECAPTCHA_SECRET_KEY)


def validate_security_config(settings: SecuritySettings) -> list[str]:
    """Return human-readable warnings for risky but loadable configurations.

    Hard errors (missing/short secrets, out-of-range scores) are rejected by
    the settings model itself; this only reports what still deserves a look.
    """
    warnings: list[str] = []

    if settings.REDIS_URL is None and settings.ENVIRONMENT != "development":
        warnings.append(
            "REDIS_URL is not set; rate limits and IP blocks are per process"
        )

    if bool(settings.RECAPTCHA_SITE_KEY) != bool(settings.RECAPTCHA_SECRET_KEY):
        warnings.append(
            "reCAPTCHA site key or secret key is missing; challenge verification is disabled"
        )

    if settings.JWT_REFRESH_TOKEN_SECRET is None:
        warnings.append("JWT_REFRESH_TOKEN_SECRET is not set; refresh tokens share the access secret")

    if settings.ENVIRONMENT == "production" and not settings.COOKIE_SECURE:
        warnings.append("COOKIE_SECURE is disabled in production")

    return warnings


@lru_cache
def get_settings() -> SecuritySettings:
    return SecuritySettings()  # type: ignore[call-arg]
