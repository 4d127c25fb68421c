"""Google reCAPTCHA verification service.

The external service decides whether the response token is genuine; the
score policy (v3) is applied here, locally. A token the service accepts with
a score below ``min_score`` is still a failure.

``verify`` never raises: network, HTTP and parsing problems come back as a
failed ChallengeResult.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from .errors import ChallengeUnavailable
from .logging import get_logger

logger = get_logger(__name__)

RECAPTCHA_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"


@dataclass(frozen=True, slots=True)
class ChallengeConfig:
    """reCAPTCHA configuration.

    Attributes:
        site_key: Public key used by the front end.
        secret_key: Shared secret sent to the verification endpoint.
        version: ``v2`` (checkbox, no score) or ``v3`` (score based).
        min_score: Lowest acceptable v3 score, in [0, 1].
        verify_url: Verification endpoint.
        timeout_seconds: Per-request timeout; the service must not hang requests.
    """

    site_key: str = ""
    secret_key: str = ""
    version: Literal["v2", "v3"] = "v3"
    min_score: float = 0.5
    verify_url: str = RECAPTCHA_VERIFY_URL
    timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_score <= 1.0:
            raise ValueError(f"min_score must be between 0 and 1, got {self.min_score}")
        if self.version not in ("v2", "v3"):
            raise ValueError(f"version must be 'v2' or 'v3', got {self.version!r}")


@dataclass(frozen=True, slots=True)
class ChallengeResult:
    success: bool
    score: float | None = None
    action: str | None = None
    error: str | None = None
    error_codes: tuple[str, ...] = field(default_factory=tuple)


class RecaptchaVerifier:
    """Verifies reCAPTCHA response tokens against Google's siteverify API.

    Example:
        ```python
        verifier = RecaptchaVerifier(ChallengeConfig(site_key=..., secret_key=...))

        if verifier.is_enabled():
            result = verifier.verify(token, remote_ip="203.0.113.7", expected_action="login")
            if not result.success:
                ...  # 400 RECAPTCHA_FAILED
        ```

    Attributes:
        _config: Keys, version and score policy.
        _client: httpx client; injectable for tests (``httpx.MockTransport``).
    """

    def __init__(self, config: ChallengeConfig, client: httpx.Client | None = None) -> None:
        self._config = config
        self._client = client or httpx.Client(timeout=config.timeout_seconds)

    def is_enabled(self) -> bool:
        return bool(self._config.site_key and self._config.secret_key)

    def client_config(self) -> dict[str, Any]:
        """Public settings for the front end. Never includes the secret."""
        return {
            "siteKey": self._config.site_key,
            "version": self._config.version,
            "minScore": self._config.min_score,
        }

    def _call_service(self, response_token: str, remote_ip: str | None) -> dict[str, Any]:
        payload = {
            "secret": self._config.secret_key,
            "response": response_token,
        }
        if remote_ip:
            payload["remoteip"] = remote_ip

        try:
            response = self._client.post(self._config.verify_url, data=payload)
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPError as e:
            raise ChallengeUnavailable(f"reCAPTCHA request failed: {e}") from e
        except ValueError as e:
            raise ChallengeUnavailable("reCAPTCHA returned invalid JSON") from e

        if not isinstance(result, dict):
            raise ChallengeUnavailable("reCAPTCHA returned an unexpected payload")
        return result

    def verify(
        self,
        response_token: str,
        remote_ip: str | None = None,
        expected_action: str | None = None,
    ) -> ChallengeResult:
        """Verify a response token.

        Args:
            response_token: Token produced by the reCAPTCHA widget.
            remote_ip: Client IP, forwarded to the service when known.
            expected_action: v3 action the token must have been minted for.

        Returns:
            ChallengeResult; ``success`` is True only if the service accepted
            the token and the local score/action policy passed.
        """
        if not response_token:
            return ChallengeResult(success=False, error="No reCAPTCHA token provided")

        try:
            result = self._call_service(response_token, remote_ip)
        except ChallengeUnavailable as e:
            logger.error("recaptcha_api_error", error=str(e), ip_address=remote_ip)
            return ChallengeResult(success=False, error="Failed to verify reCAPTCHA")

        raw_score = result.get("score")
        score = float(raw_score) if isinstance(raw_score, (int, float)) else None
        action = result.get("action") if isinstance(result.get("action"), str) else None
        error_codes = tuple(str(c) for c in result.get("error-codes", []) or [])

        if not result.get("success"):
            logger.warning(
                "recaptcha_verification_failed",
                error_codes=list(error_codes),
                ip_address=remote_ip,
            )
            return ChallengeResult(
                success=False,
                score=score,
                action=action,
                error="reCAPTCHA verification failed",
                error_codes=error_codes,
            )

        if self._config.version == "v3":
            min_score = self._config.min_score
            if score is None or score < min_score:
                logger.warning(
                    "recaptcha_score_too_low",
                    score=score,
                    min_score=min_score,
                    ip_address=remote_ip,
                )
                return ChallengeResult(
                    success=False,
                    score=score,
                    action=action,
                    error=f"reCAPTCHA score too low: {score} (minimum: {min_score})",
                )

            if expected_action and action and action != expected_action:
                logger.warning(
                    "recaptcha_action_mismatch",
                    action=action,
                    expected_action=expected_action,
                    ip_address=remote_ip,
                )
                return ChallengeResult(
                    success=False,
                    score=score,
                    action=action,
                    error="reCAPTCHA action mismatch",
                )

        logger.info("recaptcha_verification_success", score=score, ip_address=remote_ip)
        return ChallengeResult(success=True, score=score, action=action)
