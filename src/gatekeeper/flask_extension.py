"""Flask extension wiring the security core into request handling.

This module is the integration point between the framework-free components
and Flask. It implements a decorator-based approach for guarding routes.

Key Components:
- SecurityExtension.protect: runs the admission gate before a view
- SecurityExtension.require_auth: verifies the access token and roles
- current_token: verified token payload for the running request

Security Model:
1. Extract client IP, email and challenge token from the request
2. Ask the SecurityGate for a decision; deny with a structured JSON body
3. Extract the access token (cookie, then bearer header)
4. Verify it with the TokenCodec; store the payload in ``flask.g.token``
5. Optionally enforce roles; map failures to generic 401 / 403 responses
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from functools import wraps
from typing import TYPE_CHECKING, Any, Final

from flask import Flask, current_app, g, jsonify, request

from .errors import Forbidden, MissingToken, SecurityError
from .extractors import (
    ACCESS_COOKIE,
    BearerExtractor,
    ChallengeTokenExtractor,
    ClientIPExtractor,
    CookieExtractor,
    EmailExtractor,
)
from .gate import GateConfig, GateDenial, GateRequest, SecurityGate
from .logging import get_logger

if TYPE_CHECKING:
    from .protocols import Extractor, ViewFunc
    from .tokens import TokenCodec, TokenPayload

logger = get_logger(__name__)

_EXT_KEY: Final[str] = "gatekeeper"
"""Flask extensions registry key for SecurityExtension."""


def denial_response(denial: GateDenial) -> tuple[Any, int, dict[str, str]]:
    """Render a gate denial as a Flask response tuple."""
    return jsonify(denial.body()), denial.status, denial.headers()


def _error_response(error: SecurityError) -> tuple[Any, int]:
    return jsonify({"success": False, "message": error.description}), error.error_code


class SecurityExtension:
    """
    Flask decorator glue for the admission gate and token authentication.

    Responsibilities:
    - Build a GateRequest from the current request and evaluate it
    - Extract and verify access tokens (TokenCodec)
    - Store the verified payload in ``flask.g.token``
    - Optionally enforce roles
    - Convert denials and domain errors to JSON responses

    Usage:
        security = SecurityExtension(gate, codec, settings.JWT_ACCESS_TOKEN_SECRET)
        security.init_app(app)

        @app.post("/api/orders")
        @security.protect(API_GATE)
        @security.require_auth(roles=["admin"])
        def create_order(): ...
    """

    def __init__(
        self,
        gate: SecurityGate,
        codec: TokenCodec,
        access_secret: str,
        *,
        ip_extractor: Extractor | None = None,
        email_extractor: Extractor | None = None,
        challenge_extractor: Extractor | None = None,
        token_extractors: Sequence[Extractor] | None = None,
        ip_block_enabled: bool = True,
        rate_limit_enabled: bool = True,
    ) -> None:
        self._gate = gate
        self._codec = codec
        self._access_secret = access_secret
        self._ip: Extractor = ip_extractor or ClientIPExtractor()
        self._email: Extractor = email_extractor or EmailExtractor()
        self._challenge: Extractor = challenge_extractor or ChallengeTokenExtractor()
        self._token_extractors: tuple[Extractor, ...] = tuple(
            token_extractors or (CookieExtractor(ACCESS_COOKIE), BearerExtractor())
        )
        self._ip_block_enabled = ip_block_enabled
        self._rate_limit_enabled = rate_limit_enabled

    def init_app(self, app: Flask) -> None:
        """Register the extension on ``app.extensions``."""
        app.extensions[_EXT_KEY] = self

    @property
    def gate(self) -> SecurityGate:
        return self._gate

    def client_ip(self) -> str:
        return self._ip.extract() or "127.0.0.1"

    def gate_request(self, config: GateConfig) -> GateDenial | None:
        """Evaluate the gate for the current request.

        Used directly by views that must validate their input before any
        security component runs; decorated views go through ``protect``.
        """
        gate_req = GateRequest(
            ip=self.client_ip(),
            path=request.path,
            email=self._email.extract(),
            challenge_token=self._challenge.extract(),
        )
        # Deployment-wide switches can only turn stages off
        config = replace(
            config,
            enable_ip_block=config.enable_ip_block and self._ip_block_enabled,
            enable_rate_limit=config.enable_rate_limit and self._rate_limit_enabled,
        )
        return self._gate.evaluate(gate_req, config)

    def protect(self, config: GateConfig):
        """Decorator running the admission gate before the view.

        A denial short-circuits with the gate's status, JSON body and
        rate-limit headers; otherwise the view runs unchanged.
        """

        def decorator(view: ViewFunc) -> ViewFunc:
            @wraps(view)
            def wrapper(*args: Any, **kwargs: Any) -> Any:
                denial = self.gate_request(config)
                if denial is not None:
                    return denial_response(denial)
                return view(*args, **kwargs)

            return wrapper

        return decorator

    def _extract_token(self) -> str:
        for extractor in self._token_extractors:
            try:
                token = extractor.extract()
            except MissingToken:
                continue
            if token:
                return token
        raise MissingToken("No access token in cookie or Authorization header")

    def authenticate(self) -> TokenPayload:
        """Verify the access token of the current request.

        Raises:
            MissingToken: No token was sent.
            InvalidToken / ExpiredToken: The token failed verification.
        """
        token = self._extract_token()
        return self._codec.decode(token, self._access_secret, token_type="access")

    def require_auth(self, *, roles: Sequence[str] = ()):
        """Decorator to protect Flask routes with token authentication and optional roles.

        Error mapping:
        - ``MissingToken``                 -> HTTP 401 ("Authentication required")
        - ``InvalidToken`` / ``ExpiredToken`` -> HTTP 401 ("Invalid or expired token")
        - role not in ``roles``            -> HTTP 403 ("Forbidden")

        The precise failure reason is logged, never returned.
        """
        roles_set = frozenset(roles)

        def decorator(view: ViewFunc) -> ViewFunc:
            @wraps(view)
            def wrapper(*args: Any, **kwargs: Any) -> Any:
                try:
                    payload = self.authenticate()
                    if roles_set and payload.role not in roles_set:
                        raise Forbidden(f"Role {payload.role!r} not in {sorted(roles_set)}")
                except SecurityError as e:
                    logger.info(
                        "auth_rejected",
                        reason=type(e).__name__,
                        path=request.path,
                        ip=self.client_ip(),
                    )
                    return _error_response(e)

                g.token = payload
                return view(*args, **kwargs)

            return wrapper

        return decorator


def get_extension(app: Flask | None = None) -> SecurityExtension:
    """Return the SecurityExtension registered on ``app`` (default: current app)."""
    target = app if app is not None else current_app
    try:
        return target.extensions[_EXT_KEY]
    except KeyError:
        raise RuntimeError("SecurityExtension.init_app() has not been called") from None


def current_token() -> TokenPayload | None:
    """Verified token payload of the running request, if ``require_auth`` ran."""
    return g.get("token")
