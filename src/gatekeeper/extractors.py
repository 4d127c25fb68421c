"""Value extraction strategies for the current Flask request.

This module provides implementations of the Extractor protocol for pulling
the pieces of a request the security core cares about.

Implementations:
- ClientIPExtractor: client address, proxy-aware
- EmailExtractor: ``email`` field from a form or JSON body
- ChallengeTokenExtractor: reCAPTCHA response token (header or body)
- BearerExtractor: access token from ``Authorization: Bearer``
- CookieExtractor: access or refresh token from the auth cookies
- RefreshTokenExtractor: refresh token from the body, then the cookie

Security Considerations:
- Proxy headers are trivially spoofable when the app is reachable directly;
  disable ``trust_proxy_headers`` unless a proxy you control sets them
- The auth cookies are httpOnly and SameSite=Lax; cross-site POSTs from
  other origins still need CORS_ORIGINS kept tight
- Never extract tokens from URL query parameters (visible in logs/history)
"""

from __future__ import annotations

from typing import Any, Final

from flask import request

from .errors import MissingToken

ACCESS_COOKIE: Final[str] = "access_token"
REFRESH_COOKIE: Final[str] = "refresh_token"

_LOOPBACK = "127.0.0.1"

_PROXY_HEADERS = ("X-Real-IP", "X-Client-IP")


def body_field(name: str, *, strip: bool = True) -> str | None:
    """Read ``name`` from the form body, then from a JSON object body."""
    value: Any = request.form.get(name)
    if not value:
        data = request.get_json(silent=True)
        value = data.get(name) if isinstance(data, dict) else None
    if not isinstance(value, str):
        return None
    if strip:
        value = value.strip()
    return value or None


class ClientIPExtractor:
    """Determines the client IP address.

    Order: first hop of ``X-Forwarded-For``, ``X-Real-IP``, ``X-Client-IP``,
    the socket peer address, and finally loopback so callers always get a
    string to key counters on.

    Attributes:
        _trust_proxy_headers: Read forwarding headers at all.
    """

    def __init__(self, trust_proxy_headers: bool = True) -> None:
        self._trust_proxy_headers = trust_proxy_headers

    def extract(self) -> str:
        if self._trust_proxy_headers:
            forwarded = request.headers.get("X-Forwarded-For", "")
            first_hop = forwarded.split(",", 1)[0].strip()
            if first_hop:
                return first_hop

            for header in _PROXY_HEADERS:
                value = request.headers.get(header, "").strip()
                if value:
                    return value

        return request.remote_addr or _LOOPBACK


class EmailExtractor:
    """Reads the account email from the request body, if any."""

    def extract(self) -> str | None:
        return body_field("email")


class ChallengeTokenExtractor:
    """Reads the reCAPTCHA response token.

    The ``X-Recaptcha-Token`` header wins over a ``recaptchaToken`` body field.
    """

    def __init__(
        self,
        header_name: str = "X-Recaptcha-Token",
        field_name: str = "recaptchaToken",
    ) -> None:
        self._header = header_name
        self._field = field_name

    def extract(self) -> str | None:
        token = request.headers.get(self._header, "").strip()
        if token:
            return token
        return body_field(self._field)


class BearerExtractor:
    """Reads an access token sent by API clients that do not keep cookies.

    Only the ``Bearer`` scheme is accepted (any case). Tokens are compact
    JWTs, so a value containing whitespace is treated as absent.
    """

    def extract(self) -> str:
        scheme, _, token = request.headers.get("Authorization", "").strip().partition(" ")
        if scheme.lower() != "bearer":
            raise MissingToken("No bearer credentials")

        token = token.strip()
        if not token or any(c.isspace() for c in token):
            raise MissingToken("Malformed bearer credentials")
        return token


class CookieExtractor:
    """Reads a token from one of the httpOnly cookies set by the auth routes.

    Defaults to the access cookie; pass ``REFRESH_COOKIE`` for the refresh
    token.
    """

    def __init__(self, cookie_name: str = ACCESS_COOKIE) -> None:
        if not cookie_name or not cookie_name.strip():
            raise ValueError("cookie_name cannot be empty")
        self._name = cookie_name

    @property
    def cookie_name(self) -> str:
        return self._name

    def extract(self) -> str:
        token = request.cookies.get(self._name, "").strip()
        if not token:
            raise MissingToken(f"No {self._name} cookie")
        return token


class RefreshTokenExtractor:
    """Finds the refresh token for the refresh and logout endpoints.

    Browser clients send it back in the ``refresh_token`` cookie; API
    clients post it as ``refreshToken``. An explicit body field wins, so
    a client can end a specific session while holding another's cookie.
    """

    def __init__(self, field_name: str = "refreshToken", cookie_name: str = REFRESH_COOKIE) -> None:
        self._field = field_name
        self._cookie = CookieExtractor(cookie_name)

    def extract(self) -> str | None:
        token = body_field(self._field)
        if token:
            return token
        try:
            return self._cookie.extract()
        except MissingToken:
            return None
