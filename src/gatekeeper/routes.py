"""Authentication HTTP endpoints.

POST /api/auth/register         email + password -> new account (gated by REGISTER_GATE)
POST /api/auth/login            credentials -> token pair + cookies (gated by LOGIN_GATE)
POST /api/auth/refresh          refresh token -> rotated pair + cookies
POST /api/auth/logout           refresh token -> session deactivated, cookies cleared
GET  /api/auth/me               current user from the access token
POST /api/auth/change-password  signed in; every session revoked, cookies cleared
POST /api/auth/forgot-password  email -> reset token issued (gated by PASSWORD_RESET_GATE)
POST /api/auth/reset-password   reset token + new password; every session revoked

Request bodies may be JSON or form encoded. Refresh and logout also accept
the ``refresh_token`` cookie. Missing fields are rejected with 400 before any
security component sees the request.
"""

from __future__ import annotations

import re
from typing import Any

from flask import Blueprint, Response, jsonify, request

from .auth_service import EMAIL_TAKEN, AuthResult, AuthService
from .errors import StoreError
from .extractors import ACCESS_COOKIE, REFRESH_COOKIE, RefreshTokenExtractor, body_field
from .flask_extension import SecurityExtension, current_token, denial_response
from .gate import API_GATE, LOGIN_GATE, PASSWORD_RESET_GATE, REGISTER_GATE
from .logging import get_logger

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _error(status: int, message: str) -> tuple[Response, int]:
    return jsonify({"success": False, "message": message}), status


def _clear_cookies(response: Response) -> Response:
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path="/")
    return response


def create_auth_blueprint(
    service: AuthService,
    extension: SecurityExtension,
    *,
    access_cookie_max_age: int = 24 * 60 * 60,
    refresh_cookie_max_age: int = 30 * 24 * 60 * 60,
    cookie_secure: bool = False,
) -> Blueprint:
    """Build the ``/api/auth`` blueprint around an AuthService.

    Cookie lifetimes are independent of the token lifetimes: an access
    cookie outlives the access token it carries and the refresh flow
    replaces it.
    """
    bp = Blueprint("gatekeeper_auth", __name__, url_prefix="/api/auth")
    refresh_token = RefreshTokenExtractor()

    def _auth_response(result: AuthResult) -> Any:
        if not result.success or result.tokens is None or result.user is None:
            return _error(401, result.message)

        response = jsonify(
            {
                "success": True,
                "message": result.message,
                "data": {
                    "user": result.user.public(),
                    "tokens": result.tokens.as_dict(),
                },
            }
        )
        options: dict[str, Any] = {
            "httponly": True,
            "secure": cookie_secure,
            "samesite": "Lax",
            "path": "/",
        }
        response.set_cookie(
            ACCESS_COOKIE, result.tokens.access_token, max_age=access_cookie_max_age, **options
        )
        response.set_cookie(
            REFRESH_COOKIE, result.tokens.refresh_token, max_age=refresh_cookie_max_age, **options
        )
        return response

    @bp.post("/register")
    def register():
        email = body_field("email")
        password = body_field("password", strip=False)
        if not email or not password:
            return _error(400, "Email and password are required")
        if not _EMAIL_RE.match(email):
            return _error(400, "Invalid email format")

        denial = extension.gate_request(REGISTER_GATE)
        if denial is not None:
            return denial_response(denial)

        result = service.register(email, password)
        if not result.success or result.user is None:
            return _error(409 if result.message == EMAIL_TAKEN else 400, result.message)
        return (
            jsonify(
                {"success": True, "message": result.message, "data": {"user": result.user.public()}}
            ),
            201,
        )

    @bp.post("/login")
    def login():
        email = body_field("email")
        password = body_field("password", strip=False)
        if not email or not password:
            return _error(400, "Email and password are required")

        denial = extension.gate_request(LOGIN_GATE)
        if denial is not None:
            return denial_response(denial)

        try:
            result = service.login(
                email,
                password,
                ip=extension.client_ip(),
                device_info=request.headers.get("User-Agent"),
            )
        except StoreError as e:
            logger.error("login_unavailable", exc_info=True)
            return _error(e.error_code, e.description)

        return _auth_response(result)

    @bp.post("/refresh")
    def refresh():
        token = refresh_token.extract()
        if not token:
            return _error(400, "Refresh token is required")

        try:
            result = service.refresh(token)
        except StoreError as e:
            logger.error("refresh_unavailable", exc_info=True)
            return _error(e.error_code, e.description)

        return _auth_response(result)

    @bp.post("/logout")
    def logout():
        token = refresh_token.extract()
        if not token:
            return _error(400, "Refresh token is required")

        result = service.logout(token)
        if not result.success:
            return _error(500, result.message)
        return _clear_cookies(jsonify({"success": True, "message": result.message}))

    @bp.get("/me")
    @extension.require_auth()
    def me():
        token = current_token()
        if token is None:
            return _error(401, "Authentication required")
        user = service.users.find_by_id(token.subject_id)
        if user is None or not user.is_active:
            return _error(401, "User not found or deactivated")
        return jsonify({"success": True, "message": "User found", "data": {"user": user.public()}})

    @bp.post("/change-password")
    @extension.require_auth()
    def change_password():
        token = current_token()
        if token is None:
            return _error(401, "Authentication required")
        current = body_field("currentPassword", strip=False)
        new = body_field("newPassword", strip=False)
        if not current or not new:
            return _error(400, "Current and new password are required")

        try:
            result = service.change_password(token.subject_id, current, new)
        except StoreError as e:
            logger.error("change_password_unavailable", exc_info=True)
            return _error(e.error_code, e.description)

        if not result.success:
            return _error(400, result.message)
        return _clear_cookies(jsonify({"success": True, "message": result.message}))

    @bp.post("/forgot-password")
    def forgot_password():
        email = body_field("email")
        if not email:
            return _error(400, "Email is required")

        denial = extension.gate_request(PASSWORD_RESET_GATE)
        if denial is not None:
            return denial_response(denial)

        try:
            result = service.request_password_reset(email)
        except StoreError as e:
            logger.error("password_reset_unavailable", exc_info=True)
            return _error(e.error_code, e.description)
        return jsonify({"success": True, "message": result.message})

    @bp.post("/reset-password")
    def reset_password():
        token = body_field("token")
        new = body_field("newPassword", strip=False)
        if not token or not new:
            return _error(400, "Token and new password are required")

        # No email in the body, so only the IP-keyed stages apply
        denial = extension.gate_request(API_GATE)
        if denial is not None:
            return denial_response(denial)

        try:
            result = service.reset_password(token, new)
        except StoreError as e:
            logger.error("password_reset_unavailable", exc_info=True)
            return _error(e.error_code, e.description)

        if not result.success:
            return _error(400, result.message)
        return _clear_cookies(jsonify({"success": True, "message": result.message}))

    return bp
