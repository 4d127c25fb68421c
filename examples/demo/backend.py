"""
Demo API guarded by gatekeeper.

Run with:
    JWT_ACCESS_TOKEN_SECRET=change-me-change-me flask --app examples.demo.backend run

Then:
    curl -c jar -X POST localhost:5000/api/auth/login \
         -H 'Content-Type: application/json' \
         -d '{"email": "demo@example.com", "password": "demo-password"}'
    curl -b jar localhost:5000/api/orders

Password-reset links are written to the log instead of being emailed.
"""

from flask import Flask, jsonify

from gatekeeper import (
    API_GATE,
    InMemoryUserDirectory,
    create_app,
    current_token,
    get_extension,
)
from gatekeeper.logging import get_logger

logger = get_logger(__name__)


def log_reset_link(user, token: str) -> None:
    logger.info("demo_reset_link", email=user.email, link=f"/reset-password?token={token}")


def build() -> Flask:
    users = InMemoryUserDirectory()
    users.add_user("demo@example.com", "demo-password")
    users.add_user("admin@example.com", "admin-password", role="admin")

    app = create_app(users=users, send_reset_token=log_reset_link)
    security = get_extension(app)

    @app.get("/api/orders")
    @security.protect(API_GATE)
    @security.require_auth()
    def orders():
        token = current_token()
        return jsonify({"success": True, "data": {"owner": token.email, "orders": []}})

    @app.post("/api/admin/ip/<ip>/unblock")
    @security.protect(API_GATE)
    @security.require_auth(roles=["admin"])
    def unblock(ip: str):
        security.gate.reputation.manual_unblock(ip)
        return jsonify({"success": True, "message": f"{ip} unblocked"})

    return app


app = build()
