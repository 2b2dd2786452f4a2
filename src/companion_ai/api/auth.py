"""Admin token management (JWT) for the operator endpoints."""

from __future__ import annotations

import time
from typing import Any

import jwt
from aiohttp import web

from companion_ai.logging import get_logger

log = get_logger("companion_ai.api.auth")

ADMIN_COOKIE_NAME = "admin-auth"
ADMIN_TOKEN_TTL_SECONDS = 8 * 3600


def create_admin_token(
    subject: str,
    secret: str,
    *,
    expiry_seconds: int = ADMIN_TOKEN_TTL_SECONDS,
) -> str:
    """Create a signed HS256 admin token.

    Args:
        subject: Operator identifier stored in ``sub``.
        secret: JWT signing secret.
        expiry_seconds: Token lifetime in seconds (default 8h).
    """
    now = int(time.time())
    payload = {"sub": subject, "role": "admin", "iat": now, "exp": now + expiry_seconds}
    return jwt.encode(payload, secret, algorithm="HS256")


def validate_admin_token(token: str, secret: str) -> dict[str, Any]:
    """Validate and decode an admin token.

    Raises:
        jwt.ExpiredSignatureError: Token has expired.
        jwt.InvalidTokenError: Token is invalid or lacks the admin role.
    """
    payload: dict[str, Any] = jwt.decode(token, secret, algorithms=["HS256"])
    if payload.get("role") != "admin":
        raise jwt.InvalidTokenError("Token does not carry the admin role")
    return payload


def extract_admin_token(request: web.Request) -> str | None:
    """Read the admin token from the cookie or a Bearer header."""
    token = request.cookies.get(ADMIN_COOKIE_NAME)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None
