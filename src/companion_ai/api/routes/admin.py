"""Operator login endpoints for the public API.

A successful login stores a signed admin token in the httpOnly
``admin-auth`` cookie, which the admin middleware then accepts on the
queue status endpoint.
"""

from __future__ import annotations

import hmac
import json

import jwt
from aiohttp import web

from companion_ai.api.auth import (
    ADMIN_COOKIE_NAME,
    ADMIN_TOKEN_TTL_SECONDS,
    create_admin_token,
    extract_admin_token,
    validate_admin_token,
)
from companion_ai.api.middleware import client_key
from companion_ai.logging import get_logger

log = get_logger("companion_ai.api.routes.admin")


def _matches(provided: str, expected: str) -> bool:
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def handle_admin_login(request: web.Request) -> web.Response:
    """POST /api/v1/admin/auth — exchange operator credentials for a cookie.

    Body: ``{"username": str, "password": str}``
    """
    secret: str | None = request.app["admin_secret"]
    credentials: tuple[str, str] | None = request.app["admin_credentials"]
    if not secret or credentials is None:
        return web.json_response({"error": "Admin access is not configured"}, status=503)

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return web.json_response({"error": "Invalid JSON body"}, status=400)
    if not isinstance(body, dict):
        return web.json_response({"error": "Body must be a JSON object"}, status=400)

    username = body.get("username")
    password = body.get("password")
    if not isinstance(username, str) or not isinstance(password, str):
        return web.json_response({"error": "username and password are required"}, status=400)

    expected_username, expected_password = credentials
    # Both comparisons always run
    valid = _matches(username, expected_username) & _matches(password, expected_password)
    if not valid:
        log.warning("admin_login_failed", client=client_key(request))
        return web.json_response({"error": "Invalid credentials"}, status=401)

    token = create_admin_token(username, secret)
    response = web.json_response({"success": True})
    response.set_cookie(
        ADMIN_COOKIE_NAME,
        token,
        httponly=True,
        secure=request.app["admin_cookie_secure"],
        samesite="Strict",
        max_age=ADMIN_TOKEN_TTL_SECONDS,
        path="/",
    )
    log.info("admin_login", username=username)
    return response


async def handle_admin_session(request: web.Request) -> web.Response:
    """GET /api/v1/admin/auth — report whether the caller holds a valid token."""
    secret: str | None = request.app["admin_secret"]
    token = extract_admin_token(request)
    if not secret or not token:
        return web.json_response({"authenticated": False})
    try:
        validate_admin_token(token, secret)
    except jwt.InvalidTokenError:
        return web.json_response({"authenticated": False})
    return web.json_response({"authenticated": True})


async def handle_admin_logout(request: web.Request) -> web.Response:
    """POST /api/v1/admin/logout — expire the admin cookie."""
    response = web.json_response({"success": True})
    response.del_cookie(ADMIN_COOKIE_NAME, path="/")
    return response
