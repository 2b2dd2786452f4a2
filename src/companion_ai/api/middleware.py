"""Middleware for the public API server.

Provides admin authentication for operator paths and per-client rate
limiting for chat and login requests.
"""

from __future__ import annotations

import math
from typing import Any

import jwt
from aiohttp import web

from companion_ai.api.auth import extract_admin_token, validate_admin_token
from companion_ai.logging import get_logger
from companion_ai.queue.rate_limiter import KeyedRateLimiter

log = get_logger("companion_ai.api.middleware")

# Paths that require an admin token
ADMIN_PATHS = frozenset({"/api/v1/queue/status"})

# Paths subject to per-client rate limiting
RATE_LIMITED_PATHS = frozenset({"/api/v1/chat", "/api/v1/admin/auth"})


def client_key(request: web.Request) -> str:
    """Identify the caller, honouring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote or "unknown"


def create_admin_auth_middleware(admin_secret: str | None) -> Any:
    """Create admin authentication middleware.

    Args:
        admin_secret: HS256 secret, or None to disable admin endpoints.
    """

    @web.middleware
    async def admin_auth_middleware(request: web.Request, handler: Any) -> web.Response:
        if request.path not in ADMIN_PATHS:
            return await handler(request)  # type: ignore[no-any-return]

        if not admin_secret:
            return web.json_response({"error": "Admin access is not configured"}, status=503)

        token = extract_admin_token(request)
        if not token:
            return web.json_response({"error": "Unauthorized"}, status=401)

        try:
            request["admin"] = validate_admin_token(token, admin_secret)
        except jwt.InvalidTokenError:
            log.warning("admin_token_rejected", path=request.path)
            return web.json_response({"error": "Unauthorized"}, status=401)

        return await handler(request)  # type: ignore[no-any-return]

    return admin_auth_middleware


def create_rate_limit_middleware(rate_limiter: KeyedRateLimiter) -> Any:
    """Create per-client rate limiting middleware."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler: Any) -> web.Response:
        if request.path not in RATE_LIMITED_PATHS:
            return await handler(request)  # type: ignore[no-any-return]

        key = client_key(request)
        allowed, resets_in = rate_limiter.check(key)
        if not allowed:
            retry_after = max(1, math.ceil(resets_in))
            log.warning("rate_limited", client=key, retry_after=retry_after)
            return web.json_response(
                {"error": "Rate limit exceeded", "retry_after": retry_after},
                status=429,
                headers={"Retry-After": str(retry_after)},
            )

        return await handler(request)  # type: ignore[no-any-return]

    return rate_limit_middleware
