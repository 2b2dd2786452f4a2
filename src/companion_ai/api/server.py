"""Public API server for the companion web app.

Runs an aiohttp application exposing the queued chat endpoint, a health
check, operator login/logout and the admin queue status endpoint.
"""

from __future__ import annotations

from typing import Any

from aiohttp import web

from companion_ai.api.middleware import (
    create_admin_auth_middleware,
    create_rate_limit_middleware,
)
from companion_ai.api.routes.admin import (
    handle_admin_login,
    handle_admin_logout,
    handle_admin_session,
)
from companion_ai.api.routes.chat import handle_chat
from companion_ai.api.routes.health import handle_health
from companion_ai.api.routes.queue import handle_queue_status
from companion_ai.chat.cache import ResponseCache
from companion_ai.chat.service import ChatService
from companion_ai.logging import get_logger
from companion_ai.queue.manager import RequestQueue
from companion_ai.queue.rate_limiter import KeyedRateLimiter

log = get_logger("companion_ai.api.server")


class CompanionAPIServer:
    """REST API server in front of the chat queue."""

    def __init__(
        self,
        chat_service: ChatService,
        *,
        queues: list[RequestQueue[Any, Any]] | None = None,
        response_cache: ResponseCache | None = None,
        admin_secret: str | None = None,
        admin_username: str | None = None,
        admin_password: str | None = None,
        secure_cookies: bool = False,
        host: str = "0.0.0.0",  # nosec B104 - Intentional for Docker container
        port: int = 8080,
        rate_limit: int = 10,
        rate_limit_window_seconds: float = 60.0,
    ) -> None:
        self._chat_service = chat_service
        self._queues = queues if queues is not None else [chat_service.queue]
        self._response_cache = response_cache
        self._admin_secret = admin_secret
        self._admin_credentials = (
            (admin_username, admin_password) if admin_username and admin_password else None
        )
        self._secure_cookies = secure_cookies
        self._host = host
        self._port = port
        self._rate_limiter = KeyedRateLimiter(
            limit=rate_limit, window_seconds=rate_limit_window_seconds
        )
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

        log.info("public_api_initialized", host=host, port=port)

    def create_app(self) -> web.Application:
        """Create and configure the aiohttp application."""
        app = web.Application(
            middlewares=[
                create_admin_auth_middleware(self._admin_secret),
                create_rate_limit_middleware(self._rate_limiter),
            ]
        )

        # Shared state for handlers
        app["chat_service"] = self._chat_service
        app["queues"] = self._queues
        app["admin_secret"] = self._admin_secret
        app["admin_credentials"] = self._admin_credentials
        app["admin_cookie_secure"] = self._secure_cookies
        if self._response_cache is not None:
            app["response_cache"] = self._response_cache

        app.router.add_get("/api/v1/health", handle_health)
        app.router.add_post("/api/v1/chat", handle_chat)
        app.router.add_get("/api/v1/queue/status", handle_queue_status)
        app.router.add_post("/api/v1/admin/auth", handle_admin_login)
        app.router.add_get("/api/v1/admin/auth", handle_admin_session)
        app.router.add_post("/api/v1/admin/logout", handle_admin_logout)

        self._app = app
        return app

    async def start(self) -> None:
        """Start the server."""
        if self._app is None:
            self.create_app()

        if self._app is None:  # pragma: no cover
            raise RuntimeError("create_app() must be called first")

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

        log.info("public_api_started", host=self._host, port=self._port)

    async def stop(self) -> None:
        """Stop the server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            log.info("public_api_stopped")
