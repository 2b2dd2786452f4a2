"""Health check endpoint for the public API."""

from aiohttp import web

from companion_ai import __version__


async def handle_health(request: web.Request) -> web.Response:
    """GET /api/v1/health — no auth required."""
    return web.json_response({"status": "healthy", "version": __version__})
