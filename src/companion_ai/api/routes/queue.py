"""Queue status endpoint (admin only; auth handled by middleware)."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from aiohttp import web

from companion_ai.queue.manager import RequestQueue

_NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


async def handle_queue_status(request: web.Request) -> web.Response:
    """GET /api/v1/queue/status — per-queue counts plus a summary."""
    queues: list[RequestQueue[Any, Any]] = request.app["queues"]
    statuses = {q.name: q.get_status() for q in queues}

    payload: dict[str, Any] = {
        "timestamp": datetime.now(UTC).isoformat(),
        "queues": statuses,
        "summary": {
            "total_pending": sum(s["queue_length"] for s in statuses.values()),
            "total_processing": sum(s["processing"] for s in statuses.values()),
            "total_completed": sum(s["totals"]["completed"] for s in statuses.values()),
            "total_failed": sum(s["totals"]["failed"] for s in statuses.values()),
        },
    }

    cache = request.app.get("response_cache")
    if cache is not None:
        payload["cache"] = cache.stats()

    return web.json_response(payload, headers=_NO_CACHE_HEADERS)
