"""Chat endpoint for the public API.

The request is validated and queued by :class:`ChatService`; this handler
only maps outcomes to HTTP responses.
"""

from __future__ import annotations

import json

from aiohttp import web

from companion_ai.chat.models import InvalidChatRequestError
from companion_ai.chat.service import ChatService
from companion_ai.logging import get_logger
from companion_ai.queue.models import QueueError

log = get_logger("companion_ai.api.routes.chat")


def _optional_str(body: dict[str, object], key: str) -> str | None:
    value = body.get(key)
    if value is None or isinstance(value, str):
        return value
    raise InvalidChatRequestError(f"{key} must be a string")


async def handle_chat(request: web.Request) -> web.Response:
    """POST /api/v1/chat — queue a conversation and return the assistant reply.

    Body: ``{"messages": [...], "assistant_id"?: str, "conversation_id"?: str}``
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return web.json_response({"error": "Invalid JSON body"}, status=400)
    if not isinstance(body, dict):
        return web.json_response({"error": "Body must be a JSON object"}, status=400)

    service: ChatService = request.app["chat_service"]

    try:
        response = await service.ask(
            body.get("messages"),
            assistant_id=_optional_str(body, "assistant_id"),
            conversation_id=_optional_str(body, "conversation_id"),
        )
    except InvalidChatRequestError as e:
        return web.json_response({"error": str(e)}, status=400)
    except QueueError as e:
        log.warning("chat_request_dropped", reason=str(e))
        return web.json_response(
            {"error": "Chat is temporarily unavailable, please retry"}, status=503
        )
    except Exception:
        log.exception("chat_request_failed")
        return web.json_response({"error": "Request failed, please retry"}, status=502)

    return web.json_response(response.to_dict())
