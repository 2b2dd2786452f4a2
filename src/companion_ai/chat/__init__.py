"""Chat completion processing behind the request queue."""

from companion_ai.chat.cache import ResponseCache, generate_cache_key
from companion_ai.chat.models import (
    ChatError,
    ChatRequest,
    ChatResponse,
    ChatResponseError,
    InvalidChatRequestError,
)
from companion_ai.chat.processor import ChatProcessor
from companion_ai.chat.service import ChatService, create_chat_queue

__all__ = [
    "ChatError",
    "ChatProcessor",
    "ChatRequest",
    "ChatResponse",
    "ChatResponseError",
    "ChatService",
    "InvalidChatRequestError",
    "ResponseCache",
    "create_chat_queue",
    "generate_cache_key",
]
