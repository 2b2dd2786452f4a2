"""Chat service — validates chat requests and runs them through the queue."""

from __future__ import annotations

from collections.abc import Collection
from typing import Any

from companion_ai.chat.models import (
    ChatRequest,
    ChatResponse,
    InvalidChatRequestError,
    validate_messages,
)
from companion_ai.chat.processor import ChatProcessor
from companion_ai.config import Settings
from companion_ai.logging import get_logger
from companion_ai.queue.manager import RequestQueue
from companion_ai.queue.models import QueueConfig

log = get_logger("companion_ai.chat.service")

ChatQueue = RequestQueue[ChatRequest, ChatResponse]


def chat_queue_config(settings: Settings) -> QueueConfig:
    """Build the chat queue tunables from settings."""
    timeout_ms = settings.queue_item_timeout_ms
    return QueueConfig(
        max_concurrent=settings.chat_queue_max_concurrent,
        max_retries=settings.chat_queue_max_retries,
        retry_delay_ms=settings.chat_queue_retry_delay_ms,
        rate_limit=settings.chat_queue_rate_limit,
        rate_limit_window_ms=settings.chat_queue_rate_limit_window_ms,
        rate_limit_recheck_ms=settings.queue_rate_limit_recheck_ms,
        item_timeout_ms=timeout_ms,
    )


def create_chat_queue(processor: ChatProcessor, settings: Settings) -> ChatQueue:
    """Create the queue that serialises chat completion calls."""
    config = chat_queue_config(settings)
    queue: ChatQueue = RequestQueue(processor, config, name="chat")
    log.info("chat_queue_created", **config.to_dict())
    return queue


class ChatService:
    """Entry point used by the HTTP layer to ask an assistant something."""

    def __init__(
        self,
        queue: ChatQueue,
        assistant_ids: Collection[str],
        default_assistant_id: str,
    ) -> None:
        if default_assistant_id not in assistant_ids:
            raise ValueError(f"Default assistant {default_assistant_id!r} has no prompt")
        self._queue = queue
        self._assistant_ids = frozenset(assistant_ids)
        self._default_assistant_id = default_assistant_id

    @property
    def queue(self) -> ChatQueue:
        return self._queue

    async def ask(
        self,
        messages: Any,
        assistant_id: str | None = None,
        conversation_id: str | None = None,
        priority: int = 0,
    ) -> ChatResponse:
        """Validate a conversation, queue it and wait for the reply.

        Malformed requests are rejected here so they never consume retries.

        Raises:
            InvalidChatRequestError: The request is malformed or names an
                unknown assistant.
            QueueClearedError: The queue was cleared or stopped first.
            Exception: The final processing error after retries ran out.
        """
        normalised = validate_messages(messages)
        assistant = assistant_id or self._default_assistant_id
        if assistant not in self._assistant_ids:
            raise InvalidChatRequestError(f"Unknown assistant: {assistant}")

        request = ChatRequest(
            messages=normalised,
            assistant_id=assistant,
            conversation_id=conversation_id,
        )
        log.debug(
            "chat_request_queued",
            request_id=request.request_id,
            assistant_id=assistant,
            queue_length=self._queue.get_queue_length(),
        )
        return await self._queue.add(request, priority=priority)
