"""Chat processor — the queue's processing function for chat requests.

Each attempt consults the response cache, then asks the OpenAI chat
completions API for a JSON object of the form ``{"response": "..."}``.
Any exception raised here is treated by the queue as a transient failure
and retried.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from typing import Any

import openai

from companion_ai.chat.cache import ResponseCache, generate_cache_key
from companion_ai.chat.models import (
    ChatRequest,
    ChatResponse,
    ChatResponseError,
    InvalidChatRequestError,
)
from companion_ai.logging import get_logger
from companion_ai.queue.models import QueueItem

log = get_logger("companion_ai.chat.processor")

JSON_REPLY_INSTRUCTION = 'Please respond in JSON format: {"response": "<response here>"}'


def parse_reply(text: str) -> str:
    """Extract the ``response`` field from the model's JSON reply.

    Raises:
        ChatResponseError: If the reply is not a JSON object with a string
            ``response`` field.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ChatResponseError(f"Assistant reply is not valid JSON: {e.msg}") from e

    if not isinstance(data, dict) or not isinstance(data.get("response"), str):
        raise ChatResponseError("Assistant reply is missing a 'response' string")
    return str(data["response"])


class ChatProcessor:
    """Answer :class:`ChatRequest` payloads via OpenAI chat completions."""

    def __init__(
        self,
        client: openai.AsyncOpenAI,
        *,
        model: str,
        cache: ResponseCache,
        assistant_prompts: Mapping[str, str],
        request_timeout: float = 30.0,
        max_tokens: int = 1024,
    ) -> None:
        self._client = client
        self._model = model
        self._cache = cache
        self._assistant_prompts = dict(assistant_prompts)
        self._request_timeout = request_timeout
        self._max_tokens = max_tokens

    @property
    def assistant_ids(self) -> frozenset[str]:
        return frozenset(self._assistant_prompts)

    async def __call__(self, item: QueueItem[ChatRequest]) -> ChatResponse:
        request = item.payload
        cache_key = generate_cache_key(request.messages, request.assistant_id)

        cached = self._cache.get(cache_key)
        if cached is not None:
            log.info("chat_cache_hit", request_id=request.request_id, key=cache_key)
            return cached.for_request(
                request.request_id,
                request.conversation_id or uuid.uuid4().hex,
                cached=True,
            )

        log.debug(
            "chat_request_started",
            request_id=request.request_id,
            assistant_id=request.assistant_id,
            attempt=item.attempts,
        )

        completion = await self._client.chat.completions.create(  # type: ignore[call-overload]
            model=self._model,
            messages=self._build_messages(request),
            response_format={"type": "json_object"},
            max_tokens=self._max_tokens,
            timeout=self._request_timeout,
        )
        if not completion.choices:
            raise ChatResponseError("Assistant returned no choices")
        reply = parse_reply(completion.choices[0].message.content or "")

        response = ChatResponse(
            response=reply,
            conversation_id=request.conversation_id or uuid.uuid4().hex,
            request_id=request.request_id,
        )
        self._cache.set(cache_key, response)

        log.info(
            "chat_request_completed",
            request_id=request.request_id,
            attempt=item.attempts,
            response_length=len(reply),
        )
        return response

    def _build_messages(self, request: ChatRequest) -> list[dict[str, Any]]:
        prompt = self._assistant_prompts.get(request.assistant_id)
        if prompt is None:
            raise InvalidChatRequestError(f"Unknown assistant: {request.assistant_id}")

        messages: list[dict[str, Any]] = [
            {"role": "system", "content": f"{prompt}\n\n{JSON_REPLY_INSTRUCTION}"}
        ]
        messages.extend(
            {"role": m["role"], "content": m["content"]}
            for m in request.messages
            if m["role"] != "system"
        )
        return messages
