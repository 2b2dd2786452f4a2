"""Chat request/response models and errors."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from typing import Any


class ChatError(Exception):
    """Base exception for chat processing errors."""


class InvalidChatRequestError(ChatError):
    """The request can never succeed (rejected before enqueueing)."""


class ChatResponseError(ChatError):
    """The vendor reply could not be used; the attempt may be retried."""


@dataclass
class ChatRequest:
    """A conversation to send to an assistant.

    Attributes:
        messages: Conversation so far, oldest first; each a dict with
            ``role`` and ``content``. The last one must be from the user.
        assistant_id: Persona that answers (selects the system prompt).
        conversation_id: Client conversation to continue; generated if absent.
        request_id: Correlates logs for this request.
    """

    messages: list[dict[str, Any]]
    assistant_id: str
    conversation_id: str | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


@dataclass(frozen=True)
class ChatResponse:
    """Assistant reply for a :class:`ChatRequest`."""

    response: str
    conversation_id: str
    request_id: str | None = None
    cached: bool = False

    def for_request(
        self, request_id: str, conversation_id: str | None = None, *, cached: bool
    ) -> ChatResponse:
        """Return a copy re-labelled for another request."""
        return replace(
            self,
            request_id=request_id,
            conversation_id=conversation_id or self.conversation_id,
            cached=cached,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "response": self.response,
            "conversation_id": self.conversation_id,
            "request_id": self.request_id,
            "cached": self.cached,
        }


def validate_messages(messages: Any) -> list[dict[str, Any]]:
    """Check a conversation is well formed and ends with a user turn.

    Args:
        messages: Candidate conversation from an untrusted caller.

    Returns:
        The normalised conversation (``role`` and ``content`` only).

    Raises:
        InvalidChatRequestError: If the conversation is malformed.
    """
    if not isinstance(messages, list) or not messages:
        raise InvalidChatRequestError("messages must be a non-empty list")

    normalised: list[dict[str, Any]] = []
    for index, message in enumerate(messages):
        if not isinstance(message, dict):
            raise InvalidChatRequestError(f"message {index} must be an object")
        role = message.get("role")
        content = message.get("content")
        if role not in ("system", "user", "assistant"):
            raise InvalidChatRequestError(f"message {index} has invalid role: {role!r}")
        if not isinstance(content, str):
            raise InvalidChatRequestError(f"message {index} content must be a string")
        normalised.append({"role": role, "content": content})

    last = normalised[-1]
    if last["role"] != "user":
        raise InvalidChatRequestError("Last message must be from user")
    if not last["content"].strip():
        raise InvalidChatRequestError("Last message must have content")
    return normalised
