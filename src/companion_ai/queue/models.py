"""Queue models — configuration, item dataclass, status enum and errors.

Items flow through states: PENDING -> PROCESSING -> COMPLETED | RETRYING |
FAILED. A RETRYING item re-enters PENDING once its backoff has elapsed.
CLEARED marks items rejected by ``RequestQueue.clear()``.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

P = TypeVar("P")


class QueueError(Exception):
    """Base exception for request queue errors."""


class QueueClearedError(QueueError):
    """Delivered to every pending item when the queue is cleared."""

    def __init__(self, message: str = "Queue cleared") -> None:
        super().__init__(message)


class QueueClosedError(QueueError):
    """Raised when work is submitted to a queue that has been stopped."""

    def __init__(self, message: str = "Queue is closed") -> None:
        super().__init__(message)


class ItemTimeoutError(QueueError):
    """A single processing attempt exceeded the configured item timeout."""


class QueueStatus(str, Enum):
    """Lifecycle states for a queue item."""

    PENDING = "pending"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CLEARED = "cleared"


@dataclass(frozen=True)
class QueueConfig:
    """Tunables for a :class:`~companion_ai.queue.manager.RequestQueue`.

    Attributes:
        max_concurrent: Cap on simultaneously in-flight items. ``0`` pauses
            dispatch entirely.
        max_retries: Default retry ceiling for items that don't set their own.
        retry_delay_ms: Backoff unit; the delay before retry ``n`` is
            ``retry_delay_ms * n``.
        rate_limit: Max dispatches per window.
        rate_limit_window_ms: Window length.
        rate_limit_recheck_ms: Delay before re-running the scheduler when the
            current window is exhausted.
        item_timeout_ms: Optional per-attempt timeout. ``None`` leaves
            attempts unbounded.
    """

    max_concurrent: int = 3
    max_retries: int = 3
    retry_delay_ms: int = 1000
    rate_limit: int = 10
    rate_limit_window_ms: int = 60000
    rate_limit_recheck_ms: int = 1000
    item_timeout_ms: int | None = None

    def __post_init__(self) -> None:
        for name in ("max_concurrent", "max_retries", "retry_delay_ms", "rate_limit"):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} must be >= 0, got: {value}")
        for name in ("rate_limit_window_ms", "rate_limit_recheck_ms"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be > 0, got: {value}")
        if self.item_timeout_ms is not None and self.item_timeout_ms <= 0:
            raise ValueError(f"item_timeout_ms must be > 0, got: {self.item_timeout_ms}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for status reporting."""
        return asdict(self)


def _new_item_id() -> str:
    return secrets.token_hex(6)


@dataclass(eq=False)
class QueueItem(Generic[P]):
    """A single unit of queued work.

    The same object is handed to the processing function on every attempt;
    ``retries`` is incremented in place.

    Attributes:
        payload: Caller data, interpreted only by the processing function.
        priority: Higher values dequeue first.
        max_retries: Retry ceiling fixed at enqueue time.
        id: Opaque identifier generated at enqueue time.
        retries: Attempts made beyond the first.
        status: Current lifecycle state (diagnostic only).
        enqueued_at: Wall-clock enqueue (or last requeue) time.
        last_error: Message from the most recent failed attempt.
        future: Continuation settled exactly once with the result or error.
    """

    payload: P
    priority: int = 0
    max_retries: int = 3
    id: str = field(default_factory=_new_item_id)
    retries: int = 0
    status: QueueStatus = QueueStatus.PENDING
    enqueued_at: float = field(default_factory=time.time)
    last_error: str | None = None
    future: asyncio.Future[Any] | None = field(default=None, repr=False)

    # Ordering key within the pending list, assigned by the queue.
    sequence: int = field(default=0, repr=False)

    @property
    def attempts(self) -> int:
        """Total attempts started so far, including the current one."""
        return self.retries + 1

    @property
    def is_settled(self) -> bool:
        """Whether the caller's future has been resolved, rejected or cancelled."""
        return self.future is not None and self.future.done()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for diagnostics (payload excluded)."""
        return {
            "id": self.id,
            "priority": self.priority,
            "status": self.status.value,
            "retries": self.retries,
            "max_retries": self.max_retries,
            "enqueued_at": self.enqueued_at,
            "last_error": self.last_error,
        }
