"""Bounded request queue for Companion AI.

Provides an in-process priority queue with a concurrency cap, fixed-window
rate limiting, and linear-backoff retries.
"""

from companion_ai.queue.manager import RequestQueue
from companion_ai.queue.models import (
    ItemTimeoutError,
    QueueClearedError,
    QueueClosedError,
    QueueConfig,
    QueueError,
    QueueItem,
    QueueStatus,
)
from companion_ai.queue.monitor import QueueMonitor
from companion_ai.queue.rate_limiter import FixedWindowRateLimiter, KeyedRateLimiter

__all__ = [
    "FixedWindowRateLimiter",
    "ItemTimeoutError",
    "KeyedRateLimiter",
    "QueueClearedError",
    "QueueClosedError",
    "QueueConfig",
    "QueueError",
    "QueueItem",
    "QueueMonitor",
    "QueueStatus",
    "RequestQueue",
]
