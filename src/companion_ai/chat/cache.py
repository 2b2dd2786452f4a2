"""In-memory cache for chat responses.

Identical conversations sent to the same assistant within the TTL are
answered without another vendor call. Uses TTLCache for expiry and
size-bounded eviction.
"""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Callable, Sequence
from typing import Any

from cachetools import TTLCache  # type: ignore[import-untyped]

from companion_ai.chat.models import ChatResponse
from companion_ai.logging import get_logger

log = get_logger("companion_ai.chat.cache")


def generate_cache_key(messages: Sequence[dict[str, Any]], assistant_id: str) -> str:
    """Hash the assistant id and the conversation into a cache key.

    Only ``role`` and ``content`` of each message take part, so client-side
    message ids don't defeat the cache.
    """
    conversation = [[m.get("role", ""), m.get("content", "")] for m in messages]
    blob = json.dumps([assistant_id, conversation], ensure_ascii=False, separators=(",", ":"))
    digest = hashlib.sha256(blob.encode("utf-8")).hexdigest()
    return f"{assistant_id}:{digest}"


class ResponseCache:
    """TTL-bounded cache of :class:`ChatResponse` objects."""

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: int = 300,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the response cache.

        Args:
            max_size: Maximum number of cached responses.
            ttl_seconds: Lifetime of each entry (default 5 min).
            timer: Clock used for expiry.
        """
        self._cache: TTLCache[str, ChatResponse] = TTLCache(
            maxsize=max_size, ttl=ttl_seconds, timer=timer
        )
        self._hits = 0
        self._misses = 0
        log.info("response_cache_initialized", max_size=max_size, ttl_seconds=ttl_seconds)

    def get(self, key: str) -> ChatResponse | None:
        response: ChatResponse | None = self._cache.get(key)
        if response is None:
            self._misses += 1
        else:
            self._hits += 1
        return response

    def set(self, key: str, response: ChatResponse) -> None:
        self._cache[key] = response
        log.debug("response_cached", key=key)

    def clear(self) -> None:
        self._cache.clear()
        log.info("response_cache_cleared")

    def stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        return {
            "size": len(self._cache),
            "max_size": self._cache.maxsize,
            "ttl_seconds": self._cache.ttl,
            "hits": self._hits,
            "misses": self._misses,
        }

    def __len__(self) -> int:
        return len(self._cache)
