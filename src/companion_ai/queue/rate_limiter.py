"""Fixed-window rate limiting.

A counter plus a window-reset timestamp. Once the clock passes the reset
timestamp the counter starts over, so up to ``2 * limit`` acquisitions can
land close together across a window boundary.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass


class FixedWindowRateLimiter:
    """Count acquisitions in fixed windows of ``window_seconds``."""

    def __init__(
        self,
        limit: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            limit: Maximum acquisitions allowed per window.
            window_seconds: Window length in seconds.
            clock: Monotonic time source, injectable for tests.
        """
        self._limit = limit
        self._window_seconds = window_seconds
        self._clock = clock
        self._count = 0
        self._reset_at: float | None = None

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def count(self) -> int:
        """Acquisitions recorded in the current window."""
        return self._count

    def _roll_window(self) -> float:
        now = self._clock()
        if self._reset_at is None or now > self._reset_at:
            self._count = 0
            self._reset_at = now + self._window_seconds
        return now

    def allows(self) -> bool:
        """Return True if an acquisition would be admitted right now."""
        self._roll_window()
        return self._count < self._limit

    def record(self) -> None:
        """Count one acquisition against the current window."""
        self._roll_window()
        self._count += 1

    def try_acquire(self) -> bool:
        """Check and record in one step.

        Returns:
            True if the acquisition was admitted and counted.
        """
        if not self.allows():
            return False
        self._count += 1
        return True

    def resets_in(self) -> float:
        """Seconds until the current window ends (0 when no window is open)."""
        if self._reset_at is None:
            return 0.0
        return max(0.0, self._reset_at - self._clock())


@dataclass
class _ClientWindow:
    limiter: FixedWindowRateLimiter
    last_seen: float = 0.0


class KeyedRateLimiter:
    """One fixed window per key (e.g. per client address)."""

    def __init__(
        self,
        limit: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = limit
        self._window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _ClientWindow] = {}

    def check(self, key: str) -> tuple[bool, float]:
        """Check if ``key`` may proceed.

        Args:
            key: Identifier of the caller.

        Returns:
            Tuple of (is_allowed, seconds_until_reset).
        """
        self._purge()
        entry = self._windows.get(key)
        if entry is None:
            entry = _ClientWindow(
                limiter=FixedWindowRateLimiter(self._limit, self._window_seconds, self._clock),
                last_seen=self._clock(),
            )
            self._windows[key] = entry
        entry.last_seen = self._clock()
        allowed = entry.limiter.try_acquire()
        return allowed, entry.limiter.resets_in()

    def _purge(self) -> None:
        # Drop windows idle for longer than a full window; they would reset anyway.
        now = self._clock()
        stale = [k for k, w in self._windows.items() if now - w.last_seen > self._window_seconds]
        for key in stale:
            del self._windows[key]

    def __len__(self) -> int:
        return len(self._windows)
