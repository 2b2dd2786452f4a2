"""Request queue — bounded, rate-limited, retrying execution of async work.

Callers :meth:`RequestQueue.add` a payload and await the result. The queue
dispatches at most ``max_concurrent`` items at once to an injected processing
function, in descending priority order (FIFO within a priority), subject to a
fixed-window rate limit. Failed attempts are retried with linear backoff
until the item's ``max_retries`` is exhausted, after which the original
exception is raised to the caller.

All bookkeeping happens synchronously on the event loop. The only suspension
point is the awaited processing function.
"""

from __future__ import annotations

import asyncio
import bisect
import contextlib
import itertools
import time
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

from companion_ai.logging import get_logger
from companion_ai.queue.models import (
    ItemTimeoutError,
    QueueClearedError,
    QueueClosedError,
    QueueConfig,
    QueueItem,
    QueueStatus,
)
from companion_ai.queue.rate_limiter import FixedWindowRateLimiter

log = get_logger("companion_ai.queue.manager")

P = TypeVar("P")
R = TypeVar("R")

ProcessFn = Callable[[QueueItem[P]], Awaitable[R]]

# Graceful shutdown: max seconds to wait for in-flight items before force-stop.
_DRAIN_TIMEOUT_SECONDS = 30.0


def _sort_key(item: QueueItem[Any]) -> tuple[int, int]:
    return (-item.priority, item.sequence)


class RequestQueue(Generic[P, R]):
    """In-process priority queue with a concurrency cap, rate limit and retries.

    The pending list is kept sorted by ``(-priority, sequence)``. Fresh items
    take increasing sequence numbers (FIFO within a priority); retried items
    take decreasing negative ones, so a retry re-enters at the front of its
    own priority band without jumping ahead of higher priorities.

    Items waiting out a retry backoff count as pending but cannot be
    dispatched until their timer fires.
    """

    def __init__(
        self,
        process_item: ProcessFn[P, R],
        config: QueueConfig | None = None,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Create a queue.

        Args:
            process_item: Coroutine function run once per attempt. Raising
                signals failure; any return value is the item's result.
            config: Queue tunables (defaults to :class:`QueueConfig`).
            name: Label used in logs and status output.
            clock: Monotonic time source for the rate limiter.
        """
        self._process_item = process_item
        self._config = config or QueueConfig()
        self._name = name
        self._rate_limiter = FixedWindowRateLimiter(
            limit=self._config.rate_limit,
            window_seconds=self._config.rate_limit_window_ms / 1000.0,
            clock=clock,
        )

        self._pending: list[QueueItem[P]] = []
        self._processing: dict[str, asyncio.Task[None]] = {}
        self._retrying: dict[str, tuple[QueueItem[P], asyncio.TimerHandle]] = {}

        self._fresh_sequence = itertools.count(1)
        self._retry_sequence = itertools.count(-1, -1)

        self._pump_scheduled = False
        self._recheck_handle: asyncio.TimerHandle | None = None
        self._closed = False

        self._totals = {"completed": 0, "failed": 0, "retried": 0, "cleared": 0}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> QueueConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        """Whether the queue still accepts work."""
        return not self._closed

    def submit(
        self,
        payload: P,
        priority: int = 0,
        max_retries: int | None = None,
    ) -> asyncio.Future[R]:
        """Enqueue a payload and return the future for its result.

        Dispatch happens on a later loop turn, so several submits made in
        the same turn are ordered by priority before anything runs.

        Args:
            payload: Caller data handed to the processing function.
            priority: Higher values dequeue first.
            max_retries: Retry ceiling for this item (defaults to config).

        Returns:
            Future resolved with the processing result, or failed with the
            final processing error or :class:`QueueClearedError`.

        Raises:
            QueueClosedError: The queue has been stopped.
            ValueError: ``max_retries`` is negative.
        """
        if self._closed:
            raise QueueClosedError()
        if max_retries is None:
            max_retries = self._config.max_retries
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got: {max_retries}")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[R] = loop.create_future()
        item: QueueItem[P] = QueueItem(
            payload=payload,
            priority=priority,
            max_retries=max_retries,
            future=future,
            sequence=next(self._fresh_sequence),
        )
        future.add_done_callback(lambda _f, it=item: self._on_future_done(it))

        bisect.insort(self._pending, item, key=_sort_key)
        log.debug(
            "queue_item_enqueued",
            queue=self._name,
            item_id=item.id,
            priority=priority,
            pending=len(self._pending),
        )
        self._schedule_pump()
        return future

    async def add(
        self,
        payload: P,
        priority: int = 0,
        max_retries: int | None = None,
    ) -> R:
        """Enqueue a payload and wait for its result.

        Cancelling the caller cancels the item: it is dropped if still
        pending, and its outcome is ignored if already in flight.
        """
        return await self.submit(payload, priority=priority, max_retries=max_retries)

    def get_queue_length(self) -> int:
        """Number of pending items, including those waiting out a backoff."""
        return len(self._pending) + len(self._retrying)

    def get_processing_count(self) -> int:
        """Number of items currently in flight."""
        return len(self._processing)

    def get_retrying_count(self) -> int:
        """Number of pending items waiting for their backoff to elapse."""
        return len(self._retrying)

    def clear(self) -> int:
        """Reject every pending item with :class:`QueueClearedError`.

        In-flight items are left alone; if one of them later fails with
        retries left it re-enters the (now empty) pending set as usual.

        Returns:
            Number of items rejected.
        """
        items = list(self._pending)
        for item, handle in self._retrying.values():
            handle.cancel()
            items.append(item)
        self._pending = []
        self._retrying.clear()

        rejected = 0
        for item in items:
            item.status = QueueStatus.CLEARED
            if item.future is not None and not item.future.done():
                item.future.set_exception(QueueClearedError())
                rejected += 1

        self._totals["cleared"] += rejected
        log.info("queue_cleared", queue=self._name, rejected=rejected)
        return rejected

    def get_status(self) -> dict[str, Any]:
        """Return queue counts, lifetime totals and rate-limit state."""
        return {
            "name": self._name,
            "running": not self._closed,
            "queue_length": self.get_queue_length(),
            "pending": len(self._pending),
            "retrying": len(self._retrying),
            "processing": len(self._processing),
            "totals": dict(self._totals),
            "rate_limit": {
                "count": self._rate_limiter.count,
                "limit": self._rate_limiter.limit,
                "resets_in_ms": int(self._rate_limiter.resets_in() * 1000),
            },
            "config": self._config.to_dict(),
        }

    async def stop(self, drain_timeout: float = _DRAIN_TIMEOUT_SECONDS) -> None:
        """Stop the queue.

        1. Refuse new work (``QueueClosedError``).
        2. Reject everything still pending (``QueueClearedError``).
        3. Wait up to ``drain_timeout`` seconds for in-flight items; failures
           during the drain are not retried.
        4. Cancel what is left; their callers get ``QueueClosedError``.
        """
        if self._closed:
            return

        log.info("queue_stopping", queue=self._name, processing=len(self._processing))
        self._closed = True
        if self._recheck_handle is not None:
            self._recheck_handle.cancel()
            self._recheck_handle = None

        self.clear()

        tasks = list(self._processing.values())
        if tasks:
            _, still_running = await asyncio.wait(tasks, timeout=drain_timeout)
            for task in still_running:
                task.cancel()
            for task in still_running:
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        log.info("queue_stopped", queue=self._name)

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    def _schedule_pump(self) -> None:
        if self._pump_scheduled:
            return
        self._pump_scheduled = True
        asyncio.get_running_loop().call_soon(self._pump)

    def _pump(self) -> None:
        """Dispatch pending items while slots and rate budget allow."""
        self._pump_scheduled = False
        if self._closed:
            return

        while self._pending and len(self._processing) < self._config.max_concurrent:
            head = self._pending[0]
            if head.is_settled:
                # Caller cancelled before dispatch
                self._pending.pop(0)
                continue

            if not self._rate_limiter.allows():
                self._schedule_recheck()
                return

            item = self._pending.pop(0)
            self._rate_limiter.record()
            self._dispatch(item)

    def _schedule_recheck(self) -> None:
        if self._recheck_handle is not None:
            return
        delay = self._config.rate_limit_recheck_ms / 1000.0
        log.debug(
            "queue_rate_limited",
            queue=self._name,
            pending=len(self._pending),
            recheck_ms=self._config.rate_limit_recheck_ms,
        )
        self._recheck_handle = asyncio.get_running_loop().call_later(delay, self._on_recheck)

    def _on_recheck(self) -> None:
        self._recheck_handle = None
        self._pump()

    def _dispatch(self, item: QueueItem[P]) -> None:
        item.status = QueueStatus.PROCESSING
        task = asyncio.create_task(self._run(item), name=f"{self._name}-{item.id}")
        self._processing[item.id] = task
        log.debug(
            "queue_item_dispatched",
            queue=self._name,
            item_id=item.id,
            priority=item.priority,
            attempt=item.attempts,
            processing=len(self._processing),
        )

    # ------------------------------------------------------------------
    # Item execution
    # ------------------------------------------------------------------

    async def _run(self, item: QueueItem[P]) -> None:
        try:
            result = await self._attempt(item)
        except asyncio.CancelledError:
            item.status = QueueStatus.FAILED
            if item.future is not None and not item.future.done():
                item.future.set_exception(
                    QueueClosedError("Queue stopped while the item was in flight")
                )
            raise
        except Exception as exc:
            self._handle_failure(item, exc)
        except BaseException as exc:
            # Not retried, but the caller still gets an answer.
            item.status = QueueStatus.FAILED
            item.last_error = str(exc) or type(exc).__name__
            self._totals["failed"] += 1
            if item.future is not None and not item.future.done():
                item.future.set_exception(exc)
            raise
        else:
            self._handle_success(item, result)
        finally:
            self._processing.pop(item.id, None)
            self._pump()

    async def _attempt(self, item: QueueItem[P]) -> R:
        timeout_ms = self._config.item_timeout_ms
        if timeout_ms is None:
            return await self._process_item(item)
        deadline = asyncio.timeout(timeout_ms / 1000.0)
        try:
            async with deadline:
                return await self._process_item(item)
        except TimeoutError as exc:
            # A TimeoutError raised by the processor itself passes through.
            if not deadline.expired():
                raise
            raise ItemTimeoutError(f"Item {item.id} timed out after {timeout_ms} ms") from exc

    def _handle_success(self, item: QueueItem[P], result: R) -> None:
        item.status = QueueStatus.COMPLETED
        self._totals["completed"] += 1
        if item.future is None or item.future.done():
            log.debug("queue_item_result_discarded", queue=self._name, item_id=item.id)
            return
        item.future.set_result(result)
        log.debug(
            "queue_item_completed",
            queue=self._name,
            item_id=item.id,
            attempts=item.attempts,
        )

    def _handle_failure(self, item: QueueItem[P], exc: Exception) -> None:
        item.last_error = str(exc) or type(exc).__name__

        if item.is_settled:
            item.status = QueueStatus.FAILED
            log.debug("queue_item_abandoned", queue=self._name, item_id=item.id)
            return

        if item.retries < item.max_retries and not self._closed:
            item.retries += 1
            item.status = QueueStatus.RETRYING
            item.enqueued_at = time.time()
            delay_ms = self._config.retry_delay_ms * item.retries
            handle = asyncio.get_running_loop().call_later(
                delay_ms / 1000.0, self._requeue, item
            )
            self._retrying[item.id] = (item, handle)
            self._totals["retried"] += 1
            log.warning(
                "queue_item_retry_scheduled",
                queue=self._name,
                item_id=item.id,
                retries=item.retries,
                max_retries=item.max_retries,
                delay_ms=delay_ms,
                error=item.last_error,
                error_type=type(exc).__name__,
            )
            return

        item.status = QueueStatus.FAILED
        self._totals["failed"] += 1
        log.warning(
            "queue_item_failed",
            queue=self._name,
            item_id=item.id,
            attempts=item.attempts,
            error=item.last_error,
            error_type=type(exc).__name__,
        )
        if item.future is not None:
            item.future.set_exception(exc)

    def _requeue(self, item: QueueItem[P]) -> None:
        self._retrying.pop(item.id, None)
        if item.is_settled or self._closed:
            return
        item.status = QueueStatus.PENDING
        item.sequence = next(self._retry_sequence)
        bisect.insort(self._pending, item, key=_sort_key)
        self._pump()

    def _on_future_done(self, item: QueueItem[P]) -> None:
        """Drop items whose caller cancelled before they were dispatched."""
        if item.future is None or not item.future.cancelled():
            return
        if item in self._pending:
            self._pending.remove(item)
        entry = self._retrying.pop(item.id, None)
        if entry is not None:
            entry[1].cancel()
        log.debug("queue_item_cancelled", queue=self._name, item_id=item.id)
