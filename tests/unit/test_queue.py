"""Tests for the request queue.

Covers QueueConfig / QueueItem models, RequestQueue ordering, concurrency,
retries, rate limiting, clearing, cancellation, timeouts and shutdown.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

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

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_queue(process: Callable[..., Any], **overrides: Any) -> RequestQueue[Any, Any]:
    """Build a queue with fast, test-friendly defaults."""
    config: dict[str, Any] = {
        "max_concurrent": 1,
        "max_retries": 0,
        "retry_delay_ms": 1,
        "rate_limit": 1000,
        "rate_limit_window_ms": 60000,
        "rate_limit_recheck_ms": 10,
    }
    config.update(overrides)
    return RequestQueue(process, QueueConfig(**config), name="test")


class Recorder:
    """Processing function that records payloads in dispatch order."""

    def __init__(self, delay: float = 0.0) -> None:
        self.calls: list[Any] = []
        self.items: list[QueueItem[Any]] = []
        self._delay = delay

    async def __call__(self, item: QueueItem[Any]) -> Any:
        self.calls.append(item.payload)
        self.items.append(item)
        if self._delay:
            await asyncio.sleep(self._delay)
        return item.payload


async def _settle(turns: int = 5) -> None:
    """Let scheduled callbacks and freshly created tasks run."""
    for _ in range(turns):
        await asyncio.sleep(0)


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# ===========================================================================
# Model tests
# ===========================================================================


class TestQueueConfig:
    """Tests for QueueConfig dataclass."""

    def test_defaults(self) -> None:
        config = QueueConfig()
        assert config.max_concurrent == 3
        assert config.max_retries == 3
        assert config.retry_delay_ms == 1000
        assert config.rate_limit == 10
        assert config.rate_limit_window_ms == 60000
        assert config.rate_limit_recheck_ms == 1000
        assert config.item_timeout_ms is None

    @pytest.mark.parametrize(
        "field", ["max_concurrent", "max_retries", "retry_delay_ms", "rate_limit"]
    )
    def test_rejects_negative_values(self, field: str) -> None:
        with pytest.raises(ValueError, match=field):
            QueueConfig(**{field: -1})

    @pytest.mark.parametrize("field", ["rate_limit_window_ms", "rate_limit_recheck_ms"])
    def test_rejects_non_positive_windows(self, field: str) -> None:
        with pytest.raises(ValueError, match=field):
            QueueConfig(**{field: 0})

    def test_rejects_non_positive_timeout(self) -> None:
        with pytest.raises(ValueError, match="item_timeout_ms"):
            QueueConfig(item_timeout_ms=0)

    def test_zero_concurrency_is_allowed(self) -> None:
        assert QueueConfig(max_concurrent=0).max_concurrent == 0

    def test_to_dict(self) -> None:
        d = QueueConfig(max_concurrent=2, rate_limit=5).to_dict()
        assert d["max_concurrent"] == 2
        assert d["rate_limit"] == 5
        assert d["item_timeout_ms"] is None


class TestQueueItem:
    """Tests for QueueItem dataclass."""

    def test_defaults(self) -> None:
        item = QueueItem(payload={"hello": "world"})
        assert item.priority == 0
        assert item.retries == 0
        assert item.max_retries == 3
        assert item.status == QueueStatus.PENDING
        assert item.last_error is None
        assert item.future is None
        assert item.attempts == 1
        assert item.is_settled is False

    def test_ids_are_unique(self) -> None:
        ids = {QueueItem(payload=i).id for i in range(100)}
        assert len(ids) == 100

    def test_items_compare_by_identity(self) -> None:
        a = QueueItem(payload=1, id="same")
        b = QueueItem(payload=1, id="same")
        assert a != b

    def test_to_dict_excludes_payload(self) -> None:
        item = QueueItem(payload={"secret": "x"}, priority=4, retries=1, max_retries=2)
        d = item.to_dict()
        assert "payload" not in d
        assert d["priority"] == 4
        assert d["retries"] == 1
        assert d["status"] == "pending"


class TestQueueErrors:
    """Tests for queue exception types."""

    def test_cleared_error_message(self) -> None:
        err = QueueClearedError()
        assert str(err) == "Queue cleared"
        assert isinstance(err, QueueError)

    def test_closed_error_is_queue_error(self) -> None:
        assert isinstance(QueueClosedError(), QueueError)
        assert isinstance(ItemTimeoutError("x"), QueueError)


# ===========================================================================
# RequestQueue tests
# ===========================================================================


class TestRequestQueueOrdering:
    """Priority ordering and FIFO within a priority."""

    @pytest.mark.asyncio
    async def test_higher_priority_dispatches_first(self) -> None:
        recorder = Recorder()
        queue = _make_queue(recorder)

        futures = [queue.submit(p, priority=p) for p in (1, 5, 3)]
        results = await asyncio.gather(*futures)

        assert recorder.calls == [5, 3, 1]
        assert results == [1, 5, 3]

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self) -> None:
        recorder = Recorder()
        queue = _make_queue(recorder)

        futures = [queue.submit(name) for name in ("A", "B", "C")]
        await asyncio.gather(*futures)

        assert recorder.calls == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_gathered_adds_are_ordered_by_priority(self) -> None:
        recorder = Recorder()
        queue = _make_queue(recorder)

        await asyncio.gather(queue.add("low", priority=1), queue.add("high", priority=9))

        assert recorder.calls == ["high", "low"]

    @pytest.mark.asyncio
    async def test_higher_priority_takes_next_free_slot(self) -> None:
        release = asyncio.Event()
        calls: list[str] = []

        async def process(item: QueueItem[str]) -> str:
            calls.append(item.payload)
            if item.payload == "first":
                await release.wait()
            return item.payload

        queue = _make_queue(process)
        first = queue.submit("first")
        await _settle()
        assert calls == ["first"]

        low = queue.submit("low", priority=0)
        high = queue.submit("high", priority=10)
        await _settle()
        # In-flight work is never pre-empted
        assert calls == ["first"]

        release.set()
        await asyncio.gather(first, low, high)
        assert calls == ["first", "high", "low"]


class TestRequestQueueConcurrency:
    """Concurrency cap and counters."""

    @pytest.mark.asyncio
    async def test_never_exceeds_max_concurrent(self) -> None:
        active = 0
        peak = 0

        async def process(item: QueueItem[int]) -> int:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return item.payload

        queue = _make_queue(process, max_concurrent=3)
        results = await asyncio.gather(*(queue.add(i) for i in range(12)))

        assert peak == 3
        assert sorted(results) == list(range(12))

    @pytest.mark.asyncio
    async def test_queue_length_and_processing_count(self) -> None:
        release = asyncio.Event()

        async def process(item: QueueItem[int]) -> int:
            await release.wait()
            return item.payload

        queue = _make_queue(process, max_concurrent=2)
        futures = [queue.submit(i) for i in range(5)]
        await _settle()

        assert queue.get_processing_count() == 2
        assert queue.get_queue_length() == 3

        release.set()
        await asyncio.gather(*futures)
        assert queue.get_processing_count() == 0
        assert queue.get_queue_length() == 0

    @pytest.mark.asyncio
    async def test_zero_concurrency_keeps_items_pending(self) -> None:
        recorder = Recorder()
        queue = _make_queue(recorder, max_concurrent=0)

        futures = [queue.submit(i) for i in range(3)]
        await _settle()

        assert recorder.calls == []
        assert queue.get_queue_length() == 3

        queue.clear()
        await asyncio.gather(*futures, return_exceptions=True)


class TestRequestQueueRetries:
    """Retry bound, backoff and re-insertion."""

    @pytest.mark.asyncio
    async def test_always_failing_item_attempted_max_retries_plus_one(self) -> None:
        attempts = 0
        seen: list[QueueItem[str]] = []

        async def process(item: QueueItem[str]) -> str:
            nonlocal attempts
            attempts += 1
            seen.append(item)
            raise RuntimeError(f"boom {attempts}")

        queue = _make_queue(process)

        with pytest.raises(RuntimeError, match="boom 3"):
            await queue.add("x", max_retries=2)

        assert attempts == 3
        # Retries reuse the same item object
        assert all(it is seen[0] for it in seen)
        assert seen[0].retries == 2
        assert seen[0].status == QueueStatus.FAILED
        assert seen[0].last_error == "boom 3"

    @pytest.mark.asyncio
    async def test_error_propagates_unwrapped(self) -> None:
        class VendorError(Exception):
            pass

        async def process(item: QueueItem[str]) -> str:
            raise VendorError("vendor down")

        queue = _make_queue(process)

        with pytest.raises(VendorError, match="vendor down"):
            await queue.add("x")

    @pytest.mark.asyncio
    async def test_fail_once_then_succeed(self) -> None:
        seen: list[QueueItem[str]] = []

        async def process(item: QueueItem[str]) -> str:
            seen.append(item)
            if item.retries == 0:
                raise ConnectionError("transient")
            return "ok"

        queue = _make_queue(process, max_retries=3)

        assert await queue.add("x") == "ok"
        assert len(seen) == 2
        assert seen[-1].retries == 1
        assert seen[-1].status == QueueStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_default_max_retries_comes_from_config(self) -> None:
        attempts = 0

        async def process(item: QueueItem[str]) -> str:
            nonlocal attempts
            attempts += 1
            raise RuntimeError("nope")

        queue = _make_queue(process, max_retries=1)

        with pytest.raises(RuntimeError):
            await queue.add("x")
        assert attempts == 2

    @pytest.mark.asyncio
    async def test_negative_max_retries_rejected(self) -> None:
        queue = _make_queue(Recorder())
        with pytest.raises(ValueError):
            queue.submit("x", max_retries=-1)

    @pytest.mark.asyncio
    async def test_backoff_is_linear_in_attempt_number(self) -> None:
        loop = asyncio.get_running_loop()
        starts: list[float] = []

        async def process(item: QueueItem[str]) -> str:
            starts.append(loop.time())
            if item.retries < 2:
                raise RuntimeError("again")
            return "done"

        queue = _make_queue(process, retry_delay_ms=50, max_retries=2)

        assert await queue.add("x") == "done"
        first_gap = starts[1] - starts[0]
        second_gap = starts[2] - starts[1]
        assert first_gap >= 0.045
        assert second_gap >= 0.095

    @pytest.mark.asyncio
    async def test_backoff_does_not_block_other_work(self) -> None:
        calls: list[str] = []

        async def process(item: QueueItem[str]) -> str:
            calls.append(item.payload)
            if item.payload == "flaky" and item.retries == 0:
                raise RuntimeError("transient")
            return item.payload

        queue = _make_queue(process, retry_delay_ms=200, max_retries=1)
        flaky = queue.submit("flaky")
        other = queue.submit("other")

        assert await other == "other"
        # "other" ran while "flaky" was still waiting out its backoff
        assert calls == ["flaky", "other"]
        assert queue.get_retrying_count() == 1
        assert await flaky == "flaky"

    @pytest.mark.asyncio
    async def test_retried_item_reenters_front_of_its_priority_band(self) -> None:
        calls: list[str] = []

        async def process(item: QueueItem[str]) -> str:
            calls.append(item.payload)
            if item.payload == "A" and item.retries == 0:
                raise RuntimeError("transient")
            if item.payload == "B":
                await asyncio.sleep(0.05)
            return item.payload

        queue = _make_queue(process, retry_delay_ms=1, max_retries=1)
        futures = [queue.submit(name) for name in ("A", "B", "C")]
        await asyncio.gather(*futures)

        assert calls == ["A", "B", "A", "C"]

    @pytest.mark.asyncio
    async def test_retried_item_stays_behind_higher_priority(self) -> None:
        calls: list[str] = []
        extra: list[asyncio.Future[Any]] = []
        queue: RequestQueue[str, str]

        async def process(item: QueueItem[str]) -> str:
            calls.append(item.payload)
            if item.payload == "A" and item.retries == 0:
                raise RuntimeError("transient")
            if item.payload == "B":
                await asyncio.sleep(0.02)
                extra.append(queue.submit("H", priority=5))
                await asyncio.sleep(0.03)
            return item.payload

        queue = _make_queue(process, retry_delay_ms=1, max_retries=1)
        futures = [queue.submit(name) for name in ("A", "B", "C")]
        await asyncio.gather(*futures)
        await asyncio.gather(*extra)

        assert calls == ["A", "B", "H", "A", "C"]


class TestRequestQueueRateLimit:
    """Fixed-window dispatch limiting."""

    @pytest.mark.asyncio
    async def test_dispatches_capped_per_window(self) -> None:
        loop = asyncio.get_running_loop()
        dispatched_at: list[float] = []

        async def process(item: QueueItem[int]) -> int:
            dispatched_at.append(loop.time())
            return item.payload

        queue = _make_queue(
            process,
            max_concurrent=10,
            rate_limit=2,
            rate_limit_window_ms=200,
            rate_limit_recheck_ms=20,
        )
        start = loop.time()
        futures = [queue.submit(i) for i in range(5)]

        await asyncio.sleep(0.1)
        assert len(dispatched_at) == 2
        assert queue.get_queue_length() == 3

        results = await asyncio.gather(*futures)
        assert results == [0, 1, 2, 3, 4]
        # The rest waited for the window to roll over
        assert all(t - start >= 0.19 for t in dispatched_at[2:])

    @pytest.mark.asyncio
    async def test_status_reports_window(self) -> None:
        queue = _make_queue(Recorder(), max_concurrent=10, rate_limit=3)
        await asyncio.gather(*(queue.add(i) for i in range(2)))

        status = queue.get_status()
        assert status["rate_limit"]["count"] == 2
        assert status["rate_limit"]["limit"] == 3
        assert 0 < status["rate_limit"]["resets_in_ms"] <= 60000


class TestRequestQueueClear:
    """clear() semantics."""

    @pytest.mark.asyncio
    async def test_clear_rejects_all_pending(self) -> None:
        recorder = Recorder()
        queue = _make_queue(recorder, max_concurrent=0)

        futures = [queue.submit(i) for i in range(3)]
        await _settle()

        assert queue.clear() == 3
        assert queue.get_queue_length() == 0
        for future in futures:
            with pytest.raises(QueueClearedError):
                await future
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_clear_leaves_in_flight_items_alone(self) -> None:
        release = asyncio.Event()

        async def process(item: QueueItem[str]) -> str:
            await release.wait()
            return item.payload

        queue = _make_queue(process)
        running = queue.submit("running")
        waiting = [queue.submit("w1"), queue.submit("w2")]
        await _settle()

        assert queue.clear() == 2
        assert queue.get_processing_count() == 1

        release.set()
        assert await running == "running"
        results = await asyncio.gather(*waiting, return_exceptions=True)
        assert all(isinstance(r, QueueClearedError) for r in results)

    @pytest.mark.asyncio
    async def test_in_flight_failure_after_clear_still_retries(self) -> None:
        release = asyncio.Event()

        async def process(item: QueueItem[str]) -> str:
            if item.retries == 0:
                await release.wait()
                raise RuntimeError("transient")
            return "recovered"

        queue = _make_queue(process, max_retries=1)
        running = queue.submit("x")
        await _settle()

        queue.clear()
        release.set()

        assert await running == "recovered"

    @pytest.mark.asyncio
    async def test_clear_rejects_items_waiting_out_backoff(self) -> None:
        async def process(item: QueueItem[str]) -> str:
            raise RuntimeError("down")

        queue = _make_queue(process, max_retries=3, retry_delay_ms=10000)
        future = queue.submit("x")
        await _wait_for(lambda: queue.get_retrying_count() == 1)

        assert queue.get_queue_length() == 1
        assert queue.clear() == 1
        with pytest.raises(QueueClearedError):
            await future
        assert queue.get_queue_length() == 0

    @pytest.mark.asyncio
    async def test_queue_usable_after_clear(self) -> None:
        recorder = Recorder()
        queue = _make_queue(recorder)
        queue.clear()
        assert await queue.add("after") == "after"


class TestRequestQueueCancellation:
    """Caller-side cancellation and settlement guarantees."""

    @pytest.mark.asyncio
    async def test_cancelled_caller_drops_pending_item(self) -> None:
        recorder = Recorder()
        queue = _make_queue(recorder, max_concurrent=0)

        task = asyncio.create_task(queue.add("x"))
        await _settle()
        assert queue.get_queue_length() == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await _settle()

        assert queue.get_queue_length() == 0
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_caller_of_in_flight_item_is_ignored(self) -> None:
        release = asyncio.Event()

        async def process(item: QueueItem[str]) -> str:
            if item.payload == "slow":
                await release.wait()
            return item.payload

        queue = _make_queue(process)
        task = asyncio.create_task(queue.add("slow"))
        await _settle()
        assert queue.get_processing_count() == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        release.set()
        assert await queue.add("next") == "next"
        assert queue.get_status()["totals"]["completed"] == 2

    @pytest.mark.asyncio
    async def test_every_future_settled_exactly_once(self) -> None:
        loop = asyncio.get_running_loop()
        errors: list[dict[str, Any]] = []
        previous = loop.get_exception_handler()
        loop.set_exception_handler(lambda _loop, context: errors.append(context))

        async def process(item: QueueItem[int]) -> int:
            await asyncio.sleep(0.001 * (item.payload % 4))
            if item.payload % 3 == 0 and item.retries == 0:
                raise RuntimeError("flaky")
            if item.payload % 5 == 0:
                raise RuntimeError("broken")
            return item.payload

        try:
            queue = _make_queue(process, max_concurrent=4, max_retries=1, retry_delay_ms=2)
            futures = [queue.submit(i, priority=i % 3) for i in range(40)]
            await asyncio.sleep(0.01)
            queue.clear()
            results = await asyncio.gather(*futures, return_exceptions=True)
            await _wait_for(lambda: queue.get_processing_count() == 0)
            await _wait_for(lambda: queue.get_retrying_count() == 0)
        finally:
            loop.set_exception_handler(previous)

        assert len(results) == 40
        assert all(f.done() for f in futures)
        assert errors == []
        totals = queue.get_status()["totals"]
        assert totals["completed"] + totals["failed"] + totals["cleared"] >= 40

    @pytest.mark.asyncio
    async def test_base_exception_still_settles_future(self) -> None:
        class Abort(BaseException):
            pass

        async def process(item: QueueItem[str]) -> str:
            raise Abort("abort")

        queue = _make_queue(process, max_retries=2)
        future = queue.submit("x")

        with pytest.raises(Abort):
            await future
        await _wait_for(lambda: queue.get_processing_count() == 0)
        assert future.done()
        assert queue.get_retrying_count() == 0
        assert queue.get_status()["totals"]["failed"] == 1


class TestRequestQueueTimeout:
    """Optional per-attempt timeout."""

    @pytest.mark.asyncio
    async def test_hung_attempt_times_out(self) -> None:
        async def process(item: QueueItem[str]) -> str:
            await asyncio.sleep(10)
            return item.payload

        queue = _make_queue(process, item_timeout_ms=20)

        with pytest.raises(ItemTimeoutError):
            await queue.add("x")
        assert queue.get_processing_count() == 0

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self) -> None:
        async def process(item: QueueItem[str]) -> str:
            if item.retries == 0:
                await asyncio.sleep(10)
            return "second try"

        queue = _make_queue(process, item_timeout_ms=20, max_retries=1)

        assert await queue.add("x") == "second try"

    @pytest.mark.asyncio
    async def test_processor_timeout_error_is_not_relabelled(self) -> None:
        async def process(item: QueueItem[str]) -> str:
            raise TimeoutError("vendor read timed out")

        queue = _make_queue(process, item_timeout_ms=5000, max_retries=0)

        with pytest.raises(TimeoutError, match="vendor read timed out") as exc_info:
            await queue.add("x")
        assert not isinstance(exc_info.value, ItemTimeoutError)
        assert queue.get_status()["totals"]["failed"] == 1


class TestRequestQueueStop:
    """Graceful shutdown."""

    @pytest.mark.asyncio
    async def test_stop_refuses_new_work(self) -> None:
        queue = _make_queue(Recorder())
        await queue.stop()

        assert queue.is_running is False
        with pytest.raises(QueueClosedError):
            queue.submit("x")
        with pytest.raises(QueueClosedError):
            await queue.add("x")

    @pytest.mark.asyncio
    async def test_stop_rejects_pending_and_drains_in_flight(self) -> None:
        queue = _make_queue(Recorder(delay=0.02))
        running = queue.submit("running")
        pending = queue.submit("pending")
        await _settle()

        await queue.stop(drain_timeout=1.0)

        assert await running == "running"
        with pytest.raises(QueueClearedError):
            await pending

    @pytest.mark.asyncio
    async def test_stop_cancels_stragglers(self) -> None:
        queue = _make_queue(Recorder(delay=10))
        running = queue.submit("stuck")
        await _settle()

        await queue.stop(drain_timeout=0.01)

        with pytest.raises(QueueClosedError):
            await running
        assert queue.get_processing_count() == 0

    @pytest.mark.asyncio
    async def test_failure_during_drain_is_not_retried(self) -> None:
        async def process(item: QueueItem[str]) -> str:
            await asyncio.sleep(0.01)
            raise RuntimeError("late failure")

        queue = _make_queue(process, max_retries=3)
        running = queue.submit("x")
        await _settle()

        await queue.stop(drain_timeout=1.0)

        with pytest.raises(RuntimeError, match="late failure"):
            await running
        assert queue.get_status()["totals"]["retried"] == 0

    @pytest.mark.asyncio
    async def test_stop_twice_is_noop(self) -> None:
        queue = _make_queue(Recorder())
        await queue.stop()
        await queue.stop()


class TestRequestQueueStatus:
    """get_status() reporting."""

    @pytest.mark.asyncio
    async def test_status_shape_and_totals(self) -> None:
        async def process(item: QueueItem[str]) -> str:
            if item.payload == "bad":
                raise RuntimeError("bad")
            return item.payload

        queue = _make_queue(process, max_retries=1)
        await queue.add("good")
        with pytest.raises(RuntimeError):
            await queue.add("bad")

        status = queue.get_status()
        assert status["name"] == "test"
        assert status["running"] is True
        assert status["pending"] == 0
        assert status["processing"] == 0
        assert status["totals"] == {"completed": 1, "failed": 1, "retried": 1, "cleared": 0}
        assert status["config"]["max_retries"] == 1
