"""Queue monitor — periodic structured snapshots of queue health."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any

from companion_ai.logging import get_logger
from companion_ai.queue.manager import RequestQueue

log = get_logger("companion_ai.queue.monitor")

# Pending items above which a snapshot is flagged as high load.
HIGH_LOAD_THRESHOLD = 10

# Terminal failures between two snapshots above which the rate is flagged.
HIGH_FAILURE_THRESHOLD = 5


class QueueMonitor:
    """Log :meth:`RequestQueue.get_status` on a fixed interval."""

    def __init__(self, queues: list[RequestQueue[Any, Any]], interval_seconds: float = 5.0) -> None:
        self._queues = queues
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._last_failed: dict[str, int] = {}

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Log an initial snapshot and start the periodic loop."""
        if self.is_running:
            log.warning("queue_monitor_already_running")
            return
        self.snapshot()
        self._task = asyncio.create_task(self._loop())
        log.info("queue_monitor_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        log.info("queue_monitor_stopped")

    def snapshot(self) -> dict[str, Any]:
        """Collect status for every queue, log it, and return the summary."""
        queues = {q.name: q.get_status() for q in self._queues}
        summary = {
            "total_pending": sum(s["queue_length"] for s in queues.values()),
            "total_processing": sum(s["processing"] for s in queues.values()),
            "total_completed": sum(s["totals"]["completed"] for s in queues.values()),
            "total_failed": sum(s["totals"]["failed"] for s in queues.values()),
        }

        log.info("queue_stats", **summary)

        if summary["total_pending"] > HIGH_LOAD_THRESHOLD:
            log.warning("queue_high_load", pending=summary["total_pending"])

        for name, status in queues.items():
            failed = status["totals"]["failed"]
            new_failures = failed - self._last_failed.get(name, 0)
            self._last_failed[name] = failed
            if new_failures > HIGH_FAILURE_THRESHOLD:
                log.warning("queue_high_failure_rate", queue=name, new_failures=new_failures)

        return {"queues": queues, "summary": summary}

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                self.snapshot()
            except Exception:
                log.exception("queue_monitor_error")
