"""
Reconcile scheduling: a de-duplicating work queue drained by a bounded pool
of async workers.

A request is never processed by two workers at once: re-adds while it is in
flight are held back until the current pass finishes. Failed passes are
retried with per-request exponential backoff; `requeue_after` results are
re-added once their delay expires.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Optional, Protocol

from loadtest_operator.config import settings
from loadtest_operator.core.event_router import (
    has_owner_label,
    request_for_run,
    requests_for_worker_event,
)
from loadtest_operator.models.cluster import WorkerEvent
from loadtest_operator.models.reconcile import ReconcileRequest, ReconcileResult
from loadtest_operator.models.run import Run

logger = logging.getLogger(__name__)


class Reconciler(Protocol):
    async def reconcile(self, request: ReconcileRequest) -> ReconcileResult: ...


class ExponentialBackoff:
    """Per-item failure backoff: base * 2**failures, capped at max_delay."""

    def __init__(self, base_delay: float, max_delay: float) -> None:
        self.base_delay = float(base_delay)
        self.max_delay = float(max_delay)
        self._failures: dict[ReconcileRequest, int] = {}

    def when(self, item: ReconcileRequest) -> float:
        failures = self._failures.get(item, 0)
        self._failures[item] = failures + 1
        # Avoid float overflow once the cap is reached anyway.
        if failures > 62:
            return self.max_delay
        return min(self.base_delay * (2**failures), self.max_delay)

    def forget(self, item: ReconcileRequest) -> None:
        self._failures.pop(item, None)

    def num_requeues(self, item: ReconcileRequest) -> int:
        return self._failures.get(item, 0)


class WorkQueue:
    def __init__(self, backoff: Optional[ExponentialBackoff] = None) -> None:
        self._backoff = backoff or ExponentialBackoff(
            settings.BACKOFF_BASE_SECONDS, settings.BACKOFF_MAX_SECONDS
        )
        self._queue: deque[ReconcileRequest] = deque()
        self._dirty: set[ReconcileRequest] = set()
        self._processing: set[ReconcileRequest] = set()
        self._waiting: dict[ReconcileRequest, tuple[float, asyncio.TimerHandle]] = {}
        self._not_empty = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, item: ReconcileRequest) -> None:
        if self._shutting_down:
            return
        if item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._not_empty.set()

    def add_after(self, item: ReconcileRequest, delay: float) -> None:
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return
        loop = asyncio.get_running_loop()
        ready_at = loop.time() + delay
        existing = self._waiting.get(item)
        if existing is not None:
            if existing[0] <= ready_at:
                return
            existing[1].cancel()
        handle = loop.call_later(delay, self._fire, item)
        self._waiting[item] = (ready_at, handle)

    def _fire(self, item: ReconcileRequest) -> None:
        self._waiting.pop(item, None)
        self.add(item)

    def add_rate_limited(self, item: ReconcileRequest) -> None:
        self.add_after(item, self._backoff.when(item))

    def forget(self, item: ReconcileRequest) -> None:
        self._backoff.forget(item)

    def num_requeues(self, item: ReconcileRequest) -> int:
        return self._backoff.num_requeues(item)

    def is_waiting(self, item: ReconcileRequest) -> bool:
        return item in self._waiting

    async def get(self) -> Optional[ReconcileRequest]:
        """Wait for the next item. Returns None once shut down and drained."""
        while True:
            if self._queue:
                item = self._queue.popleft()
                self._processing.add(item)
                self._dirty.discard(item)
                return item
            if self._shutting_down:
                return None
            self._not_empty.clear()
            await self._not_empty.wait()

    def done(self, item: ReconcileRequest) -> None:
        self._processing.discard(item)
        if item in self._dirty:
            self._queue.append(item)
            self._not_empty.set()

    def shutdown(self) -> None:
        self._shutting_down = True
        for _, handle in self._waiting.values():
            handle.cancel()
        self._waiting.clear()
        self._queue.clear()
        self._dirty.clear()
        self._not_empty.set()


class Controller:
    """Drives a reconciler from a work queue with a bounded number of workers."""

    def __init__(
        self,
        reconciler: Reconciler,
        *,
        max_concurrent_reconciles: Optional[int] = None,
        reconcile_timeout: Optional[float] = None,
        queue: Optional[WorkQueue] = None,
    ) -> None:
        self._reconciler = reconciler
        self.max_concurrent_reconciles = max(
            1,
            int(
                settings.MAX_CONCURRENT_RECONCILES
                if max_concurrent_reconciles is None
                else max_concurrent_reconciles
            ),
        )
        self._reconcile_timeout = (
            settings.RECONCILE_TIMEOUT_SECONDS
            if reconcile_timeout is None
            else float(reconcile_timeout)
        )
        self.queue = queue or WorkQueue()
        self._worker_tasks: dict[int, asyncio.Task[None]] = {}

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._worker_tasks.values())

    def enqueue(self, request: ReconcileRequest) -> None:
        self.queue.add(request)

    def handle_run_event(self, run: Run) -> None:
        self.enqueue(request_for_run(run))

    def handle_worker_event(self, event: WorkerEvent) -> int:
        """Route a worker event to its owning run. Returns requests enqueued."""
        if not has_owner_label(event):
            return 0
        requests = requests_for_worker_event(event)
        for request in requests:
            self.enqueue(request)
        return len(requests)

    async def start(self) -> None:
        if self.running:
            return
        for wid in range(self.max_concurrent_reconciles):
            self._worker_tasks[wid] = asyncio.create_task(
                self._worker(), name=f"reconcile-worker-{wid}"
            )
        logger.info(
            "Controller started with %d reconcile worker(s)",
            self.max_concurrent_reconciles,
        )

    async def stop(self, *, timeout_seconds: float = 5.0) -> None:
        """Stop accepting work and wait for in-flight reconciles, cancelling stragglers."""
        self.queue.shutdown()
        tasks = [t for t in self._worker_tasks.values() if not t.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout_seconds)
            if pending:
                logger.warning(
                    "Cancelling %d reconcile worker(s) after %.1fs",
                    len(pending),
                    timeout_seconds,
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        self._worker_tasks.clear()

    async def _worker(self) -> None:
        while True:
            request = await self.queue.get()
            if request is None:
                return
            try:
                await self.process(request)
            finally:
                self.queue.done(request)

    async def process(self, request: ReconcileRequest) -> None:
        """Run one reconcile and schedule the follow-up it asks for."""
        try:
            result = await asyncio.wait_for(
                self._reconciler.reconcile(request), timeout=self._reconcile_timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "Reconciler error for %s (retry %d): %s: %s",
                request,
                self.queue.num_requeues(request) + 1,
                type(exc).__name__,
                exc or "(no message)",
            )
            self.queue.add_rate_limited(request)
            return

        if result.requeue_after:
            self.queue.forget(request)
            self.queue.add_after(request, result.requeue_after)
        elif result.requeue:
            self.queue.add_rate_limited(request)
        else:
            self.queue.forget(request)
