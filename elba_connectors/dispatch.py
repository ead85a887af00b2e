"""In-process event dispatcher running registered sync functions.

Functions subscribe to an event name. Sending an event queues one run per
subscribed function; run_until_idle() drains the queue on a thread pool:

  - higher priority runs first, then first in, first out;
  - two runs sharing a concurrency key never overlap;
  - transient failures are retried with the same event, terminal ones are not.

Events sent while a run is executing (page continuations) are queued too, so
a chain of pages drains in one call.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import math
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Union

from elba_connectors.events import Event
from elba_connectors.middleware import FunctionContext, Middleware, Outcome, RunResult

logger = logging.getLogger("connectors.dispatch")


@dataclass(frozen=True)
class SyncFunction:
    id: str
    event: str
    handler: Callable[[Event], Optional[dict[str, Any]]]
    retries: int = 3
    concurrency_key: Optional[Callable[[Event], Optional[str]]] = None
    priority: Optional[Callable[[Event], int]] = None
    middleware: tuple[Middleware, ...] = ()

    def invoke(self, event: Event) -> RunResult:
        """Run the handler once and pass its result through the middleware."""
        try:
            result = RunResult.ok(self.handler(event))
        except Exception as exc:
            result = RunResult.failed(exc)
        ctx = FunctionContext(function_id=self.id, event=event)
        for transform in self.middleware:
            result = transform(ctx, result)
        return result


@dataclass
class RunReport:
    function_id: str
    event: Event
    status: str  # "completed" or "failed"
    attempts: int
    output: Optional[dict[str, Any]] = None
    error: Optional[BaseException] = None

    @property
    def organisation_id(self) -> Optional[str]:
        return self.event.data.get("organisationId")


@dataclass(order=True)
class _QueuedRun:
    sort_key: tuple[int, int]
    function: SyncFunction = field(compare=False)
    event: Event = field(compare=False)
    key: Optional[str] = field(compare=False, default=None)


class Dispatcher:
    def __init__(
        self,
        max_workers: int = 4,
        backoff_base: float = 1.0,
        backoff_cap: float = 60.0,
        max_retry_after: float = 300.0,
        sleep: Callable[[float], None] = time.sleep,
        on_report: Optional[Callable[[RunReport], None]] = None,
    ) -> None:
        self.max_workers = max_workers
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._max_retry_after = max_retry_after
        self._sleep = sleep
        self._on_report = on_report
        self._functions: dict[str, list[SyncFunction]] = {}
        self._queue: list[_QueuedRun] = []
        self._seq = itertools.count()
        self._active_keys: set[str] = set()
        self._lock = threading.Lock()

    def register(self, function: SyncFunction) -> SyncFunction:
        self._functions.setdefault(function.event, []).append(function)
        return function

    def send(self, events: Union[Event, Iterable[Event]]) -> None:
        if isinstance(events, Event):
            events = [events]
        with self._lock:
            for event in events:
                subscribers = self._functions.get(event.name, [])
                if not subscribers:
                    logger.warning("No function registered for event %s", event.name)
                for function in subscribers:
                    priority = function.priority(event) if function.priority else 0
                    key = function.concurrency_key(event) if function.concurrency_key else None
                    heapq.heappush(
                        self._queue,
                        _QueuedRun((-priority, next(self._seq)), function, event, key),
                    )

    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def _take_ready(self, limit: int) -> list[_QueuedRun]:
        """Pop up to `limit` runs whose concurrency key is free. Caller holds the lock."""
        ready: list[_QueuedRun] = []
        blocked: list[_QueuedRun] = []
        while self._queue and len(ready) < limit:
            item = heapq.heappop(self._queue)
            if item.key is not None and item.key in self._active_keys:
                blocked.append(item)
                continue
            if item.key is not None:
                self._active_keys.add(item.key)
            ready.append(item)
        for item in blocked:
            heapq.heappush(self._queue, item)
        return ready

    def run_until_idle(self) -> list[RunReport]:
        """Execute queued runs, and any they enqueue, until nothing is left."""
        reports: list[RunReport] = []
        running: set[Future] = set()
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while True:
                with self._lock:
                    ready = self._take_ready(self.max_workers - len(running))
                for item in ready:
                    running.add(pool.submit(self._execute, item))
                if not running:
                    if self.pending() == 0:
                        break
                    continue
                done, running = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    reports.append(future.result())
        return reports

    def _execute(self, item: _QueuedRun) -> RunReport:
        function, event = item.function, item.event
        extra = {
            "function": function.id,
            "organisation_id": event.data.get("organisationId"),
        }
        try:
            attempt = 0
            while True:
                attempt += 1
                try:
                    result = function.invoke(event)
                except Exception as exc:
                    # middleware failed; the run is retried like any transient error
                    result = RunResult.failed(exc)

                if result.outcome is Outcome.SUCCESS:
                    report = RunReport(function.id, event, "completed", attempt, output=result.output)
                    break
                if result.outcome is Outcome.TERMINAL or attempt > function.retries:
                    logger.error(
                        "Function %s failed permanently after %d attempt(s): %s",
                        function.id,
                        attempt,
                        result.error,
                        extra={**extra, "attempt": attempt},
                    )
                    report = RunReport(function.id, event, "failed", attempt, error=result.error)
                    break

                delay = self._retry_delay(result, attempt)
                logger.warning(
                    "Function %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    function.id,
                    attempt,
                    function.retries + 1,
                    delay,
                    result.error,
                    extra={**extra, "attempt": attempt},
                )
                self._sleep(delay)
        finally:
            if item.key is not None:
                with self._lock:
                    self._active_keys.discard(item.key)

        if self._on_report is not None:
            try:
                self._on_report(report)
            except Exception:
                # recording is best effort; the drain continues
                logger.exception("Report callback failed for %s", function.id, extra=extra)
        return report

    def _retry_delay(self, result: RunResult, attempt: int) -> float:
        """Seconds to wait before the next attempt.

        A Retry-After hint is honoured up to max_retry_after; otherwise the
        delay grows exponentially up to backoff_cap.
        """
        hint = result.retry_after
        if hint is not None and math.isfinite(hint):
            return min(max(hint, 0.0), self._max_retry_after)
        return min(self._backoff_base * (2 ** (attempt - 1)), self._backoff_cap)
