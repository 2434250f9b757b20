"""
Concurrency Limiter — Bounded Fan-Out
=======================================

The single chokepoint between the pipeline and rate-limited backends:
  - At most ``limit`` workers in flight per run; the next queued item
    starts as soon as a slot frees
  - Results tagged with their input position, returned in input order
  - Per-item failure isolation (a failing worker never cancels siblings)
  - Stop-on-first-failure and cancellation only affect unstarted items
  - Per-backend in-flight ceilings shared by every run in the process
  - Optional adapter-call budget shared by everything a batch starts
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Iterator
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from voicedesc.core.types import ItemStatus
from voicedesc.infra.telemetry import get_logger, get_metrics
from voicedesc.infra.telemetry.metrics import MetricsCollector

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

Worker = Callable[[T], Awaitable[R]]

_call_budget: ContextVar[asyncio.Semaphore | None] = ContextVar("adapter_call_budget", default=None)


@contextmanager
def call_budget(limit: int) -> Iterator[asyncio.Semaphore]:
    """Cap adapter calls started inside the block (and its child tasks) at ``limit``."""
    if limit < 1:
        raise ValueError("limit must be >= 1")
    sem = asyncio.Semaphore(limit)
    token = _call_budget.set(sem)
    try:
        yield sem
    finally:
        _call_budget.reset(token)


@dataclass
class ItemResult(Generic[R]):
    """Outcome of one item, tagged with its position in the input."""

    index: int
    status: ItemStatus = ItemStatus.PENDING
    value: R | None = None
    error: Exception | None = None
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == ItemStatus.SUCCEEDED


ResultHook = Callable[[ItemResult[Any]], Awaitable[None] | None]


class ConcurrencyLimiter:
    """
    Bounded executor for collections of async work.

    Usage:
        limiter = ConcurrencyLimiter()
        results = await limiter.run_bounded(scenes, describe_scene, limit=3)
        failed = [r for r in results if not r.ok]
    """

    def __init__(self, metrics: MetricsCollector | None = None) -> None:
        self._metrics = metrics or get_metrics()
        self._active = 0
        self._peak = 0
        self._total_started = 0
        self._total_succeeded = 0
        self._total_failed = 0
        self._total_not_started = 0
        self._backend_sems: dict[str, asyncio.Semaphore] = {}

    def _enter(self) -> None:
        self._active += 1
        self._total_started += 1
        self._peak = max(self._peak, self._active)
        self._metrics.record_in_flight(self._active)

    def _exit(self) -> None:
        self._active -= 1
        self._metrics.record_in_flight(self._active)

    async def run_bounded(
        self,
        items: Iterable[T],
        worker: Worker[T, R],
        *,
        limit: int,
        continue_on_error: bool = True,
        cancel_event: asyncio.Event | None = None,
        on_result: ResultHook | None = None,
    ) -> list[ItemResult[R]]:
        """
        Run ``worker`` over ``items`` with at most ``limit`` in flight.

        Args:
            continue_on_error: If False, no new item starts after the first
                failure; in-flight items still finish. Unstarted items are
                reported SKIPPED.
            cancel_event: Once set, no new item starts. Unstarted items are
                reported CANCELLED.
            on_result: Called with each item's result as soon as it resolves.
                May be async; it is awaited before the runner takes the
                next item. Errors it raises propagate out of the run.

        Returns:
            One ItemResult per input item, in input order.
        """
        if limit < 1:
            raise ValueError("limit must be >= 1")

        pending = list(items)
        results: list[ItemResult[R]] = [ItemResult(index=i) for i in range(len(pending))]
        cursor = 0
        halted: ItemStatus | None = None

        async def notify(result: ItemResult[R]) -> None:
            if on_result is None:
                return
            outcome = on_result(result)
            if inspect.isawaitable(outcome):
                await outcome

        async def runner() -> None:
            nonlocal cursor, halted
            while True:
                if halted is not None:
                    return
                if cancel_event is not None and cancel_event.is_set():
                    halted = ItemStatus.CANCELLED
                    return
                if cursor >= len(pending):
                    return

                index = cursor
                cursor += 1
                results[index].status = ItemStatus.RUNNING
                self._enter()
                start = time.monotonic()
                try:
                    value = await worker(pending[index])
                except Exception as exc:
                    result = ItemResult(
                        index=index,
                        status=ItemStatus.FAILED,
                        error=exc,
                        duration_s=time.monotonic() - start,
                    )
                    self._total_failed += 1
                    if not continue_on_error and halted is None:
                        halted = ItemStatus.SKIPPED
                        logger.info("limiter_halted_on_failure", index=index)
                else:
                    result = ItemResult(
                        index=index,
                        status=ItemStatus.SUCCEEDED,
                        value=value,
                        duration_s=time.monotonic() - start,
                    )
                    self._total_succeeded += 1
                finally:
                    self._exit()

                results[index] = result
                await notify(result)

        await asyncio.gather(*(runner() for _ in range(min(limit, len(pending)))))

        for result in results:
            if result.status == ItemStatus.PENDING:
                result.status = halted or ItemStatus.CANCELLED
                self._total_not_started += 1
                await notify(result)

        return results

    @asynccontextmanager
    async def backend_slot(self, backend_id: str, max_concurrency: int) -> AsyncIterator[None]:
        """Hold one of a backend's in-flight slots. ``max_concurrency`` <= 0 means unbounded."""
        if max_concurrency <= 0:
            yield
            return
        sem = self._backend_sems.get(backend_id)
        if sem is None:
            sem = self._backend_sems[backend_id] = asyncio.Semaphore(max_concurrency)
        async with sem:
            yield

    @asynccontextmanager
    async def adapter_call(self, backend_id: str, max_concurrency: int) -> AsyncIterator[None]:
        """Hold the surrounding batch budget (if any), then a backend slot."""
        budget = _call_budget.get()
        if budget is None:
            async with self.backend_slot(backend_id, max_concurrency):
                yield
            return
        async with budget, self.backend_slot(backend_id, max_concurrency):
            yield

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def peak_count(self) -> int:
        return self._peak

    def get_stats(self) -> dict[str, Any]:
        return {
            "active": self._active,
            "peak": self._peak,
            "total_started": self._total_started,
            "total_succeeded": self._total_succeeded,
            "total_failed": self._total_failed,
            "total_not_started": self._total_not_started,
            "backend_slots": sorted(self._backend_sems),
        }


# ── Singleton ──────────────────────────────────────────────────────

_limiter: ConcurrencyLimiter | None = None

def get_limiter() -> ConcurrencyLimiter:
    # Lock-free benign-race singleton.
    global _limiter
    if _limiter is not None:
        return _limiter
    _limiter = ConcurrencyLimiter()
    return _limiter


async def run_bounded(
    items: Iterable[T],
    worker: Worker[T, R],
    limit: int,
    **kwargs: Any,
) -> list[ItemResult[R]]:
    """Module-level shortcut over the process-wide limiter."""
    return await get_limiter().run_bounded(items, worker, limit=limit, **kwargs)
