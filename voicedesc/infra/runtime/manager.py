"""
Job Manager — Top-Level Orchestration Facade
===============================================

Creates jobs, drives them through the state machine, answers status
queries and coordinates batches through the concurrency limiter.

Lifecycle:
    manager = JobManager(store=InMemoryJobStore(), selector=selector, extractor=extractor)
    job_id = await manager.create_job("image", MediaReference("s3://bucket/cat.png", 2048))
    manager.start_job(job_id)          # background
    view = await manager.get_status(job_id)

    batch_id = await manager.create_batch(items, BatchOptions(concurrency_limit=3))
    result = await manager.get_batch_status(batch_id)

Batches live in process memory; their jobs live in the job store like
any other job.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from collections.abc import Coroutine, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from voicedesc.core.config import Settings, settings
from voicedesc.core.exceptions import (
    BatchNotFoundError,
    InvalidJobRequest,
    InvalidTransition,
    VoiceDescException,
    classify_error,
)
from voicedesc.core.storage import BlobStore, InMemoryBlobStore, JobStore, create_job_store
from voicedesc.core.types import BatchStatus, ItemStatus, JobKind, JobStatus
from voicedesc.infra.runtime.backends import SceneExtractor
from voicedesc.infra.runtime.limiter import (
    ConcurrencyLimiter,
    ItemResult,
    call_budget,
    get_limiter,
)
from voicedesc.infra.runtime.retry import RetryEngine
from voicedesc.infra.runtime.selector import BackendSelector, get_selector
from voicedesc.infra.runtime.stages import StageCatalog, StageExecutor
from voicedesc.infra.runtime.state_machine import JobStateMachine
from voicedesc.infra.telemetry import get_logger, get_metrics, log_context, setup_logging
from voicedesc.infra.telemetry.metrics import MetricsCollector
from voicedesc.models.batch import BatchItemStatus, BatchResult
from voicedesc.models.job import Job, JobStatusView, utcnow
from voicedesc.models.media import MediaReference
from voicedesc.models.options import BatchItem, BatchOptions, JobOptions

logger = get_logger(__name__)


class _ItemFailed(Exception):
    """A batch item's job ended failed; carries the job's error payload."""

    def __init__(self, error: dict[str, Any] | None):
        super().__init__((error or {}).get("message", "job failed"))
        self.error = error


@dataclass
class _BatchState:
    result: BatchResult
    items: list[BatchItem]
    options: BatchOptions
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    created_at: datetime = field(default_factory=utcnow)


class JobManager:
    """
    Owns job records for their full lifecycle.

    Every collaborator is injectable; defaults come from settings and the
    process-wide selector / limiter singletons.
    """

    def __init__(
        self,
        store: JobStore | None = None,
        selector: BackendSelector | None = None,
        *,
        extractor: SceneExtractor | None = None,
        blob_store: BlobStore | None = None,
        catalog: StageCatalog | None = None,
        retry_engine: RetryEngine | None = None,
        limiter: ConcurrencyLimiter | None = None,
        cfg: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._cfg = cfg or settings
        self._metrics = metrics or get_metrics()
        self._store = store or create_job_store(self._cfg)
        self._selector = selector or get_selector()
        self._limiter = limiter or get_limiter()
        self._blobs = blob_store or InMemoryBlobStore()
        self._catalog = catalog or StageCatalog()

        executor = StageExecutor(
            self._selector,
            retry_engine or RetryEngine(metrics=self._metrics),
            self._limiter,
            self._blobs,
            extractor,
            cfg=self._cfg,
            metrics=self._metrics,
        )
        self._machine = JobStateMachine(self._store, executor, self._catalog, self._metrics)

        self._batches: dict[str, _BatchState] = {}
        self._tasks: set[asyncio.Task] = set()
        self._driving: set[str] = set()
        self._last_cleanup: datetime | None = None

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def state_machine(self) -> JobStateMachine:
        return self._machine

    # ── Jobs ───────────────────────────────────────────────────────

    async def create_job(
        self,
        kind: JobKind | str,
        media: MediaReference,
        options: JobOptions | Mapping[str, Any] | None = None,
        *,
        batch_id: str | None = None,
    ) -> str:
        """
        Validate and persist a new pending job.

        Raises:
            InvalidJobRequest: unknown kind, bad options, missing or oversize media.
            StageCatalogError: the kind has no valid stage sequence.
        """
        try:
            kind = JobKind(kind)
        except ValueError:
            raise InvalidJobRequest(f"Unsupported job kind: {kind!r}") from None

        if options is None:
            options = JobOptions()
        elif not isinstance(options, JobOptions):
            try:
                options = JobOptions.model_validate(options)
            except ValidationError as exc:
                raise InvalidJobRequest(f"Invalid job options: {exc}") from exc

        self._validate_media(kind, media)
        first = self._catalog.first_stage(kind)

        job = Job(
            kind=kind,
            media=media,
            current_stage=first.name,
            options=options,
            batch_id=batch_id,
        )
        await self._store.create(job)
        self._metrics.record_job_created(kind.value)
        logger.info(
            "job_created",
            job_id=job.id,
            kind=kind.value,
            size_bytes=media.size_bytes,
            batch_id=batch_id,
        )
        return job.id

    def _validate_media(self, kind: JobKind, media: MediaReference) -> None:
        if not media.uri:
            raise InvalidJobRequest("Media reference has no URI")
        if media.size_bytes < 0:
            raise InvalidJobRequest("Media size cannot be negative")
        limit = self._cfg.max_media_bytes(kind.value)
        if media.size_bytes > limit:
            raise InvalidJobRequest(
                f"{kind.value.capitalize()} is {media.size_bytes / 1024 / 1024:.1f}MB, "
                f"limit is {limit // 1024 // 1024}MB"
            )

    async def get_status(self, job_id: str) -> JobStatusView:
        """Most recent committed state of a job."""
        return JobStatusView.from_job(await self._store.get(job_id))

    async def run_job(self, job_id: str) -> JobStatusView:
        """Drive a job to a terminal state and return its final view."""
        self._driving.add(job_id)
        try:
            job = await self._store.get(job_id)
            with log_context(job_id=job_id, batch_id=job.batch_id):
                try:
                    job = await self._machine.run_to_completion(job)
                except InvalidTransition:
                    # finished elsewhere (e.g. cancelled by another driver)
                    job = await self._store.get(job_id)
        finally:
            self._driving.discard(job_id)
        return JobStatusView.from_job(job)

    def start_job(self, job_id: str) -> asyncio.Task:
        """Drive a job in the background."""
        return self._spawn(self.run_job(job_id), name=f"job-{job_id}")

    async def cancel_job(self, job_id: str) -> JobStatusView:
        """
        Request cancellation. Takes effect between stages; a stage already
        in flight finishes and its output is discarded.

        Raises:
            InvalidTransition: the job is already terminal.
        """

        def request(j: Job) -> None:
            if j.status.is_terminal:
                raise InvalidTransition(j.id, j.status.value)
            j.cancel_requested = True

        job = await self._store.update(job_id, request)
        logger.info("job_cancel_requested", job_id=job_id)

        if job_id not in self._driving and job.stage_in_flight is None:
            # Nobody will advance it, so settle the cancellation now.
            try:
                job = await self._machine.advance(job)
            except InvalidTransition:
                job = await self._store.get(job_id)
        return JobStatusView.from_job(job)

    async def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        kind: JobKind | None = None,
        batch_id: str | None = None,
    ) -> list[JobStatusView]:
        jobs = await self._store.list_jobs()
        selected = [
            j
            for j in jobs
            if (status is None or j.status == status)
            and (kind is None or j.kind == kind)
            and (batch_id is None or j.batch_id == batch_id)
        ]
        selected.sort(key=lambda j: j.created_at)
        return [JobStatusView.from_job(j) for j in selected]

    # ── Batches ────────────────────────────────────────────────────

    async def create_batch(
        self,
        items: Iterable[BatchItem | Mapping[str, Any]],
        options: BatchOptions | Mapping[str, Any] | None = None,
        *,
        start: bool = True,
    ) -> str:
        """
        Register a batch. With ``start`` (default) it runs in the background.

        Raises:
            InvalidJobRequest: empty, too large, or malformed batch.
        """
        try:
            parsed = [i if isinstance(i, BatchItem) else BatchItem.model_validate(i) for i in items]
            if options is None:
                options = BatchOptions()
            elif not isinstance(options, BatchOptions):
                options = BatchOptions.model_validate(options)
        except ValidationError as exc:
            raise InvalidJobRequest(f"Invalid batch request: {exc}") from exc

        if not parsed:
            raise InvalidJobRequest("Batch has no items")
        if len(parsed) > self._cfg.BATCH_MAX_ITEMS:
            raise InvalidJobRequest(
                f"Batch has {len(parsed)} items, limit is {self._cfg.BATCH_MAX_ITEMS}"
            )

        batch_id = uuid.uuid4().hex
        result = BatchResult(
            batch_id=batch_id,
            items=[BatchItemStatus(index=i, item_id=item.item_id) for i, item in enumerate(parsed)],
        )
        state = _BatchState(result=result, items=parsed, options=options)
        self._batches[batch_id] = state
        logger.info(
            "batch_created",
            batch_id=batch_id,
            items=len(parsed),
            concurrency_limit=options.concurrency_limit,
            continue_on_error=options.continue_on_error,
        )

        if start:
            state.task = self._spawn(self._drive_batch(state), name=f"batch-{batch_id}")
        return batch_id

    async def run_batch(self, batch_id: str) -> BatchResult:
        """Run the batch (or wait for its background run) and return the result."""
        state = self._batch(batch_id)
        if state.task is None:
            state.task = asyncio.ensure_future(self._drive_batch(state))
        await state.task
        return copy.deepcopy(state.result)

    async def get_batch_status(self, batch_id: str) -> BatchResult:
        return copy.deepcopy(self._batch(batch_id).result)

    async def cancel_batch(self, batch_id: str) -> BatchResult:
        """Stop scheduling new items. Items already running finish normally."""
        state = self._batch(batch_id)
        state.result.cancel_requested = True
        state.cancel_event.set()
        if state.task is None:
            state.task = asyncio.ensure_future(self._drive_batch(state))
        logger.info("batch_cancel_requested", batch_id=batch_id)
        return copy.deepcopy(state.result)

    def _batch(self, batch_id: str) -> _BatchState:
        state = self._batches.get(batch_id)
        if state is None:
            raise BatchNotFoundError(batch_id)
        return state

    async def _drive_batch(self, state: _BatchState) -> None:
        result = state.result
        options = state.options

        async def work(index: int) -> JobStatusView:
            item = state.items[index]
            status = result.items[index]
            status.status = ItemStatus.RUNNING
            job_id = await self.create_job(
                item.kind, item.media, options.job_options, batch_id=result.batch_id
            )
            status.job_id = job_id
            view = await self.run_job(job_id)
            if view.status != JobStatus.COMPLETED:
                raise _ItemFailed(view.error)
            return view

        def record(outcome: ItemResult[JobStatusView]) -> None:
            status = result.items[outcome.index]
            status.status = outcome.status
            if outcome.error is not None:
                status.error = _item_error(outcome.error)

        # concurrency_limit caps adapter calls, including each video item's fan-out
        with log_context(batch_id=result.batch_id), call_budget(options.concurrency_limit):
            await self._limiter.run_bounded(
                range(len(state.items)),
                work,
                limit=options.concurrency_limit,
                continue_on_error=options.continue_on_error,
                cancel_event=state.cancel_event,
                on_result=record,
            )
            result.status = result.roll_up()
            logger.info(
                "batch_finished",
                status=result.status.value,
                completed=result.completed,
                failed=result.failed,
                skipped=result.skipped,
            )

    # ── Maintenance ────────────────────────────────────────────────

    async def cleanup_expired(self, max_age_hours: float | None = None) -> int:
        """Evict terminal jobs (and finished batches) older than the retention window."""
        hours = max_age_hours if max_age_hours is not None else self._cfg.JOB_RETENTION_HOURS
        cutoff = utcnow() - timedelta(hours=hours)

        deleted = 0
        for job in await self._store.list_jobs():
            if job.is_terminal and job.created_at < cutoff:
                if await self._store.delete(job.id):
                    deleted += 1

        for batch_id, state in list(self._batches.items()):
            if state.result.status != BatchStatus.PROCESSING and state.created_at < cutoff:
                del self._batches[batch_id]

        self._last_cleanup = utcnow()
        if deleted:
            logger.info("job_cleanup_completed", deleted=deleted, max_age_hours=hours)
        return deleted

    async def get_system_health(self) -> dict[str, Any]:
        """
        Roll-up health:
          unhealthy: more failed jobs than active ones
          degraded: any failed job, or more active jobs than the threshold
        """
        jobs = await self._store.list_jobs()
        counts = {s: 0 for s in JobStatus}
        for job in jobs:
            counts[job.status] += 1

        active = counts[JobStatus.PROCESSING]
        failed = counts[JobStatus.FAILED]
        if failed > active and failed > 0:
            status = "unhealthy"
        elif failed > 0 or active > self._cfg.HEALTH_DEGRADED_ACTIVE_JOBS:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "active_jobs": active,
            "pending_jobs": counts[JobStatus.PENDING],
            "completed_jobs": counts[JobStatus.COMPLETED],
            "failed_jobs": failed,
            "active_batches": sum(
                1 for b in self._batches.values() if b.result.status == BatchStatus.PROCESSING
            ),
            "last_cleanup": self._last_cleanup.isoformat() if self._last_cleanup else None,
            "backends": self._selector.get_stats(),
            "limiter": self._limiter.get_stats(),
            "stages": self._metrics.get_summary()["stages"],
        }

    async def refresh_backend_health(self) -> dict[str, bool]:
        return await self._selector.refresh_availability()

    async def shutdown(self) -> None:
        """Cancel background work and release the job store."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._store.close()
        logger.info("job_manager_shutdown", cancelled_tasks=len(tasks))

    # ── Background tasks ───────────────────────────────────────────

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background_task_failed", exc=exc, task=task.get_name())


def _item_error(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, _ItemFailed):
        return exc.error or {"code": "Fatal-Unknown", "message": str(exc)}
    if isinstance(exc, VoiceDescException):
        return {"code": exc.category.value, "message": exc.detail}
    return {"code": classify_error(exc).value, "message": str(exc)}


# ── Singleton ──────────────────────────────────────────────────────

_manager: JobManager | None = None

def get_job_manager() -> JobManager:
    # Lock-free benign-race singleton.
    global _manager
    if _manager is not None:
        return _manager
    setup_logging(settings)
    _manager = JobManager()
    return _manager
