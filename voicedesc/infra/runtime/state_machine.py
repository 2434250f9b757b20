"""
Job State Machine — Lifecycle, Progress, Terminal Outcome
===========================================================

  PENDING → PROCESSING → COMPLETED
                       ↘ FAILED

``advance`` executes exactly one stage:
  1. claim the next stage through an atomic store update (rejects
     terminal jobs and concurrent advances, honors cancellation)
  2. run it in the stage executor, committing intra-stage progress
     inside the stage's weight band; if the run is interrupted the claim
     is released and the job fails as cancelled
  3. commit the outcome: history, outputs, progress, next stage or a
     terminal status

This is the only place a job becomes failed.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict
from typing import Any

from voicedesc.core.exceptions import (
    ConcurrentAdvanceError,
    ErrorCategory,
    InvalidTransition,
)
from voicedesc.core.storage import JobStore
from voicedesc.core.types import JobStatus, StageOutcome
from voicedesc.infra.runtime.stages import (
    StageCatalog,
    StageDefinition,
    StageExecutor,
    StageResult,
)
from voicedesc.infra.telemetry import get_logger, get_metrics, log_context
from voicedesc.infra.telemetry.metrics import MetricsCollector
from voicedesc.models.job import Job, JobError, JobResult, StageRecord

logger = get_logger(__name__)


class JobStateMachine:
    def __init__(
        self,
        store: JobStore,
        executor: StageExecutor,
        catalog: StageCatalog | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._catalog = catalog or StageCatalog()
        self._metrics = metrics or get_metrics()

    @property
    def catalog(self) -> StageCatalog:
        return self._catalog

    async def advance(self, job: Job) -> Job:
        """
        Execute the next pending stage of ``job``.

        Raises:
            InvalidTransition: job is already completed or failed.
            ConcurrentAdvanceError: another advance holds the job's stage.
        """
        claimed: dict[str, Any] = {}

        def claim(j: Job) -> None:
            if j.status.is_terminal:
                raise InvalidTransition(j.id, j.status.value)
            if j.stage_in_flight is not None:
                raise ConcurrentAdvanceError(j.id, j.stage_in_flight.value)
            stage = self._catalog.next_stage(j.kind, j.completed_stages())
            if stage is None:
                raise InvalidTransition(j.id, "out of stages")
            if j.cancel_requested:
                # pending jobs still pass through processing on the way out
                if j.status == JobStatus.PENDING:
                    j.status = JobStatus.PROCESSING
                    claimed["settle"] = True
                else:
                    _cancel(j)
                return
            j.status = JobStatus.PROCESSING
            j.current_stage = stage.name
            j.stage_in_flight = stage.name
            claimed["stage"] = stage

        with log_context(job_id=job.id):
            snapshot = await self._store.update(job.id, claim)
            if claimed.get("settle"):
                snapshot = await self._store.update(job.id, _settle_cancel)
            if "stage" not in claimed:
                logger.info("job_cancelled", stage=snapshot.current_stage.value)
                self._finished(snapshot)
                return snapshot

            stage: StageDefinition = claimed["stage"]
            try:
                result = await self._executor.run(
                    stage, snapshot, self._progress_reporter(job.id, stage)
                )
            except BaseException:
                await self._release(job.id, stage)
                raise
            committed = await self._store.update(
                job.id, lambda j: self._commit(j, stage, result)
            )

            logger.info(
                "stage_committed",
                stage=stage.name.value,
                status=committed.status.value,
                progress=committed.progress,
            )
            if committed.is_terminal:
                self._finished(committed)
            return committed

    async def run_to_completion(self, job: Job) -> Job:
        """Advance until the job reaches a terminal state."""
        current = job
        while not current.is_terminal:
            current = await self.advance(current)
        return current

    # ── Internals ──────────────────────────────────────────────────

    def _progress_reporter(self, job_id: str, stage: StageDefinition) -> _ProgressReporter:
        return _ProgressReporter(self._store, self._catalog, job_id, stage)

    async def _release(self, job_id: str, stage: StageDefinition) -> None:
        """Drop the stage claim of an interrupted run and settle the job as cancelled."""

        settled: list[bool] = []

        def release(j: Job) -> None:
            if j.stage_in_flight != stage.name or j.status.is_terminal:
                return
            j.stage_history.append(StageRecord(stage.name, StageOutcome.DISCARDED))
            _cancel(j, "Stage was interrupted before it finished")
            settled.append(True)

        try:
            released = await asyncio.shield(self._store.update(job_id, release))
        except Exception as exc:
            logger.error("stage_release_failed", exc=exc, stage=stage.name.value)
            return
        logger.warning("stage_interrupted", stage=stage.name.value, status=released.status.value)
        if settled:
            self._finished(released)

    def _commit(self, job: Job, stage: StageDefinition, result: StageResult) -> None:
        job.stage_in_flight = None
        record = StageRecord(
            stage=stage.name,
            outcome=StageOutcome.SUCCEEDED if result.success else StageOutcome.FAILED,
            retry_count=result.retry_count,
            duration_s=round(result.duration_s, 4),
            backend_id=result.backend_id,
            fallback_reason=result.fallback_reason,
            units_total=result.units_total,
            units_failed=result.units_failed,
        )
        if result.fallback_reason:
            job.fallback_reasons[stage.name.value] = result.fallback_reason

        if job.cancel_requested:
            record.outcome = StageOutcome.DISCARDED
            job.stage_history.append(record)
            _cancel(job)
            return

        job.stage_history.append(record)

        if not result.success:
            error = result.error
            assert error is not None
            job.status = JobStatus.FAILED
            job.error = JobError(
                code=error.category,
                message=error.detail,
                retryable=error.retryable,
                stage=stage.name,
                attempts=error.attempts,
                cause=error.cause_kind,
                history=[asdict(h) for h in error.history],
            )
            return

        job.stage_outputs[stage.name.value] = result.output
        completed = job.completed_stages()
        job.progress = max(job.progress, self._catalog.progress_for(job.kind, completed))

        nxt = self._catalog.next_stage(job.kind, completed)
        if nxt is None:
            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.result = _assemble_result(job)
        else:
            job.current_stage = nxt.name

    def _finished(self, job: Job) -> None:
        code = job.error.code.value if job.error else ""
        self._metrics.record_job_finished(kind=job.kind.value, status=job.status.value, code=code)
        logger.info(
            "job_finished",
            status=job.status.value,
            progress=job.progress,
            code=code or None,
        )


class _ProgressReporter:
    """Commits intra-stage progress inside the stage's weight band."""

    def __init__(self, store: JobStore, catalog: StageCatalog, job_id: str, stage: StageDefinition):
        self._store = store
        self._catalog = catalog
        self._job_id = job_id
        self._stage = stage

    async def __call__(self, done: int, total: int) -> None:
        if total <= 0:
            return
        stage = self._stage
        catalog = self._catalog
        fraction = min(done, total) / total

        def bump(j: Job) -> None:
            if j.status != JobStatus.PROCESSING or j.cancel_requested:
                return
            start, end = catalog.band(j.kind, stage.name)
            j.progress = max(j.progress, start + int((end - start) * fraction))

        await self._store.update(self._job_id, bump)


def _settle_cancel(job: Job) -> None:
    if not job.status.is_terminal:
        _cancel(job)


def _cancel(job: Job, message: str = "Job was cancelled") -> None:
    job.status = JobStatus.FAILED
    job.stage_in_flight = None
    job.error = JobError(
        code=ErrorCategory.CANCELLED,
        message=message,
        retryable=False,
        stage=job.current_stage,
    )


def _assemble_result(job: Job) -> JobResult:
    analysis = job.stage_outputs.get("analyze", {})
    speech = job.stage_outputs.get("synthesize", {})
    delivery = job.stage_outputs.get("deliver", {})

    backends: list[str] = []
    for record in job.stage_history:
        for backend_id in (record.backend_id or "").split("+"):
            if backend_id and backend_id not in backends:
                backends.append(backend_id)

    return JobResult(
        description=analysis.get("description", ""),
        confidence=analysis.get("confidence", 0.0),
        audio_reference=speech.get("audio_reference"),
        audio_duration_s=speech.get("duration_s"),
        description_reference=delivery.get("description_reference"),
        backends=backends,
    )
