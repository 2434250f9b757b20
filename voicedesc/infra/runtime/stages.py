"""
Stage Executor — One Pipeline Stage at a Time
================================================

Stage sequences per job kind (fixed configuration):
  video: SEGMENT → EXTRACT → ANALYZE → SYNTHESIZE → DELIVER
  image: ANALYZE → SYNTHESIZE → DELIVER

Each run of a stage:
  - resolves a backend (or hybrid plan) through the selector
  - wraps every adapter call in the retry engine, unless the stage is
    non-retryable, in which case the first failure is terminal
  - holds the backend's in-flight slot around every adapter call
  - fans collection work (extract per segment, analyze per scene)
    out through the concurrency limiter
  - reports progress after each sub-unit

The executor never marks a job failed. It returns a StageResult and the
state machine decides what happens to the job.
"""

from __future__ import annotations

import dataclasses
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from voicedesc.core.config import Settings, settings
from voicedesc.core.exceptions import (
    BlobNotFoundError,
    NoEligibleBackend,
    OperationFailedError,
    StageCatalogError,
)
from voicedesc.core.storage import BlobStore
from voicedesc.core.types import CapabilityTag, JobKind, StageName
from voicedesc.infra.runtime.backends import (
    AnalysisBackendAdapter,
    AnalysisOptions,
    AnalysisTask,
    SceneExtractor,
    Segment,
    VoiceOptions,
)
from voicedesc.infra.runtime.compilation import SceneAnalysis, compile_scenes
from voicedesc.infra.runtime.limiter import ConcurrencyLimiter, ItemResult
from voicedesc.infra.runtime.retry import RetryEngine, RetryPolicy, classify_failure
from voicedesc.infra.runtime.selector import (
    BackendDescriptor,
    BackendSelector,
    Selection,
    SelectionRequirements,
)
from voicedesc.infra.telemetry import get_logger, get_metrics, log_context
from voicedesc.infra.telemetry.metrics import MetricsCollector
from voicedesc.models.job import Job
from voicedesc.models.media import MediaReference

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

ProgressCallback = Callable[[int, int], Awaitable[None]]

# ── Stage Catalog ──────────────────────────────────────────────────

@dataclass(frozen=True)
class StageDefinition:
    name: StageName
    order: int
    weight: int
    retryable: bool = True
    capabilities: frozenset[str] = frozenset()
    fan_out: bool = False


def _stage(
    name: StageName,
    order: int,
    weight: int,
    *caps: CapabilityTag,
    retryable: bool = True,
    fan_out: bool = False,
) -> StageDefinition:
    return StageDefinition(name, order, weight, retryable, frozenset(caps), fan_out)


DEFAULT_SEQUENCES: dict[JobKind, list[StageDefinition]] = {
    JobKind.VIDEO: [
        _stage(StageName.SEGMENT, 0, 20, CapabilityTag.VIDEO, CapabilityTag.TEMPORAL_ANALYSIS),
        _stage(StageName.EXTRACT, 1, 20, fan_out=True),
        _stage(StageName.ANALYZE, 2, 20, CapabilityTag.VIDEO, fan_out=True),
        _stage(StageName.SYNTHESIZE, 3, 20, CapabilityTag.SPEECH),
        _stage(StageName.DELIVER, 4, 20, retryable=False),
    ],
    JobKind.IMAGE: [
        _stage(StageName.ANALYZE, 0, 50, CapabilityTag.IMAGE),
        _stage(StageName.SYNTHESIZE, 1, 30, CapabilityTag.SPEECH),
        _stage(StageName.DELIVER, 2, 20, retryable=False),
    ],
}


class StageCatalog:
    """Validated, read-only stage sequences keyed by job kind."""

    def __init__(self, sequences: Mapping[JobKind, Sequence[StageDefinition]] | None = None):
        self._sequences: dict[JobKind, tuple[StageDefinition, ...]] = {}
        for kind, stages in (sequences or DEFAULT_SEQUENCES).items():
            self._sequences[kind] = self.validate(kind, stages)

    @staticmethod
    def validate(kind: JobKind, stages: Sequence[StageDefinition]) -> tuple[StageDefinition, ...]:
        if not stages:
            raise StageCatalogError(f"Job kind '{kind}' has no stages")
        names = [s.name for s in stages]
        if len(set(names)) != len(names):
            raise StageCatalogError(f"Job kind '{kind}' has duplicate stages: {names}")
        orders = [s.order for s in stages]
        if len(set(orders)) != len(orders):
            raise StageCatalogError(f"Job kind '{kind}' has duplicate stage orders: {orders}")
        if any(s.weight < 0 for s in stages):
            raise StageCatalogError(f"Job kind '{kind}' has a negative stage weight")
        total = sum(s.weight for s in stages)
        if total != 100:
            raise StageCatalogError(f"Stage weights for '{kind}' sum to {total}, expected 100")
        return tuple(sorted(stages, key=lambda s: s.order))

    def stages_for(self, kind: JobKind) -> tuple[StageDefinition, ...]:
        try:
            return self._sequences[kind]
        except KeyError:
            raise StageCatalogError(f"No stage sequence configured for '{kind}'") from None

    def get(self, kind: JobKind, name: StageName) -> StageDefinition:
        for stage in self.stages_for(kind):
            if stage.name == name:
                return stage
        raise StageCatalogError(f"Stage '{name}' is not part of the '{kind}' sequence")

    def first_stage(self, kind: JobKind) -> StageDefinition:
        return self.stages_for(kind)[0]

    def next_stage(self, kind: JobKind, completed: Iterable[StageName]) -> StageDefinition | None:
        """First stage of the sequence that has not succeeded yet."""
        done = set(completed)
        for stage in self.stages_for(kind):
            if stage.name not in done:
                return stage
        return None

    def band(self, kind: JobKind, name: StageName) -> tuple[int, int]:
        """Progress range [start, end] owned by a stage."""
        start = 0
        for stage in self.stages_for(kind):
            if stage.name == name:
                return start, start + stage.weight
            start += stage.weight
        raise StageCatalogError(f"Stage '{name}' is not part of the '{kind}' sequence")

    def progress_for(self, kind: JobKind, completed: Iterable[StageName]) -> int:
        done = set(completed)
        return sum(s.weight for s in self.stages_for(kind) if s.name in done)

# ── Stage Result ───────────────────────────────────────────────────

@dataclass
class StageResult:
    """Success with output, or failure with a classified terminal error."""

    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    error: OperationFailedError | None = None
    retry_count: int = 0
    backends: list[str] = field(default_factory=list)
    fallback_reason: str | None = None
    units_total: int = 0
    units_failed: int = 0
    duration_s: float = 0.0

    @property
    def backend_id(self) -> str | None:
        return "+".join(self.backends) if self.backends else None


@dataclass
class _StageRun:
    """Mutable bookkeeping for one execution of a stage."""

    stage: StageDefinition
    job: Job
    on_progress: ProgressCallback | None
    retry_count: int = 0
    backends: list[str] = field(default_factory=list)
    fallback_reason: str | None = None
    units_total: int = 0
    units_failed: int = 0

    def on_retry(self, attempt: int, exc: BaseException, delay: float) -> None:
        self.retry_count += 1

    def note(self, selection: Selection) -> None:
        for backend_id in selection.backend_ids:
            if backend_id not in self.backends:
                self.backends.append(backend_id)
        if selection.fallback_reason and not self.fallback_reason:
            self.fallback_reason = selection.fallback_reason

    async def progress(self, done: int, total: int) -> None:
        """Commit intra-stage progress. A failed write is logged, never fatal to the stage."""
        if self.on_progress is None:
            return
        try:
            await self.on_progress(done, total)
        except Exception as exc:
            logger.warning("progress_commit_failed", done=done, total=total, error=str(exc))

    def result(self, success: bool, **kwargs: Any) -> StageResult:
        return StageResult(
            success=success,
            retry_count=self.retry_count,
            backends=list(self.backends),
            fallback_reason=self.fallback_reason,
            units_total=self.units_total,
            units_failed=self.units_failed,
            **kwargs,
        )

# ── Stage Executor ─────────────────────────────────────────────────

class StageExecutor:
    """
    Runs a single stage of a job.

    Usage:
        executor = StageExecutor(selector, RetryEngine(), limiter, blob_store, extractor)
        result = await executor.run(stage, job, on_progress)
    """

    def __init__(
        self,
        selector: BackendSelector,
        retry_engine: RetryEngine,
        limiter: ConcurrencyLimiter,
        blob_store: BlobStore,
        extractor: SceneExtractor | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        cfg: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        cfg = cfg or settings
        self._selector = selector
        self._retry = retry_engine
        self._limiter = limiter
        self._blobs = blob_store
        self._extractor = extractor
        self._policy = retry_policy or RetryPolicy.from_settings(cfg)
        self._fan_out_limit = cfg.STAGE_FANOUT_CONCURRENCY
        self._default_voice = cfg.DEFAULT_VOICE_ID
        self._metrics = metrics or get_metrics()
        self._handlers: dict[StageName, Callable[[_StageRun], Awaitable[dict[str, Any]]]] = {
            StageName.SEGMENT: self._segment,
            StageName.EXTRACT: self._extract,
            StageName.ANALYZE: self._analyze,
            StageName.SYNTHESIZE: self._synthesize,
            StageName.DELIVER: self._deliver,
        }

    async def run(
        self,
        stage: StageDefinition,
        job: Job,
        on_progress: ProgressCallback | None = None,
    ) -> StageResult:
        run = _StageRun(stage=stage, job=job, on_progress=on_progress)
        handler = self._handlers[stage.name]
        start = time.monotonic()

        with log_context(job_id=job.id, stage=stage.name.value):
            try:
                output = await handler(run)
            except Exception as exc:
                error = classify_failure(exc, operation=stage.name.value)
                result = run.result(False, error=error)
                logger.warning(
                    "stage_failed",
                    category=error.category.value,
                    attempts=error.attempts,
                    cause=error.cause_kind,
                    retries=run.retry_count,
                )
            else:
                result = run.result(True, output=output)
                logger.info(
                    "stage_succeeded",
                    backends=result.backend_id,
                    retries=run.retry_count,
                    units=run.units_total,
                    units_failed=run.units_failed,
                )

        result.duration_s = time.monotonic() - start
        self._metrics.record_stage(
            stage=stage.name.value,
            outcome="succeeded" if result.success else "failed",
            duration_s=result.duration_s,
        )
        return result

    # ── Plumbing ───────────────────────────────────────────────────

    def _select(self, run: _StageRun) -> Selection:
        requirements = SelectionRequirements.for_job(
            run.stage.capabilities, run.job.options, run.job.media
        )
        if run.stage.name not in (StageName.SEGMENT, StageName.ANALYZE):
            requirements = dataclasses.replace(requirements, preferred_backend=None)
        selection = self._selector.select(requirements)
        run.note(selection)
        return selection

    async def _guarded(
        self, run: _StageRun, name: str, call: Callable[[], Awaitable[T]]
    ) -> T:
        if run.stage.retryable:
            return await self._retry.execute(call, self._policy, name=name, on_retry=run.on_retry)
        try:
            return await call()
        except Exception as exc:
            raise classify_failure(exc, operation=name) from exc

    async def _call_backend(
        self,
        run: _StageRun,
        backend: BackendDescriptor,
        call: Callable[[AnalysisBackendAdapter], Awaitable[T]],
    ) -> T:
        async def attempt() -> T:
            async with self._limiter.adapter_call(backend.id, backend.max_concurrency):
                return await call(backend.adapter)

        return await self._guarded(run, f"{run.stage.name}:{backend.id}", attempt)

    async def _fan_out(
        self,
        run: _StageRun,
        items: list[T],
        worker: Callable[[T], Awaitable[R]],
    ) -> list[ItemResult[R]]:
        """Run sub-units through the limiter. Fails only if no unit succeeds.

        Progress advances per successful unit, so a stage that ends up
        failing never moves the job past the start of its band. It is
        committed from the result hook, outside the worker, so a failed
        progress write never turns a good unit into a failed one.
        """
        total = len(items)
        done = 0

        async def report(outcome: ItemResult[R]) -> None:
            nonlocal done
            if not outcome.ok:
                return
            done += 1
            await run.progress(done, total)

        results = await self._limiter.run_bounded(
            items, worker, limit=self._fan_out_limit, continue_on_error=True, on_result=report
        )
        run.units_total = total
        run.units_failed = sum(1 for r in results if not r.ok)

        if total and run.units_failed == total:
            first = next(r.error for r in results if r.error is not None)
            raise classify_failure(first, operation=run.stage.name.value)
        if run.units_failed:
            logger.warning("stage_partial_failure", failed=run.units_failed, total=total)
        return results

    def _analysis_options(self, job: Job, task: AnalysisTask, **context: Any) -> AnalysisOptions:
        return AnalysisOptions(
            task=task,
            detail_level=job.options.detail_level,
            language=job.options.language,
            context=context,
        )

    async def _describe(
        self, run: _StageRun, selection: Selection, media: MediaReference, **context: Any
    ) -> tuple[str, float]:
        opts = self._analysis_options(run.job, AnalysisTask.DESCRIBE, **context)
        primary = await self._call_backend(run, selection.primary, lambda a: a.analyze(media, opts))
        confidence = primary.confidence
        if selection.plan is not None:
            verification = await self._call_backend(
                run, selection.plan.secondary, lambda a: a.analyze(media, opts)
            )
            confidence = (primary.confidence + verification.confidence) / 2
        return primary.description, confidence

    # ── Handlers ───────────────────────────────────────────────────

    async def _segment(self, run: _StageRun) -> dict[str, Any]:
        job = run.job
        selection = self._select(run)
        opts = self._analysis_options(job, AnalysisTask.SEGMENT)
        analysis = await self._call_backend(
            run, selection.primary, lambda a: a.analyze(job.media, opts)
        )

        raw = analysis.structured_elements.get("segments") or []
        segments = [
            Segment(index=i, start_s=float(s["start_s"]), end_s=float(s["end_s"]))
            for i, s in enumerate(raw)
        ]
        if not segments:
            segments = [Segment(index=0, start_s=0.0, end_s=job.media.duration_s or 0.0)]

        await run.progress(1, 1)
        return {"segments": [s.to_dict() for s in segments]}

    async def _extract(self, run: _StageRun) -> dict[str, Any]:
        extractor = self._extractor
        if extractor is None:
            raise NoEligibleBackend("No scene extractor configured")
        job = run.job
        segments = [
            Segment.from_dict(s) for s in job.stage_outputs.get("segment", {}).get("segments", [])
        ]

        async def extract_one(segment: Segment) -> MediaReference:
            return await self._guarded(
                run,
                f"extract:{segment.index}",
                lambda: extractor.extract(job.media, segment),
            )

        results = await self._fan_out(run, segments, extract_one)
        scenes = [
            {**segments[r.index].to_dict(), "media": r.value.to_dict()}
            for r in results
            if r.ok and r.value is not None
        ]
        return {"scenes": scenes}

    async def _analyze(self, run: _StageRun) -> dict[str, Any]:
        job = run.job
        selection = self._select(run)

        if job.kind == JobKind.IMAGE:
            description, confidence = await self._describe(run, selection, job.media)
            run.units_total = 1
            await run.progress(1, 1)
            analyses = [SceneAnalysis(index=0, description=description, confidence=confidence)]
        else:
            scenes = job.stage_outputs.get("extract", {}).get("scenes", [])

            async def analyze_scene(scene: dict[str, Any]) -> SceneAnalysis:
                description, confidence = await self._describe(
                    run,
                    selection,
                    MediaReference.from_dict(scene["media"]),
                    scene_index=scene["index"],
                )
                return SceneAnalysis(
                    index=scene["index"],
                    description=description,
                    confidence=confidence,
                    start_s=scene["start_s"],
                    end_s=scene["end_s"],
                )

            results = await self._fan_out(run, scenes, analyze_scene)
            analyses = [r.value for r in results if r.ok and r.value is not None]

        compiled = compile_scenes(analyses)
        return {
            **compiled.to_dict(),
            "scenes": [dataclasses.asdict(a) for a in analyses],
        }

    async def _synthesize(self, run: _StageRun) -> dict[str, Any]:
        job = run.job
        if not job.options.generate_audio:
            await run.progress(1, 1)
            return {"skipped": True}

        narration = job.stage_outputs.get("analyze", {}).get("narration", "")
        selection = self._select(run)
        voice = VoiceOptions(
            voice_id=job.options.voice_id or self._default_voice,
            language=job.options.language,
        )
        speech = await self._call_backend(
            run, selection.primary, lambda a: a.synthesize_speech(narration, voice)
        )
        await run.progress(1, 1)
        return {"audio_reference": speech.audio_reference, "duration_s": speech.duration_s}

    async def _deliver(self, run: _StageRun) -> dict[str, Any]:
        job = run.job
        description = job.stage_outputs.get("analyze", {}).get("description", "")

        async def deliver() -> dict[str, Any]:
            reference = await self._blobs.put(description.encode("utf-8"))
            audio = job.stage_outputs.get("synthesize", {}).get("audio_reference")
            if audio and not await self._blobs.exists(audio):
                raise BlobNotFoundError(audio)
            return {"description_reference": reference}

        output = await self._guarded(run, "deliver", deliver)
        await run.progress(1, 1)
        return output
