"""
Job records.

Runtime records are plain dataclasses owned by the job store; they
serialize to JSON-safe dicts so the Redis store can persist them. The
read-only ``JobStatusView`` is what callers get back from the manager.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from voicedesc.core.exceptions import ErrorCategory
from voicedesc.core.types import JobKind, JobStatus, StageName, StageOutcome

from .media import MediaReference
from .options import JobOptions


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class StageRecord:
    """One entry of a job's stage history."""

    stage: StageName
    outcome: StageOutcome
    retry_count: int = 0
    duration_s: float = 0.0
    backend_id: str | None = None
    fallback_reason: str | None = None
    units_total: int = 0
    units_failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StageRecord:
        return cls(
            stage=StageName(data["stage"]),
            outcome=StageOutcome(data["outcome"]),
            retry_count=data.get("retry_count", 0),
            duration_s=data.get("duration_s", 0.0),
            backend_id=data.get("backend_id"),
            fallback_reason=data.get("fallback_reason"),
            units_total=data.get("units_total", 0),
            units_failed=data.get("units_failed", 0),
        )


@dataclass
class JobError:
    """Terminal error attached to a failed job.

    ``code`` is the error category, so callers can tell "try again"
    (Transient, Fatal-Exhausted) from "fix the input/config". ``history``
    holds one entry per failed attempt.
    """

    code: ErrorCategory
    message: str
    retryable: bool
    stage: StageName | None = None
    attempts: int = 0
    cause: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobError:
        stage = data.get("stage")
        return cls(
            code=ErrorCategory(data["code"]),
            message=data["message"],
            retryable=data["retryable"],
            stage=StageName(stage) if stage else None,
            attempts=data.get("attempts", 0),
            cause=data.get("cause"),
            history=[dict(h) for h in data.get("history", [])],
        )


@dataclass
class JobResult:
    description: str
    confidence: float
    audio_reference: str | None = None
    audio_duration_s: float | None = None
    description_reference: str | None = None
    backends: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobResult:
        return cls(
            description=data["description"],
            confidence=data["confidence"],
            audio_reference=data.get("audio_reference"),
            audio_duration_s=data.get("audio_duration_s"),
            description_reference=data.get("description_reference"),
            backends=list(data.get("backends", [])),
        )


@dataclass
class Job:
    """A single orchestration job.

    Status only moves pending → processing → completed | failed. Progress
    is derived from stage weights by the state machine and never regresses
    while the job is alive.
    """

    kind: JobKind
    media: MediaReference
    current_stage: StageName
    options: JobOptions = field(default_factory=JobOptions)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    stage_history: list[StageRecord] = field(default_factory=list)
    result: JobResult | None = None
    error: JobError | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    cancel_requested: bool = False
    stage_in_flight: StageName | None = None
    version: int = 0
    stage_outputs: dict[str, Any] = field(default_factory=dict)
    fallback_reasons: dict[str, str] = field(default_factory=dict)
    batch_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def completed_stages(self) -> list[StageName]:
        return [
            r.stage for r in self.stage_history if r.outcome == StageOutcome.SUCCEEDED
        ]

    def clone(self) -> Job:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "media": self.media.to_dict(),
            "options": self.options.model_dump(mode="json"),
            "status": self.status.value,
            "current_stage": self.current_stage.value,
            "progress": self.progress,
            "stage_history": [r.to_dict() for r in self.stage_history],
            "result": self.result.to_dict() if self.result else None,
            "error": self.error.to_dict() if self.error else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "cancel_requested": self.cancel_requested,
            "stage_in_flight": self.stage_in_flight.value if self.stage_in_flight else None,
            "version": self.version,
            "stage_outputs": self.stage_outputs,
            "fallback_reasons": self.fallback_reasons,
            "batch_id": self.batch_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        in_flight = data.get("stage_in_flight")
        return cls(
            id=data["id"],
            kind=JobKind(data["kind"]),
            media=MediaReference.from_dict(data["media"]),
            options=JobOptions.model_validate(data.get("options") or {}),
            status=JobStatus(data["status"]),
            current_stage=StageName(data["current_stage"]),
            progress=data.get("progress", 0),
            stage_history=[StageRecord.from_dict(r) for r in data.get("stage_history", [])],
            result=JobResult.from_dict(data["result"]) if data.get("result") else None,
            error=JobError.from_dict(data["error"]) if data.get("error") else None,
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            cancel_requested=data.get("cancel_requested", False),
            stage_in_flight=StageName(in_flight) if in_flight else None,
            version=data.get("version", 0),
            stage_outputs=data.get("stage_outputs", {}),
            fallback_reasons=data.get("fallback_reasons", {}),
            batch_id=data.get("batch_id"),
        )


class JobStatusView(BaseModel):
    """Read-only projection of a job returned to callers."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: JobKind
    status: JobStatus
    current_stage: StageName
    progress: int
    stage_history: list[dict[str, Any]]
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime
    cancel_requested: bool = False
    fallback_reasons: dict[str, str] = {}
    batch_id: str | None = None

    @classmethod
    def from_job(cls, job: Job) -> JobStatusView:
        return cls(
            id=job.id,
            kind=job.kind,
            status=job.status,
            current_stage=job.current_stage,
            progress=job.progress,
            stage_history=[r.to_dict() for r in job.stage_history],
            result=job.result.to_dict() if job.result else None,
            error=job.error.to_dict() if job.error else None,
            created_at=job.created_at,
            updated_at=job.updated_at,
            cancel_requested=job.cancel_requested,
            fallback_reasons=dict(job.fallback_reasons),
            batch_id=job.batch_id,
        )
