"""Caller-supplied options for jobs and batches."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from voicedesc.core.types import JobKind, PreferenceLevel

from .media import MediaReference


class JobOptions(BaseModel):
    """Per-job preferences used by backend selection and the stage handlers."""

    model_config = ConfigDict(extra="forbid")

    accuracy: PreferenceLevel = PreferenceLevel.MEDIUM
    latency: PreferenceLevel = PreferenceLevel.MEDIUM
    cost: PreferenceLevel = PreferenceLevel.MEDIUM
    preferred_backend: str | None = None
    compliance: list[str] = Field(default_factory=list)  # e.g. ["residency:eu"]
    detail_level: Literal["basic", "detailed", "comprehensive"] = "detailed"
    generate_audio: bool = True
    voice_id: str | None = None  # None = DEFAULT_VOICE_ID
    language: str = Field(default="en", min_length=2)


class BatchItem(BaseModel):
    """One work unit of a batch. Images by default."""

    media: MediaReference
    kind: JobKind = JobKind.IMAGE
    item_id: str | None = None


class BatchOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    concurrency_limit: int = Field(default=3, ge=1, le=16)
    continue_on_error: bool = True
    job_options: JobOptions = Field(default_factory=JobOptions)
