"""
Canonical Type Definitions
===========================

Single source of truth for shared enums used across the orchestration core.

This module defines:
- JobKind / JobStatus: job identity and lifecycle
- StageName / StageOutcome: pipeline stage vocabulary
- CapabilityTag: backend capability vocabulary used by the selector
- PreferenceLevel: accuracy / latency / cost preferences on a job
- ItemStatus / BatchStatus: batch bookkeeping
"""

from enum import StrEnum

__all__ = [
    "BatchStatus",
    "CapabilityTag",
    "ItemStatus",
    "JobKind",
    "JobStatus",
    "PreferenceLevel",
    "StageName",
    "StageOutcome",
]

class JobKind(StrEnum):
    """Media kinds the pipeline accepts."""

    VIDEO = "video"
    IMAGE = "image"

class JobStatus(StrEnum):
    """Job lifecycle states.

    Transitions only move forward:
    pending → processing → completed | failed.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

class StageName(StrEnum):
    """Pipeline stages. Sequences per kind live in the stage catalog."""

    SEGMENT = "segment"
    EXTRACT = "extract"
    ANALYZE = "analyze"
    SYNTHESIZE = "synthesize"
    DELIVER = "deliver"

class StageOutcome(StrEnum):
    """Recorded outcome of one stage attempt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DISCARDED = "discarded"  # finished after cancellation, output dropped

class CapabilityTag(StrEnum):
    """Capabilities a backend advertises.

    Compliance tags (e.g. ``residency:eu``) are free-form strings and are
    matched the same way, so descriptors store plain ``str`` tags.
    """

    IMAGE = "image"
    VIDEO = "video"
    TEMPORAL_ANALYSIS = "temporal-analysis"
    HIGH_ACCURACY = "high-accuracy"
    LOW_COST = "low-cost"
    LOW_LATENCY = "low-latency"
    SPEECH = "speech"

class PreferenceLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

class ItemStatus(StrEnum):
    """Per-item state inside a bounded batch run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"      # not started because an earlier item failed
    CANCELLED = "cancelled"  # not started because the batch was cancelled

class BatchStatus(StrEnum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"
