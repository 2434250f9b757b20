"""
Models package.
Exports all models for easier access.
"""

from .batch import BatchItemStatus, BatchResult
from .job import Job, JobError, JobResult, JobStatusView, StageRecord
from .media import MediaReference
from .options import BatchItem, BatchOptions, JobOptions

__all__ = [
    "BatchItem",
    "BatchItemStatus",
    "BatchOptions",
    "BatchResult",
    "Job",
    "JobError",
    "JobOptions",
    "JobResult",
    "JobStatusView",
    "MediaReference",
    "StageRecord",
]
