"""Custom exception classes for voicedesc.

Includes:
- Base exception with API-friendly serialization
- Pre-classified adapter errors (the only errors the retry engine trusts)
- Terminal operation errors carrying attempt history
- Orchestration errors (transitions, selection, lookup, store conflicts)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

class ErrorCategory(StrEnum):
    """Error taxonomy surfaced on failed jobs as ``error.code``."""

    TRANSIENT = "Transient"
    FATAL_INPUT = "Fatal-Input"
    FATAL_CONFIG = "Fatal-Config"
    FATAL_EXHAUSTED = "Fatal-Exhausted"
    FATAL_UNKNOWN = "Fatal-Unknown"
    CANCELLED = "Cancelled"

    @property
    def suggests_retry(self) -> bool:
        """Whether a caller should simply try again."""
        return self in (ErrorCategory.TRANSIENT, ErrorCategory.FATAL_EXHAUSTED)

class AdapterErrorKind(StrEnum):
    """Classification every backend adapter must attach to its errors."""

    RATE_LIMITED = "RateLimited"
    TIMEOUT = "Timeout"
    UNAVAILABLE = "Unavailable"
    INVALID_INPUT = "InvalidInput"
    AUTH_FAILURE = "AuthFailure"
    QUOTA_EXHAUSTED = "QuotaExhausted"
    UNKNOWN = "Unknown"

TRANSIENT_KINDS = frozenset(
    {
        AdapterErrorKind.RATE_LIMITED,
        AdapterErrorKind.TIMEOUT,
        AdapterErrorKind.UNAVAILABLE,
    }
)

_KIND_CATEGORY: dict[AdapterErrorKind, ErrorCategory] = {
    AdapterErrorKind.RATE_LIMITED: ErrorCategory.TRANSIENT,
    AdapterErrorKind.TIMEOUT: ErrorCategory.TRANSIENT,
    AdapterErrorKind.UNAVAILABLE: ErrorCategory.TRANSIENT,
    AdapterErrorKind.INVALID_INPUT: ErrorCategory.FATAL_INPUT,
    AdapterErrorKind.AUTH_FAILURE: ErrorCategory.FATAL_CONFIG,
    AdapterErrorKind.QUOTA_EXHAUSTED: ErrorCategory.FATAL_CONFIG,
    AdapterErrorKind.UNKNOWN: ErrorCategory.FATAL_UNKNOWN,
}

class VoiceDescException(Exception):
    """Base exception for all voicedesc errors."""

    category: ErrorCategory = ErrorCategory.FATAL_UNKNOWN

    def __init__(
        self, detail: str, status_code: int = 500, error_code: str = "INTERNAL_ERROR"
    ):
        self.detail = detail
        self.status_code = status_code
        self.error_code = error_code
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": self.error_code,
            "detail": self.detail,
            "status_code": self.status_code,
            "category": self.category.value,
            "timestamp": self.timestamp,
        }

# =============================================================================
# ADAPTER / OPERATION ERRORS
# =============================================================================

class AdapterError(VoiceDescException):
    """Error raised by a backend adapter, already classified by the adapter."""

    def __init__(
        self,
        kind: AdapterErrorKind,
        detail: str = "",
        backend_id: str | None = None,
    ):
        super().__init__(
            detail=detail or kind.value,
            status_code=502,
            error_code=f"ADAPTER_{kind.name}",
        )
        self.kind = kind
        self.backend_id = backend_id

    @property
    def category(self) -> ErrorCategory:  # type: ignore[override]
        return _KIND_CATEGORY[self.kind]

    @property
    def retryable(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base.update({"kind": self.kind.value, "backend_id": self.backend_id})
        return base

@dataclass
class AttemptRecord:
    """One failed attempt, kept for diagnostics on exhausted retries."""

    attempt: int
    error_kind: str
    message: str
    delay_s: float = 0.0

class OperationFailedError(VoiceDescException):
    """Terminal, classified failure of a wrapped operation."""

    def __init__(
        self,
        detail: str,
        category: ErrorCategory,
        attempts: int,
        operation: str = "operation",
        original_error: BaseException | None = None,
        history: list[AttemptRecord] | None = None,
    ):
        super().__init__(
            detail=detail,
            status_code=502 if category.suggests_retry else 500,
            error_code=f"OPERATION_{category.name}",
        )
        self._category = category
        self.attempts = attempts
        self.operation = operation
        self.original_error = original_error
        self.history = history or []

    @property
    def category(self) -> ErrorCategory:  # type: ignore[override]
        return self._category

    @property
    def retryable(self) -> bool:
        return self._category.suggests_retry

    @property
    def cause_kind(self) -> str | None:
        if isinstance(self.original_error, AdapterError):
            return self.original_error.kind.value
        if self.original_error is not None:
            return type(self.original_error).__name__
        return None

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base.update(
            {
                "attempts": self.attempts,
                "operation": self.operation,
                "cause": self.cause_kind,
                "history": [asdict(h) for h in self.history],
            }
        )
        return base

# =============================================================================
# ORCHESTRATION ERRORS
# =============================================================================

class InvalidTransition(VoiceDescException):
    """Raised when a job in a terminal state is advanced."""

    category = ErrorCategory.FATAL_CONFIG

    def __init__(self, job_id: str, status: str):
        super().__init__(
            detail=f"Job {job_id} is {status} and cannot advance",
            status_code=409,
            error_code="INVALID_TRANSITION",
        )
        self.job_id = job_id
        self.status = status

class ConcurrentAdvanceError(VoiceDescException):
    """Raised when a stage is already in flight for the job."""

    category = ErrorCategory.TRANSIENT

    def __init__(self, job_id: str, stage: str):
        super().__init__(
            detail=f"Job {job_id} already has stage '{stage}' in flight",
            status_code=409,
            error_code="CONCURRENT_ADVANCE",
        )
        self.job_id = job_id
        self.stage = stage

class NoEligibleBackend(VoiceDescException):
    """No backend satisfies the selection requirements. Never retried."""

    category = ErrorCategory.FATAL_CONFIG

    def __init__(self, detail: str):
        super().__init__(
            detail=detail, status_code=503, error_code="NO_ELIGIBLE_BACKEND"
        )

class InvalidJobRequest(VoiceDescException):
    """Raised when job input fails validation (unsupported, oversize...)."""

    category = ErrorCategory.FATAL_INPUT

    def __init__(self, detail: str):
        super().__init__(detail=detail, status_code=422, error_code="INVALID_JOB_REQUEST")

class StageCatalogError(VoiceDescException):
    """Raised when a stage sequence is misconfigured."""

    category = ErrorCategory.FATAL_CONFIG

    def __init__(self, detail: str):
        super().__init__(detail=detail, status_code=500, error_code="STAGE_CATALOG_ERROR")

class JobNotFoundError(VoiceDescException):
    """Raised when a job is not found."""

    category = ErrorCategory.FATAL_INPUT

    def __init__(self, job_id: str):
        super().__init__(
            detail=f"Job with ID {job_id} not found",
            status_code=404,
            error_code="JOB_NOT_FOUND",
        )

class BatchNotFoundError(VoiceDescException):
    """Raised when a batch is not found."""

    category = ErrorCategory.FATAL_INPUT

    def __init__(self, batch_id: str):
        super().__init__(
            detail=f"Batch with ID {batch_id} not found",
            status_code=404,
            error_code="BATCH_NOT_FOUND",
        )

class BlobNotFoundError(VoiceDescException):
    category = ErrorCategory.FATAL_INPUT

    def __init__(self, reference: str):
        super().__init__(
            detail=f"Blob {reference} not found",
            status_code=404,
            error_code="BLOB_NOT_FOUND",
        )

class StoreConflictError(VoiceDescException):
    """Raised when an atomic job update keeps losing its compare-and-swap."""

    category = ErrorCategory.TRANSIENT

    def __init__(self, job_id: str, attempts: int):
        super().__init__(
            detail=f"Job {job_id} update conflicted {attempts} times",
            status_code=409,
            error_code="STORE_CONFLICT",
        )

def classify_error(exc: BaseException) -> ErrorCategory:
    """Map any exception onto the error taxonomy.

    Only pre-classified errors get a specific category; everything else is
    treated as fatal.
    """
    if isinstance(exc, VoiceDescException):
        return exc.category
    return ErrorCategory.FATAL_UNKNOWN
