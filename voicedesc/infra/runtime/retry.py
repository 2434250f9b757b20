"""
Retry Policy Engine — Bounded Exponential Backoff
===================================================

Wraps one fallible async operation with bounded retries.

Classification is never inferred from error messages: only adapter
errors of a transient kind (RateLimited, Timeout, Unavailable) are
retried by default, and everything unclassified is fatal on the first
attempt.

Delay before attempt n+1:
    min(max_delay, base_delay * backoff_multiplier ** (n - 1))
plus jitter drawn uniformly from [0, delay * jitter_factor], with the
total still capped at max_delay. Randomness comes from an injected
``random.Random``, so a seeded engine is fully deterministic.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TypeVar

from voicedesc.core.config import Settings, settings
from voicedesc.core.exceptions import (
    TRANSIENT_KINDS,
    AdapterError,
    AttemptRecord,
    ErrorCategory,
    OperationFailedError,
    classify_error,
)
from voicedesc.infra.telemetry import get_logger, get_metrics
from voicedesc.infra.telemetry.metrics import MetricsCollector

logger = get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
RetryCallback = Callable[[int, BaseException, float], None]
SleepFn = Callable[[float], Awaitable[None]]


def is_transient_adapter_error(exc: BaseException) -> bool:
    """Default predicate: retry only pre-classified transient adapter errors."""
    return isinstance(exc, AdapterError) and exc.kind in TRANSIENT_KINDS


def _error_kind(exc: BaseException) -> str:
    if isinstance(exc, AdapterError):
        return exc.kind.value
    return type(exc).__name__


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_factor: float = 1.0
    retryable_error_predicate: Callable[[BaseException], bool] = is_transient_adapter_error

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be within [0, 1]")

    @classmethod
    def from_settings(cls, cfg: Settings | None = None) -> RetryPolicy:
        cfg = cfg or settings
        return cls(
            max_attempts=cfg.RETRY_MAX_ATTEMPTS,
            base_delay=cfg.RETRY_BASE_DELAY_S,
            max_delay=cfg.RETRY_MAX_DELAY_S,
            backoff_multiplier=cfg.RETRY_BACKOFF_MULTIPLIER,
            jitter=cfg.RETRY_JITTER,
            jitter_factor=cfg.RETRY_JITTER_FACTOR,
        )

    def backoff(self, attempt: int) -> float:
        """Un-jittered delay after failed attempt ``attempt`` (1-based)."""
        return min(self.max_delay, self.base_delay * self.backoff_multiplier ** (attempt - 1))

    def single_attempt(self) -> RetryPolicy:
        return replace(self, max_attempts=1)


def classify_failure(
    exc: BaseException,
    *,
    attempts: int = 1,
    operation: str = "operation",
    history: list[AttemptRecord] | None = None,
) -> OperationFailedError:
    """Wrap an error from an operation that was not retried."""
    if isinstance(exc, OperationFailedError):
        return exc
    return OperationFailedError(
        detail=f"{operation} failed: {exc}",
        category=classify_error(exc),
        attempts=attempts,
        operation=operation,
        original_error=exc,
        history=history or [AttemptRecord(attempts, _error_kind(exc), str(exc))],
    )


class RetryEngine:
    """
    Executes operations under a RetryPolicy.

    Usage:
        engine = RetryEngine(rng=random.Random(42))
        result = await engine.execute(lambda: adapter.analyze(media, opts), policy)
    """

    def __init__(
        self,
        rng: random.Random | None = None,
        sleep: SleepFn | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep
        self._metrics = metrics or get_metrics()

    def compute_delay(self, policy: RetryPolicy, attempt: int) -> float:
        """Delay to wait after failed attempt ``attempt``, jitter included."""
        delay = policy.backoff(attempt)
        if policy.jitter and delay > 0 and policy.jitter_factor > 0:
            delay += self._rng.uniform(0, delay * policy.jitter_factor)
        return min(delay, policy.max_delay)

    async def execute(
        self,
        operation: Operation[T],
        policy: RetryPolicy | None = None,
        *,
        name: str = "operation",
        on_retry: RetryCallback | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds or the policy gives up.

        Raises:
            OperationFailedError: with category Fatal-Exhausted when retries
                run out, otherwise the category of the fatal error. The
                history holds one record per failed attempt.
        """
        policy = policy or RetryPolicy.from_settings()
        history: list[AttemptRecord] = []

        for attempt in range(1, policy.max_attempts + 1):
            try:
                return await operation()
            except Exception as exc:
                kind = _error_kind(exc)

                if not policy.retryable_error_predicate(exc):
                    history.append(AttemptRecord(attempt, kind, str(exc)))
                    logger.warning(
                        "retry_fatal_error",
                        operation=name,
                        attempt=attempt,
                        error_kind=kind,
                    )
                    raise classify_failure(
                        exc, attempts=attempt, operation=name, history=history
                    ) from exc

                if attempt >= policy.max_attempts:
                    history.append(AttemptRecord(attempt, kind, str(exc)))
                    self._metrics.record_retry_exhausted(name)
                    logger.warning(
                        "retry_exhausted",
                        operation=name,
                        attempts=attempt,
                        error_kind=kind,
                    )
                    raise OperationFailedError(
                        detail=f"{name} failed after {attempt} attempts: {exc}",
                        category=ErrorCategory.FATAL_EXHAUSTED,
                        attempts=attempt,
                        operation=name,
                        original_error=exc,
                        history=history,
                    ) from exc

                delay = self.compute_delay(policy, attempt)
                history.append(AttemptRecord(attempt, kind, str(exc), delay))
                self._metrics.record_retry(operation=name, error_kind=kind)
                logger.info(
                    "retry_scheduled",
                    operation=name,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    delay_s=round(delay, 3),
                    error_kind=kind,
                )
                if on_retry:
                    on_retry(attempt, exc, delay)
                await self._sleep(delay)

        raise AssertionError("unreachable")  # pragma: no cover
