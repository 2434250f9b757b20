"""
Metrics Collector — Prometheus + Internal Metrics
===================================================

Metrics for the orchestration core: jobs, stages, retries, backend
selection and limiter occupancy, with Prometheus exposition.

Design:
  - One registry per collector, so tests can build isolated collectors
  - Rolling stage-latency percentiles kept alongside the histograms
    for the health/summary views

Metric Naming Convention:
  - voicedesc_{component}_{metric}_{unit}
  - e.g., voicedesc_stage_duration_seconds
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from voicedesc.infra.telemetry.logger import get_logger

logger = get_logger(__name__)

# ── Percentile Tracker ─────────────────────────────────────────────

class PercentileTracker:
    """Rolling window percentile calculator."""

    __slots__ = ("_lock", "_values")

    def __init__(self, window_size: int = 1000):
        self._values: deque[float] = deque(maxlen=window_size)
        self._lock = threading.Lock()

    def record(self, value: float) -> None:
        with self._lock:
            self._values.append(value)

    def percentile(self, p: float) -> float:
        with self._lock:
            if not self._values:
                return 0.0
            ordered = sorted(self._values)
        idx = int(len(ordered) * p / 100)
        return ordered[min(idx, len(ordered) - 1)]

    @property
    def count(self) -> int:
        return len(self._values)

    def snapshot(self) -> dict[str, float]:
        return {
            "p50": self.percentile(50),
            "p95": self.percentile(95),
            "p99": self.percentile(99),
            "count": self.count,
        }

# ── Collector ──────────────────────────────────────────────────────

class MetricsCollector:
    """
    Centralized metrics collection for the job pipeline.

    All recording methods are cheap and synchronous; call them inline
    from the runtime components.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._lock = threading.Lock()
        self._stage_trackers: dict[str, PercentileTracker] = {}

        # ── Job Metrics ──
        self.jobs_created = Counter(
            "voicedesc_jobs_created_total",
            "Jobs created",
            labelnames=["kind"],
            registry=self.registry,
        )

        self.jobs_finished = Counter(
            "voicedesc_jobs_finished_total",
            "Jobs that reached a terminal state",
            labelnames=["kind", "status", "code"],
            registry=self.registry,
        )

        # ── Stage Metrics ──
        self.stage_duration = Histogram(
            "voicedesc_stage_duration_seconds",
            "Stage execution time",
            labelnames=["stage", "outcome"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
            registry=self.registry,
        )

        # ── Retry Metrics ──
        self.retries = Counter(
            "voicedesc_retry_attempts_total",
            "Retries scheduled after a transient failure",
            labelnames=["operation", "error_kind"],
            registry=self.registry,
        )

        self.retry_exhausted = Counter(
            "voicedesc_retry_exhausted_total",
            "Operations that ran out of attempts",
            labelnames=["operation"],
            registry=self.registry,
        )

        # ── Selection Metrics ──
        self.backend_selections = Counter(
            "voicedesc_backend_selections_total",
            "Backend selection decisions",
            labelnames=["backend", "reason"],
            registry=self.registry,
        )

        self.backend_available = Gauge(
            "voicedesc_backend_available",
            "Backend availability from the last health check (0/1)",
            labelnames=["backend"],
            registry=self.registry,
        )

        # ── Limiter Metrics ──
        self.limiter_in_flight = Gauge(
            "voicedesc_limiter_in_flight",
            "Work items currently holding a limiter slot",
            registry=self.registry,
        )

    # ── Recording Methods ──────────────────────────────────────────

    def record_job_created(self, kind: str) -> None:
        self.jobs_created.labels(kind=kind).inc()

    def record_job_finished(self, *, kind: str, status: str, code: str = "") -> None:
        self.jobs_finished.labels(kind=kind, status=status, code=code).inc()

    def record_stage(self, *, stage: str, outcome: str, duration_s: float) -> None:
        self._get_stage_tracker(stage).record(duration_s)
        self.stage_duration.labels(stage=stage, outcome=outcome).observe(duration_s)

    def record_retry(self, *, operation: str, error_kind: str) -> None:
        self.retries.labels(operation=operation, error_kind=error_kind).inc()

    def record_retry_exhausted(self, operation: str) -> None:
        self.retry_exhausted.labels(operation=operation).inc()

    def record_selection(self, *, backend: str, reason: str) -> None:
        self.backend_selections.labels(backend=backend, reason=reason).inc()

    def record_backend_availability(self, backend: str, available: bool) -> None:
        self.backend_available.labels(backend=backend).set(1 if available else 0)

    def record_in_flight(self, count: int) -> None:
        self.limiter_in_flight.set(count)

    # ── Summaries ──────────────────────────────────────────────────

    def _get_stage_tracker(self, stage: str) -> PercentileTracker:
        if stage not in self._stage_trackers:
            with self._lock:
                if stage not in self._stage_trackers:
                    self._stage_trackers[stage] = PercentileTracker()
        return self._stage_trackers[stage]

    def get_summary(self) -> dict[str, Any]:
        """Stage latency percentiles, keyed by stage name."""
        return {
            "stages": {
                stage: tracker.snapshot()
                for stage, tracker in self._stage_trackers.items()
            }
        }

    def export(self) -> bytes:
        """Export metrics in Prometheus text format."""
        return generate_latest(self.registry)

# ── Singleton ──────────────────────────────────────────────────────

_metrics: MetricsCollector | None = None

def get_metrics() -> MetricsCollector:
    # Lock-free benign-race singleton.
    global _metrics
    if _metrics is not None:
        return _metrics
    _metrics = MetricsCollector()
    return _metrics
