"""
Backend Selector — Capability / Cost Aware Routing
=====================================================

Picks the analysis backend (or a hybrid pair) for a unit of work based on:
  - Compliance constraints (e.g. data residency)
  - Required capability tags and input size limits
  - The job's preferred backend and cached availability
  - Accuracy / latency preferences (hybrid plans)
  - Estimated cost for the work size

Decision policy, first match wins:
  1. compliance tags restrict the candidate set (none left → NoEligibleBackend)
  2. preferred backend available → use it; otherwise fall back and say why
  3. latency and accuracy both "high" with a hybrid plan configured for a
     required capability → the plan (primary for output, secondary verifies)
  4. cheapest available backend for the work size

Selection never blocks: availability is a cached snapshot refreshed
out-of-band by ``refresh_availability``.
"""

from __future__ import annotations

import asyncio
import threading
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from voicedesc.core.exceptions import NoEligibleBackend
from voicedesc.core.types import PreferenceLevel
from voicedesc.infra.runtime.backends import AnalysisBackendAdapter
from voicedesc.infra.telemetry import get_logger, get_metrics
from voicedesc.infra.telemetry.metrics import MetricsCollector
from voicedesc.models.media import MediaReference
from voicedesc.models.options import JobOptions

logger = get_logger(__name__)

CostModel = Callable[[int], float]


def flat_cost(rate: float = 0.0) -> CostModel:
    """Cost model charging ``rate`` per MiB of input."""

    def _cost(work_size: int) -> float:
        return rate * work_size / (1024 * 1024)

    return _cost


@dataclass(eq=False)
class BackendDescriptor:
    """A registered backend and what it can do."""

    id: str
    adapter: AnalysisBackendAdapter
    capability_tags: frozenset[str]
    cost_model: CostModel = field(default_factory=flat_cost)
    availability: bool = True
    max_concurrency: int = 0       # 0 = unbounded
    max_input_bytes: int = 0       # 0 = unlimited
    max_duration_s: float = 0.0    # 0 = unlimited
    quota_remaining: int | None = None

    def __post_init__(self) -> None:
        self.capability_tags = frozenset(self.capability_tags)

    def supports(self, tags: Iterable[str]) -> bool:
        return frozenset(tags) <= self.capability_tags

    def accepts(self, work_size: int, duration_s: float | None = None) -> bool:
        if self.max_input_bytes and work_size > self.max_input_bytes:
            return False
        if self.max_duration_s and duration_s and duration_s > self.max_duration_s:
            return False
        return True

    def estimate_cost(self, work_size: int) -> float:
        return self.cost_model(work_size)


@dataclass(frozen=True)
class HybridPlan:
    """Primary backend produces the output, secondary verifies it."""

    capability: str
    primary: BackendDescriptor
    secondary: BackendDescriptor


@dataclass(frozen=True)
class SelectionRequirements:
    capabilities: frozenset[str] = frozenset()
    compliance: frozenset[str] = frozenset()
    preferred_backend: str | None = None
    accuracy: PreferenceLevel = PreferenceLevel.MEDIUM
    latency: PreferenceLevel = PreferenceLevel.MEDIUM
    cost: PreferenceLevel = PreferenceLevel.MEDIUM
    work_size: int = 0
    duration_s: float | None = None

    @classmethod
    def for_job(
        cls,
        capabilities: Iterable[str],
        options: JobOptions,
        media: MediaReference,
    ) -> SelectionRequirements:
        return cls(
            capabilities=frozenset(capabilities),
            compliance=frozenset(options.compliance),
            preferred_backend=options.preferred_backend,
            accuracy=options.accuracy,
            latency=options.latency,
            cost=options.cost,
            work_size=media.size_bytes,
            duration_s=media.duration_s,
        )

    @property
    def wants_hybrid(self) -> bool:
        return self.latency == PreferenceLevel.HIGH and self.accuracy == PreferenceLevel.HIGH


@dataclass
class Selection:
    """Outcome of the selection process: one backend or a hybrid plan."""

    reason: str
    backend: BackendDescriptor | None = None
    plan: HybridPlan | None = None
    fallback_reason: str | None = None

    @property
    def is_hybrid(self) -> bool:
        return self.plan is not None

    @property
    def primary(self) -> BackendDescriptor:
        if self.plan is not None:
            return self.plan.primary
        assert self.backend is not None
        return self.backend

    @property
    def backend_ids(self) -> list[str]:
        if self.plan is not None:
            return [self.plan.primary.id, self.plan.secondary.id]
        return [self.primary.id]

    @property
    def label(self) -> str:
        return "+".join(self.backend_ids)


class BackendSelector:
    """
    Selects backends from a process-wide registry of descriptors.

    Descriptors and hybrid plans are read-only configuration after
    startup; only ``availability`` / ``quota_remaining`` change, through
    health checks.
    """

    def __init__(self, metrics: MetricsCollector | None = None) -> None:
        self._backends: dict[str, BackendDescriptor] = {}
        self._plans: dict[str, tuple[str, str]] = {}  # capability → (primary, secondary)
        self._selections: Counter[str] = Counter()
        self._fallbacks = 0
        self._hybrid_selections = 0
        self._failures = 0
        self._lock = threading.Lock()
        self._metrics = metrics or get_metrics()

    # ── Registry ───────────────────────────────────────────────────

    def register_backend(self, descriptor: BackendDescriptor) -> None:
        with self._lock:
            self._backends[descriptor.id] = descriptor
        logger.info(
            "backend_registered",
            backend_id=descriptor.id,
            tags=",".join(sorted(descriptor.capability_tags)),
            max_concurrency=descriptor.max_concurrency,
        )

    def unregister_backend(self, backend_id: str) -> None:
        with self._lock:
            self._backends.pop(backend_id, None)

    def register_hybrid_plan(self, capability: str, primary_id: str, secondary_id: str) -> None:
        if primary_id == secondary_id:
            raise ValueError("hybrid plan needs two distinct backends")
        with self._lock:
            self._plans[capability] = (primary_id, secondary_id)

    def get_backend(self, backend_id: str) -> BackendDescriptor | None:
        return self._backends.get(backend_id)

    def set_availability(self, backend_id: str, available: bool) -> None:
        with self._lock:
            descriptor = self._backends.get(backend_id)
            if descriptor is not None:
                descriptor.availability = available
        self._metrics.record_backend_availability(backend_id, available)

    @property
    def backends(self) -> list[BackendDescriptor]:
        return list(self._backends.values())

    # ── Selection ──────────────────────────────────────────────────

    def select(self, requirements: SelectionRequirements) -> Selection:
        """
        Determine the backend (or hybrid plan) for a unit of work.

        Raises:
            NoEligibleBackend: configuration or capability gap. Never
                transient, never retried.
        """
        try:
            selection = self._select(requirements)
        except NoEligibleBackend:
            with self._lock:
                self._failures += 1
            raise

        with self._lock:
            for backend_id in selection.backend_ids:
                self._selections[backend_id] += 1
            if selection.fallback_reason:
                self._fallbacks += 1
            if selection.is_hybrid:
                self._hybrid_selections += 1
        self._metrics.record_selection(backend=selection.label, reason=selection.reason)

        logger.debug(
            "backend_selected",
            backend=selection.label,
            reason=selection.reason,
            fallback_reason=selection.fallback_reason,
        )
        return selection

    def _select(self, req: SelectionRequirements) -> Selection:
        candidates = list(self._backends.values())

        if req.compliance:
            candidates = [b for b in candidates if b.supports(req.compliance)]
            if not candidates:
                raise NoEligibleBackend(
                    f"No backend satisfies compliance constraints {sorted(req.compliance)}"
                )

        capable = [b for b in candidates if b.supports(req.capabilities)]
        if not capable:
            raise NoEligibleBackend(
                f"No backend offers capabilities {sorted(req.capabilities)}"
            )

        eligible = [b for b in capable if b.accepts(req.work_size, req.duration_s)]
        if not eligible:
            raise NoEligibleBackend(
                f"No backend accepts input of {req.work_size} bytes"
                + (f" / {req.duration_s}s" if req.duration_s else "")
            )

        available = [b for b in eligible if b.availability]

        fallback_reason: str | None = None
        if req.preferred_backend:
            preferred = self._backends.get(req.preferred_backend)
            if preferred is not None and preferred in available:
                return Selection(reason="preferred", backend=preferred)
            fallback_reason = self._explain_fallback(req.preferred_backend, preferred, eligible)

        if req.wants_hybrid:
            plan = self._find_plan(req.capabilities, available)
            if plan is not None:
                return Selection(
                    reason=f"hybrid:{plan.capability}",
                    plan=plan,
                    fallback_reason=fallback_reason,
                )

        if not available:
            raise NoEligibleBackend(
                f"No available backend for capabilities {sorted(req.capabilities)}"
            )

        cheapest = min(available, key=lambda b: (b.estimate_cost(req.work_size), b.id))
        return Selection(
            reason="fallback" if fallback_reason else "lowest_cost",
            backend=cheapest,
            fallback_reason=fallback_reason,
        )

    def _find_plan(
        self, capabilities: frozenset[str], available: list[BackendDescriptor]
    ) -> HybridPlan | None:
        by_id = {b.id: b for b in available}
        for capability in sorted(capabilities):
            ids = self._plans.get(capability)
            if ids is None:
                continue
            primary, secondary = by_id.get(ids[0]), by_id.get(ids[1])
            if primary is not None and secondary is not None:
                return HybridPlan(capability=capability, primary=primary, secondary=secondary)
        return None

    @staticmethod
    def _explain_fallback(
        backend_id: str,
        preferred: BackendDescriptor | None,
        eligible: list[BackendDescriptor],
    ) -> str:
        if preferred is None:
            return f"preferred backend '{backend_id}' is not registered"
        if preferred not in eligible:
            return f"preferred backend '{backend_id}' does not meet the requirements"
        return f"preferred backend '{backend_id}' is unavailable"

    # ── Availability ───────────────────────────────────────────────

    async def refresh_availability(self) -> dict[str, bool]:
        """Run every backend's health check and update the cached snapshot."""
        descriptors = self.backends
        statuses = await asyncio.gather(
            *(d.adapter.health_check() for d in descriptors), return_exceptions=True
        )

        snapshot: dict[str, bool] = {}
        for descriptor, status in zip(descriptors, statuses, strict=True):
            if isinstance(status, BaseException):
                logger.warning(
                    "backend_health_check_failed",
                    backend_id=descriptor.id,
                    error=str(status),
                )
                available = False
            else:
                descriptor.quota_remaining = status.quota_remaining
                available = status.available and status.quota_remaining != 0
            self.set_availability(descriptor.id, available)
            snapshot[descriptor.id] = available

        logger.info(
            "backend_availability_refreshed",
            available=sum(snapshot.values()),
            total=len(snapshot),
        )
        return snapshot

    # ── Stats ──────────────────────────────────────────────────────

    def get_stats(self) -> dict[str, Any]:
        """Selection statistics per backend."""
        with self._lock:
            return {
                "registered_backends": len(self._backends),
                "available_backends": sum(1 for b in self._backends.values() if b.availability),
                "total_selections": sum(self._selections.values()),
                "fallbacks": self._fallbacks,
                "hybrid_selections": self._hybrid_selections,
                "failed_selections": self._failures,
                "hybrid_plans": {cap: list(ids) for cap, ids in self._plans.items()},
                "backends": {
                    b.id: {
                        "tags": sorted(b.capability_tags),
                        "available": b.availability,
                        "quota_remaining": b.quota_remaining,
                        "max_concurrency": b.max_concurrency,
                        "selections": self._selections.get(b.id, 0),
                    }
                    for b in self._backends.values()
                },
            }


# ── Singleton ──────────────────────────────────────────────────────

_selector: BackendSelector | None = None

def get_selector() -> BackendSelector:
    # Lock-free benign-race singleton.
    global _selector
    if _selector is not None:
        return _selector
    _selector = BackendSelector()
    return _selector
