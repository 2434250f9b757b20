"""
Unit tests for backend selection.

Tests cover:
- Compliance and capability filtering (NoEligibleBackend)
- Preferred backend handling and fallback reasons
- Hybrid plans for high accuracy + high latency preference
- Lowest-cost selection and input size limits
- Health-check driven availability
"""

import pytest

from tests.fakes import ScriptedAdapter, make_backend
from voicedesc.core.exceptions import ErrorCategory, NoEligibleBackend
from voicedesc.core.types import CapabilityTag, PreferenceLevel
from voicedesc.infra.runtime.backends import HealthStatus
from voicedesc.infra.runtime.selector import (
    BackendSelector,
    SelectionRequirements,
    flat_cost,
)
from voicedesc.infra.telemetry.metrics import MetricsCollector
from voicedesc.models.media import MediaReference
from voicedesc.models.options import JobOptions

IMAGE = frozenset({CapabilityTag.IMAGE})
MB = 1024 * 1024


def requirements(**kwargs):
    kwargs.setdefault("capabilities", IMAGE)
    kwargs.setdefault("work_size", 4 * MB)
    return SelectionRequirements(**kwargs)


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def selector():
    selector = BackendSelector(metrics=MetricsCollector())
    selector.register_backend(make_backend("budget", tags={"image", "video"}, cost=0.5))
    selector.register_backend(make_backend("premium", tags={"image", "video", "high-accuracy"}, cost=4.0))
    selector.register_backend(
        make_backend("eu-vision", tags={"image", "residency:eu"}, cost=2.0)
    )
    return selector


# ── Filtering ────────────────────────────────────────────────────────────────

class TestFiltering:
    def test_cheapest_capable_backend_wins(self, selector):
        selection = selector.select(requirements())
        assert selection.backend.id == "budget"
        assert selection.reason == "lowest_cost"
        assert selection.fallback_reason is None

    def test_compliance_restricts_candidates(self, selector):
        selection = selector.select(requirements(compliance=frozenset({"residency:eu"})))
        assert selection.backend.id == "eu-vision"

    def test_no_backend_meets_compliance(self, selector):
        with pytest.raises(NoEligibleBackend) as exc_info:
            selector.select(requirements(compliance=frozenset({"residency:ca"})))
        assert exc_info.value.category == ErrorCategory.FATAL_CONFIG

    def test_missing_capability(self, selector):
        with pytest.raises(NoEligibleBackend):
            selector.select(requirements(capabilities=frozenset({CapabilityTag.SPEECH})))

    def test_input_size_limit(self):
        selector = BackendSelector(metrics=MetricsCollector())
        selector.register_backend(make_backend("small", tags=IMAGE, cost=0.1, max_input_bytes=MB))
        selector.register_backend(make_backend("large", tags=IMAGE, cost=1.0))

        assert selector.select(requirements(work_size=MB // 2)).backend.id == "small"
        assert selector.select(requirements(work_size=8 * MB)).backend.id == "large"

    def test_nothing_accepts_input_size(self):
        selector = BackendSelector(metrics=MetricsCollector())
        selector.register_backend(make_backend("small", tags=IMAGE, max_input_bytes=MB))
        with pytest.raises(NoEligibleBackend):
            selector.select(requirements(work_size=2 * MB))

    def test_all_unavailable(self, selector):
        for backend in selector.backends:
            selector.set_availability(backend.id, False)
        with pytest.raises(NoEligibleBackend):
            selector.select(requirements())
        assert selector.get_stats()["failed_selections"] == 1

    def test_cost_depends_on_work_size(self):
        selector = BackendSelector(metrics=MetricsCollector())
        selector.register_backend(make_backend("per-mb", tags=IMAGE, cost=1.0))
        fixed = make_backend("fixed", tags=IMAGE)
        fixed.cost_model = lambda size: 3.0
        selector.register_backend(fixed)

        assert selector.select(requirements(work_size=MB)).backend.id == "per-mb"
        assert selector.select(requirements(work_size=10 * MB)).backend.id == "fixed"


# ── Preferences ──────────────────────────────────────────────────────────────

class TestPreferredBackend:
    def test_preferred_available(self, selector):
        selection = selector.select(requirements(preferred_backend="premium"))
        assert selection.backend.id == "premium"
        assert selection.reason == "preferred"

    def test_preferred_unavailable_falls_back_with_reason(self, selector):
        selector.set_availability("premium", False)

        selection = selector.select(requirements(preferred_backend="premium"))

        assert selection.backend.id == "budget"
        assert selection.reason == "fallback"
        assert "premium" in selection.fallback_reason
        assert "unavailable" in selection.fallback_reason

    def test_preferred_not_registered(self, selector):
        selection = selector.select(requirements(preferred_backend="ghost"))
        assert selection.backend.id == "budget"
        assert "not registered" in selection.fallback_reason

    def test_preferred_lacks_capability(self, selector):
        selection = selector.select(
            requirements(
                capabilities=frozenset({"image", "residency:eu"}),
                preferred_backend="premium",
            )
        )
        assert selection.backend.id == "eu-vision"
        assert "does not meet the requirements" in selection.fallback_reason

    def test_fallback_counted(self, selector):
        selector.set_availability("premium", False)
        selector.select(requirements(preferred_backend="premium"))
        assert selector.get_stats()["fallbacks"] == 1


class TestHybridPlans:
    @pytest.fixture
    def hybrid_selector(self, selector):
        selector.register_hybrid_plan("image", "premium", "budget")
        return selector

    def test_high_accuracy_and_latency_selects_plan(self, hybrid_selector):
        selection = hybrid_selector.select(
            requirements(accuracy=PreferenceLevel.HIGH, latency=PreferenceLevel.HIGH)
        )

        assert selection.is_hybrid
        assert selection.reason == "hybrid:image"
        assert selection.primary.id == "premium"
        assert selection.plan.secondary.id == "budget"
        assert selection.backend_ids == ["premium", "budget"]
        assert selection.label == "premium+budget"

    def test_single_high_preference_is_not_hybrid(self, hybrid_selector):
        selection = hybrid_selector.select(requirements(accuracy=PreferenceLevel.HIGH))
        assert not selection.is_hybrid
        assert selection.backend.id == "budget"

    def test_plan_skipped_when_member_unavailable(self, hybrid_selector):
        hybrid_selector.set_availability("budget", False)
        selection = hybrid_selector.select(
            requirements(accuracy=PreferenceLevel.HIGH, latency=PreferenceLevel.HIGH)
        )
        assert not selection.is_hybrid
        assert selection.backend.id == "eu-vision"

    def test_no_plan_configured(self, selector):
        selection = selector.select(
            requirements(accuracy=PreferenceLevel.HIGH, latency=PreferenceLevel.HIGH)
        )
        assert not selection.is_hybrid

    def test_plan_needs_distinct_backends(self, selector):
        with pytest.raises(ValueError):
            selector.register_hybrid_plan("image", "premium", "premium")


# ── Requirements ─────────────────────────────────────────────────────────────

class TestSelectionRequirements:
    def test_for_job(self):
        options = JobOptions(
            accuracy="high",
            latency="high",
            preferred_backend="premium",
            compliance=["residency:eu"],
        )
        media = MediaReference("s3://media/clip.mp4", size_bytes=3 * MB, duration_s=42.0)

        req = SelectionRequirements.for_job({"video"}, options, media)

        assert req.capabilities == frozenset({"video"})
        assert req.compliance == frozenset({"residency:eu"})
        assert req.preferred_backend == "premium"
        assert req.work_size == 3 * MB
        assert req.duration_s == 42.0
        assert req.wants_hybrid

    def test_flat_cost(self):
        assert flat_cost(2.0)(MB) == pytest.approx(2.0)
        assert flat_cost()(10 * MB) == 0.0


# ── Availability ─────────────────────────────────────────────────────────────

class TestRefreshAvailability:
    @pytest.mark.asyncio
    async def test_health_check_results_update_snapshot(self):
        selector = BackendSelector(metrics=MetricsCollector())
        selector.register_backend(
            make_backend("ok", ScriptedAdapter("ok", health=HealthStatus(True, 10)))
        )
        selector.register_backend(
            make_backend("down", ScriptedAdapter("down", health=HealthStatus(False)))
        )
        selector.register_backend(
            make_backend("broke", ScriptedAdapter("broke", health=HealthStatus(True, 0)))
        )
        selector.register_backend(
            make_backend("error", ScriptedAdapter("error", health=ConnectionError("refused")))
        )

        snapshot = await selector.refresh_availability()

        assert snapshot == {"ok": True, "down": False, "broke": False, "error": False}
        assert selector.get_backend("ok").quota_remaining == 10
        assert selector.get_stats()["available_backends"] == 1

    @pytest.mark.asyncio
    async def test_recovered_backend_becomes_selectable(self):
        adapter = ScriptedAdapter("vision", health=HealthStatus(False))
        selector = BackendSelector(metrics=MetricsCollector())
        selector.register_backend(make_backend("vision", adapter, tags=IMAGE))

        await selector.refresh_availability()
        with pytest.raises(NoEligibleBackend):
            selector.select(requirements())

        adapter.health = HealthStatus(True)
        await selector.refresh_availability()
        assert selector.select(requirements()).backend.id == "vision"
