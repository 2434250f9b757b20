"""
Orchestration Layer — Job Lifecycle Management
================================================

Provides:
  - Retry policy engine with classified, bounded exponential backoff
  - Concurrency limiter for bounded fan-out and batches
  - Backend selection (compliance, capability, preference, cost, hybrid)
  - Stage executor and job state machine
  - Job manager facade (jobs, batches, cleanup, health)

Depends on: telemetry, core
"""

from voicedesc.infra.runtime.limiter import (
    ConcurrencyLimiter,
    ItemResult,
    get_limiter,
    run_bounded,
)
from voicedesc.infra.runtime.manager import JobManager, get_job_manager
from voicedesc.infra.runtime.retry import RetryEngine, RetryPolicy
from voicedesc.infra.runtime.selector import (
    BackendDescriptor,
    BackendSelector,
    HybridPlan,
    Selection,
    SelectionRequirements,
    get_selector,
)
from voicedesc.infra.runtime.stages import (
    StageCatalog,
    StageDefinition,
    StageExecutor,
    StageResult,
)
from voicedesc.infra.runtime.state_machine import JobStateMachine

__all__ = [
    "BackendDescriptor",
    "BackendSelector",
    "ConcurrencyLimiter",
    "HybridPlan",
    "ItemResult",
    "JobManager",
    "JobStateMachine",
    "RetryEngine",
    "RetryPolicy",
    "Selection",
    "SelectionRequirements",
    "StageCatalog",
    "StageDefinition",
    "StageExecutor",
    "StageResult",
    "get_job_manager",
    "get_limiter",
    "get_selector",
    "run_bounded",
]
