"""
Telemetry Layer — Unified Observability
========================================

All other layers depend on this.

Provides:
  - Structured logging with job-scoped context
  - Metrics collection (Prometheus)

Usage:
    from voicedesc.infra.telemetry import get_logger, get_metrics

    logger = get_logger(__name__)
    logger.info("stage_completed", stage="analyze", duration_ms=412.0)
    get_metrics().record_stage(stage="analyze", outcome="succeeded", duration_s=0.41)
"""

from voicedesc.infra.telemetry.logger import (
    StructuredLogger,
    get_logger,
    log_context,
    setup_logging,
)
from voicedesc.infra.telemetry.metrics import MetricsCollector, get_metrics

__all__ = [
    "MetricsCollector",
    "StructuredLogger",
    "get_logger",
    "get_metrics",
    "log_context",
    "setup_logging",
]
