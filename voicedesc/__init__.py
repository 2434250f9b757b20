"""
voicedesc — Accessibility Job Orchestration Core
==================================================

Turns video and image references into descriptions and narration by
driving external analysis / speech backends through a staged job pipeline.

Layers:
  telemetry  (structured logging, prometheus metrics)
  core       (config, exceptions, shared enums, job + blob stores)
  runtime    (retry, limiter, backend selection, stages, state machine,
              job manager)
"""

__version__ = "1.0.0"
