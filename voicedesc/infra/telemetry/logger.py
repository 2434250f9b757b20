"""
Structured Logger
=================

JSON-structured logging with job-scoped context injection.

Design:
  - Event-style calls: ``log.info("stage_completed", stage="analyze")``
  - JSON output for machine parsing, human-readable line in development
  - job_id / batch_id / stage / backend_id pulled from context variables,
    so concurrently running jobs never mix their log context
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import sys
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from voicedesc.core.config import Settings, get_settings

# ── Context Variables ──────────────────────────────────────────────

_job_id: ContextVar[str | None] = ContextVar("job_id", default=None)
_batch_id: ContextVar[str | None] = ContextVar("batch_id", default=None)
_stage: ContextVar[str | None] = ContextVar("stage", default=None)
_backend_id: ContextVar[str | None] = ContextVar("backend_id", default=None)

_CONTEXT_VARS: dict[str, ContextVar[str | None]] = {
    "job_id": _job_id,
    "batch_id": _batch_id,
    "stage": _stage,
    "backend_id": _backend_id,
}

@contextmanager
def log_context(**fields: str | None) -> Iterator[None]:
    """Bind job-scoped fields for every log line emitted inside the block."""
    tokens = []
    for key, value in fields.items():
        var = _CONTEXT_VARS.get(key)
        if var is None:
            raise KeyError(f"Unknown log context field: {key}")
        tokens.append((var, var.set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)

def current_context() -> dict[str, str]:
    return {k: v for k, var in _CONTEXT_VARS.items() if (v := var.get()) is not None}

# ── Structured Formatter ──────────────────────────────────────────

_RESERVED = frozenset(
    {
        "name", "msg", "args", "created", "relativeCreated",
        "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "pathname", "filename", "module", "levelno", "levelname",
        "thread", "threadName", "process", "processName", "msecs",
        "taskName", "message",
    }
)
_JSON_SAFE = (str, int, float, bool, type(None))

class StructuredFormatter(logging.Formatter):
    """JSON-structured log formatter with automatic context injection."""

    def __init__(self, *, json_output: bool = True, include_traceback: bool = True):
        super().__init__()
        self._json = json_output
        self._include_tb = include_traceback
        self._pid = os.getpid()

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "line": record.lineno,
            "pid": self._pid,
        }

        ctx = current_context()
        if ctx:
            entry["context"] = ctx

        extras: dict[str, Any] = {}
        for key, val in record.__dict__.items():
            if key.startswith("_") or key in _RESERVED:
                continue
            extras[key] = val if isinstance(val, _JSON_SAFE) else str(val)
        if extras:
            entry["data"] = extras

        if record.exc_info and self._include_tb:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "traceback": traceback.format_exception(exc_type, exc_value, exc_tb)
                if exc_tb
                else None,
            }

        if self._json:
            return json.dumps(entry, default=str, ensure_ascii=False)

        # Human-readable fallback
        job = ctx.get("job_id", "-")[:8]
        fields = " ".join(f"{k}={v}" for k, v in extras.items())
        return (
            f"{entry['timestamp']} | {entry['level']:8s} | {job:8s} | "
            f"{entry['logger']}:{entry['line']} | {entry['event']} {fields}"
        ).rstrip()

# ── Structured Logger ─────────────────────────────────────────────

class StructuredLogger:
    """
    Wrapper around stdlib logger providing structured logging helpers.

    Usage:
        log = StructuredLogger("voicedesc.infra.runtime")
        log.info("stage_completed", stage="analyze", duration_ms=412.0)
        log.warning("retry_scheduled", attempt=2, delay_s=1.5)
    """

    __slots__ = ("_logger", "_name")

    def __init__(self, name: str):
        self._name = name
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._name

    def _log(
        self,
        level: int,
        event: str,
        fields: dict[str, Any],
        exc: BaseException | None = None,
    ) -> None:
        # Public and bound methods call this directly: the caller is three frames up.
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(level, event, extra=fields, exc_info=exc, stacklevel=3)

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, event, kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log(logging.INFO, event, kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, event, kwargs)

    def error(self, event: str, exc: BaseException | None = None, **kwargs: Any) -> None:
        self._log(logging.ERROR, event, kwargs, exc)

    def bind(self, **context: Any) -> BoundLogger:
        """Create a child logger with bound fields."""
        return BoundLogger(self, context)

class BoundLogger:
    """Logger with pre-bound fields."""

    __slots__ = ("_context", "_parent")

    def __init__(self, parent: StructuredLogger, context: dict[str, Any]):
        self._parent = parent
        self._context = context

    def _merged(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        return {**self._context, **kwargs}

    def debug(self, event: str, **kwargs: Any) -> None:
        self._parent._log(logging.DEBUG, event, self._merged(kwargs))

    def info(self, event: str, **kwargs: Any) -> None:
        self._parent._log(logging.INFO, event, self._merged(kwargs))

    def warning(self, event: str, **kwargs: Any) -> None:
        self._parent._log(logging.WARNING, event, self._merged(kwargs))

    def error(self, event: str, exc: BaseException | None = None, **kwargs: Any) -> None:
        self._parent._log(logging.ERROR, event, self._merged(kwargs), exc)

# ── Setup ──────────────────────────────────────────────────────────

_configured_level: str | None = None

def setup_logging(cfg: Settings | None = None) -> None:
    """
    Route the ``voicedesc`` logger tree to stdout, plus a JSON job log when
    ``LOG_DIR`` is set. Repeat calls only adjust the level.
    """
    global _configured_level
    cfg = cfg or get_settings()
    level = getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO)
    pkg = logging.getLogger("voicedesc")
    pkg.setLevel(level)
    if _configured_level is not None:
        _configured_level = cfg.LOG_LEVEL
        return
    _configured_level = cfg.LOG_LEVEL

    json_output = cfg.LOG_JSON
    if json_output is None:
        json_output = cfg.ENVIRONMENT != "development"

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(StructuredFormatter(json_output=json_output))
    pkg.addHandler(console)

    if cfg.LOG_DIR:
        log_path = Path(cfg.LOG_DIR)
        log_path.mkdir(parents=True, exist_ok=True)
        job_log = logging.handlers.TimedRotatingFileHandler(
            log_path / "jobs.log", when="midnight", backupCount=7, encoding="utf-8"
        )
        job_log.setFormatter(StructuredFormatter(json_output=True, include_traceback=False))
        pkg.addHandler(job_log)

    pkg.propagate = False
    logging.getLogger("redis").setLevel(logging.WARNING)

def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)
