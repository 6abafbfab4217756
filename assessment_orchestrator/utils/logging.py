"""Structured logging with job-scoped context propagation.

Every event carries the job, submission and winning transport of the
monitoring session it was emitted from, taken from context variables so
the transports never pass them around explicitly.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

import structlog

job_id_var: ContextVar[str] = ContextVar("job_id", default="")
submission_id_var: ContextVar[str] = ContextVar("submission_id", default="")
transport_var: ContextVar[str] = ContextVar("transport", default="")

_CONTEXT_VARS: dict[str, ContextVar[str]] = {
    "job_id": job_id_var,
    "submission_id": submission_id_var,
    "transport": transport_var,
}

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def set_job_context(
    job_id: str = "",
    submission_id: str = "",
    transport: str = "",
) -> None:
    """Set the job context for logging. Empty values leave the current one."""
    values = {"job_id": job_id, "submission_id": submission_id, "transport": transport}
    for key, value in values.items():
        if value:
            _CONTEXT_VARS[key].set(value)


def clear_job_context() -> None:
    for var in _CONTEXT_VARS.values():
        var.set("")


def add_job_context(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Copy non-empty context variables into the event; explicit fields win."""
    for key, var in _CONTEXT_VARS.items():
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def add_timestamp(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def configure_logging(
    level: str = "info",
    format_type: str = "json",
    stream: Any = None,
) -> None:
    """
    Configure structlog for the process.

    Args:
        level: debug, info, warn or error
        format_type: 'json' for one object per line, 'text' for the console renderer
        stream: Output stream (default: sys.stderr, leaving stdout to command output)
    """
    stream = stream or sys.stderr
    threshold = LEVELS.get(level.lower(), logging.INFO)

    # Third-party libraries log through the standard library
    logging.basicConfig(format="%(message)s", stream=stream, level=threshold)

    renderer: structlog.types.Processor
    if format_type == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            add_timestamp,
            add_job_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(stream),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger, bound to ``logger_name`` when a name is given."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger_name=name)
    return logger


def log_transition(
    from_status: str,
    to_status: str,
    progress: int,
    **extra: Any,
) -> None:
    """Record one workflow state change."""
    get_logger("workflow.transitions").info(
        "state_transition",
        from_state=from_status,
        to_state=to_status,
        progress=progress,
        **extra,
    )


configure_logging()
