"""Utility modules for assessment-orchestrator."""

from assessment_orchestrator.utils.logging import (
    clear_job_context,
    configure_logging,
    get_logger,
    log_transition,
    set_job_context,
)
from assessment_orchestrator.utils.result import ConfigError, Err, ExitCode, Ok, Result
from assessment_orchestrator.utils.store import FileStore, KeyValueStore, MemoryStore
from assessment_orchestrator.utils.tasks import TaskGroup

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    "set_job_context",
    "clear_job_context",
    "log_transition",
    # Result
    "Ok",
    "Err",
    "Result",
    "ConfigError",
    "ExitCode",
    # Persistence
    "KeyValueStore",
    "MemoryStore",
    "FileStore",
    # Tasks
    "TaskGroup",
]
