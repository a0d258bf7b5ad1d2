"""Minimal observability for logging and metrics.

Provides JSON logging and in-process metrics for dunning runs without
external dependencies.
"""

import uuid
from typing import Optional

from . import logging as logging_module
from . import metrics


def generate_run_id() -> str:
    """Generate a new run ID for a CLI or scheduler invocation."""
    return str(uuid.uuid4())


def set_run_id(run_id: Optional[str] = None) -> str:
    """Set or generate the run ID for the current thread."""
    if not run_id:
        run_id = generate_run_id()
    logging_module.set_run_id(run_id)
    return run_id


def init_observability(enable_metrics: bool = True, level: Optional[str] = None) -> None:
    """Initialize all observability components."""
    logging_module.init_logging(level)
    if not enable_metrics:
        metrics.reset_metrics()


__all__ = [
    "logging_module",
    "metrics",
    "generate_run_id",
    "set_run_id",
    "init_observability",
]
