"""Dunning Agent - aging-bucket workflow engine.

This module classifies overdue invoices into aging buckets, resolves each
bucket to a multi-step outreach workflow and dispatches approved message
templates exactly once per obligation and template.

Key Components:
- Buckets: Days-past-due classification over a closed bucket table
- Workflows: Effective workflow resolution and step windows
- Step counter: Per-step population report
- Dispatch: Idempotent template dispatch with a dispatch log
- Batch: Chunked processing with ordered result aggregation
- Templates: Draft generation, approval lifecycle and Jinja2 rendering
- Stores: Store/delivery ports with in-memory and SQLAlchemy backends

Operations are exposed through DunningEngine.
"""

__version__ = "1.0.0"
__author__ = "0Admin-NEXT Team"

from .batch import BatchAggregator
from .buckets import classify
from .clock import FixedClock, SystemClock
from .config import DunningConfig
from .dto import (
    AgingBucket,
    Channel,
    DispatchOutcome,
    DispatchSummary,
    DraftTemplate,
    GenerationSummary,
    Obligation,
    ObligationStatus,
    ReassignmentSummary,
    TemplateState,
    Workflow,
)
from .engine import DunningEngine
from .step_counter import StepCountReport
from .workflows import WorkflowResolver

__all__ = [
    "AgingBucket",
    "BatchAggregator",
    "Channel",
    "DispatchOutcome",
    "DispatchSummary",
    "DraftTemplate",
    "DunningConfig",
    "DunningEngine",
    "FixedClock",
    "GenerationSummary",
    "Obligation",
    "ObligationStatus",
    "ReassignmentSummary",
    "StepCountReport",
    "SystemClock",
    "TemplateState",
    "Workflow",
    "WorkflowResolver",
    "classify",
]
