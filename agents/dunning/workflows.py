"""Workflow resolution and step progression.

Resolves an aging bucket to the effective workflow for an owner scope and
locates the step whose window contains the days elapsed since the
obligation entered its bucket. Step windows are derived only from the
configured day offsets: step i covers [offset_i, offset_i+1) and the last
step covers [offset_last, inf).
"""

from __future__ import annotations

import logging
import threading
from bisect import bisect_right
from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import uuid4

from .buckets import BucketAssignment, classify
from .clock import to_local_date
from .dto import AgingBucket, Channel, Obligation, Step, Workflow
from .errors import WorkflowConfigurationError
from .library import load_library

if TYPE_CHECKING:
    from .stores import WorkflowStore

logger = logging.getLogger(__name__)


class StepStatus(Enum):
    """Outcome of locating an obligation inside its bucket workflow."""

    ACTIVE = "active"
    NO_ACTIVE_STEP = "no_active_step"
    NOT_CONFIGURED = "not_configured"


@dataclass(frozen=True)
class StepResolution:
    """Where an obligation currently sits within its bucket workflow."""

    bucket: AgingBucket
    status: StepStatus
    days_since_entry: int
    workflow: Workflow | None = None
    step: Step | None = None

    @property
    def step_id(self) -> str | None:
        return self.step.step_id if self.step else None


@dataclass(frozen=True)
class _CompiledWorkflow:
    workflow: Workflow
    steps: tuple[Step, ...]
    offsets: tuple[int, ...]


def select_effective_workflow(candidates: list[Workflow]) -> Workflow | None:
    """Pick the effective workflow among candidates of one bucket and scope.

    Active workflows win over inactive ones; among equals the most
    recently created wins.
    """
    if not candidates:
        return None
    return max(candidates, key=lambda w: (w.active, w.created_at, w.workflow_id))


def resolve_effective_workflow(
    store: "WorkflowStore", bucket: AgingBucket, owner_scope: str | None
) -> Workflow | None:
    """Effective workflow for an owner, falling back to the system default.

    Owner-scoped workflows are resolved independently: the system-default
    scope is consulted only when the owner has no workflow for the bucket.
    """
    effective = select_effective_workflow(store.list_workflows(bucket, owner_scope))
    if effective is None and owner_scope is not None:
        effective = select_effective_workflow(store.list_workflows(bucket, None))
    return effective


def validate_steps(workflow: Workflow) -> tuple[Step, ...]:
    """Return the workflow steps in sequence order.

    Raises:
        WorkflowConfigurationError: If sequence numbers repeat, an offset is
            negative, or offsets are not strictly increasing
    """
    steps = tuple(workflow.ordered_steps)
    sequences = [s.sequence for s in steps]
    if len(set(sequences)) != len(sequences):
        raise WorkflowConfigurationError(
            f"Workflow {workflow.workflow_id} has duplicate step sequence numbers",
            workflow_id=workflow.workflow_id,
        )

    for previous, current in zip(steps, steps[1:]):
        if current.day_offset <= previous.day_offset:
            raise WorkflowConfigurationError(
                f"Workflow {workflow.workflow_id} step offsets must be strictly increasing "
                f"(step {previous.sequence}: {previous.day_offset}, "
                f"step {current.sequence}: {current.day_offset})",
                workflow_id=workflow.workflow_id,
            )

    if steps and steps[0].day_offset < 0:
        raise WorkflowConfigurationError(
            f"Workflow {workflow.workflow_id} has a negative step offset",
            workflow_id=workflow.workflow_id,
        )
    return steps


def locate_step(
    steps: tuple[Step, ...], offsets: tuple[int, ...], days_since_entry: int
) -> Step | None:
    """Step whose window contains ``days_since_entry`` or None before the first."""
    index = bisect_right(offsets, days_since_entry) - 1
    if index < 0:
        return None
    return steps[index]


class WorkflowResolver:
    """Resolve (bucket, owner) to a workflow and the current step.

    Effective workflows are looked up once per (bucket, owner) and cached
    for the lifetime of the resolver, which gives a run a stable snapshot
    of the workflow configuration. Configuration errors are cached as well
    and re-raised for every obligation that hits the broken workflow.
    """

    def __init__(self, store: "WorkflowStore", timezone: str = "UTC"):
        self.store = store
        self.timezone = timezone
        self._lock = threading.Lock()
        self._cache: dict[tuple[AgingBucket, str | None], _CompiledWorkflow | None] = {}
        self._errors: dict[tuple[AgingBucket, str | None], WorkflowConfigurationError] = {}

    def _compiled(self, bucket: AgingBucket, owner_scope: str | None) -> _CompiledWorkflow | None:
        key = (bucket, owner_scope)
        with self._lock:
            if key in self._errors:
                raise self._errors[key]
            if key in self._cache:
                return self._cache[key]

        workflow = self.store.get_effective_workflow(bucket, owner_scope)
        compiled: _CompiledWorkflow | None = None
        if workflow is not None:
            try:
                steps = validate_steps(workflow)
            except WorkflowConfigurationError as err:
                logger.error(
                    "Invalid workflow configuration",
                    extra={"bucket": bucket.value, "workflow_id": workflow.workflow_id},
                )
                with self._lock:
                    self._errors[key] = err
                raise
            compiled = _CompiledWorkflow(
                workflow=workflow,
                steps=steps,
                offsets=tuple(s.day_offset for s in steps),
            )

        with self._lock:
            self._cache[key] = compiled
        return compiled

    def effective_workflow(self, bucket: AgingBucket, owner_scope: str | None) -> Workflow | None:
        compiled = self._compiled(bucket, owner_scope)
        return compiled.workflow if compiled else None

    def resolve(
        self,
        bucket: AgingBucket,
        owner_scope: str | None,
        bucket_entered_at: date | datetime | None,
        today: date,
    ) -> StepResolution:
        """Resolve the current step for an obligation in ``bucket``.

        Args:
            bucket: Aging bucket of the obligation
            owner_scope: Owner whose workflows apply
            bucket_entered_at: Day the obligation entered the bucket
                (None means it enters today)
            today: Reference date of the run

        Returns:
            Step resolution; NOT_CONFIGURED and NO_ACTIVE_STEP are regular
            outcomes, not errors

        Raises:
            WorkflowConfigurationError: If the effective workflow is malformed
        """
        days_since_entry = 0
        if bucket_entered_at is not None:
            entered = to_local_date(bucket_entered_at, self.timezone)
            days_since_entry = max(0, (today - entered).days)

        compiled = self._compiled(bucket, owner_scope)
        if compiled is None:
            return StepResolution(bucket, StepStatus.NOT_CONFIGURED, days_since_entry)

        step = locate_step(compiled.steps, compiled.offsets, days_since_entry)
        if step is None:
            return StepResolution(
                bucket, StepStatus.NO_ACTIVE_STEP, days_since_entry, workflow=compiled.workflow
            )
        return StepResolution(
            bucket, StepStatus.ACTIVE, days_since_entry, workflow=compiled.workflow, step=step
        )

    def resolve_obligation(
        self, obligation: Obligation, today: date
    ) -> tuple[BucketAssignment, StepResolution]:
        """Classify an obligation and resolve its current step.

        The cached bucket is trusted only when it matches the fresh
        classification; otherwise the obligation is treated as entering the
        fresh bucket today, which is what the next reassignment will record.
        """
        assignment = classify(obligation.due_date, today, self.timezone)
        if obligation.aging_bucket is assignment.bucket:
            entered = obligation.entry_date(self.timezone)
        else:
            entered = today
        resolution = self.resolve(assignment.bucket, obligation.owner_id, entered, today)
        return assignment, resolution


def clone_workflow(
    source: Workflow,
    owner_id: str,
    *,
    name: str | None = None,
    now: datetime | None = None,
) -> Workflow:
    """Create a custom, editable copy of a workflow for ``owner_id``.

    Step definitions are copied verbatim; only identifiers change.
    """
    workflow_id = str(uuid4())
    steps = [
        Step(
            step_id=str(uuid4()),
            workflow_id=workflow_id,
            sequence=step.sequence,
            day_offset=step.day_offset,
            channel=step.channel,
            template_type=step.template_type,
            label=step.label,
        )
        for step in source.ordered_steps
    ]
    return Workflow(
        workflow_id=workflow_id,
        bucket=source.bucket,
        owner_id=owner_id,
        name=name or f"{source.name} (custom)",
        description=source.description,
        active=source.active,
        locked=False,
        created_at=now or datetime.now(UTC),
        steps=steps,
    )


def build_default_workflow(bucket: AgingBucket, now: datetime | None = None) -> Workflow | None:
    """Locked system-default workflow for a bucket from the workflow library."""
    definition = load_library("workflows").get(bucket.value)
    if not definition:
        return None

    workflow_id = str(uuid4())
    steps = [
        Step(
            step_id=str(uuid4()),
            workflow_id=workflow_id,
            sequence=index,
            day_offset=int(item["day_offset"]),
            channel=Channel(item.get("channel", "email")),
            template_type=item.get("template_type", "payment_reminder"),
            label=item.get("label", ""),
        )
        for index, item in enumerate(definition.get("steps", []), start=1)
    ]
    return Workflow(
        workflow_id=workflow_id,
        bucket=bucket,
        owner_id=None,
        name=definition.get("name", bucket.label),
        description=definition.get("description", ""),
        active=True,
        locked=True,
        created_at=now or datetime.now(UTC),
        steps=steps,
    )


def seed_default_workflows(store: "WorkflowStore", now: datetime | None = None) -> list[Workflow]:
    """Create missing system-default workflows; existing ones are left alone."""
    created: list[Workflow] = []
    for bucket in AgingBucket:
        if store.list_workflows(bucket, None):
            continue
        workflow = build_default_workflow(bucket, now)
        if workflow is None:
            continue
        validate_steps(workflow)
        store.save_workflow(workflow)
        created.append(workflow)
        logger.info(
            "Seeded default workflow",
            extra={"bucket": bucket.value, "workflow_id": workflow.workflow_id},
        )
    return created
