"""Per-step population counts for reporting.

Read-only projection over the obligation and workflow stores. Nothing is
persisted; the report can be recomputed at any time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from .batch import BatchAggregator
from .dto import AgingBucket, Obligation, Step
from .errors import WorkflowConfigurationError
from .workflows import StepStatus, WorkflowResolver

logger = logging.getLogger(__name__)


@dataclass
class StepCountReport:
    """Bucket -> step -> obligation count.

    The ``None`` step key holds obligations whose workflow has no active
    step yet. Buckets without any workflow are counted in
    ``not_configured``.
    """

    counts: dict[AgingBucket, dict[str | None, int]] = field(default_factory=dict)
    not_configured: dict[AgingBucket, int] = field(default_factory=dict)
    misconfigured: int = 0
    configuration_errors: dict[str, str] = field(default_factory=dict)
    steps: dict[str, Step] = field(default_factory=dict)
    total: int = 0
    errors: int = 0
    error_details: list[str] = field(default_factory=list)
    cancelled: bool = False
    chunks_total: int = 0
    chunks_completed: int = 0

    def add(self, bucket: AgingBucket, step: Step | None) -> None:
        per_step = self.counts.setdefault(bucket, {})
        key = step.step_id if step else None
        per_step[key] = per_step.get(key, 0) + 1
        if step is not None:
            self.steps.setdefault(step.step_id, step)
        self.total += 1

    def add_not_configured(self, bucket: AgingBucket) -> None:
        self.not_configured[bucket] = self.not_configured.get(bucket, 0) + 1
        self.total += 1

    def count_for(self, bucket: AgingBucket, step_id: str | None) -> int:
        return self.counts.get(bucket, {}).get(step_id, 0)

    def bucket_total(self, bucket: AgingBucket) -> int:
        return sum(self.counts.get(bucket, {}).values()) + self.not_configured.get(bucket, 0)

    def merge(self, other: "StepCountReport") -> "StepCountReport":
        merged = StepCountReport(
            misconfigured=self.misconfigured + other.misconfigured,
            configuration_errors={**self.configuration_errors, **other.configuration_errors},
            steps={**self.steps, **other.steps},
            total=self.total + other.total,
            errors=self.errors + other.errors,
            error_details=self.error_details + other.error_details,
        )
        for source in (self, other):
            for bucket, per_step in source.counts.items():
                target = merged.counts.setdefault(bucket, {})
                for key, count in per_step.items():
                    target[key] = target.get(key, 0) + count
            for bucket, count in source.not_configured.items():
                merged.not_configured[bucket] = merged.not_configured.get(bucket, 0) + count
        return merged

    @classmethod
    def failed_chunk(cls, size: int, reason: str) -> "StepCountReport":
        return cls(errors=size, error_details=[reason])

    def to_dict(self) -> dict[str, Any]:
        buckets: dict[str, Any] = {}
        for bucket in AgingBucket:
            per_step = self.counts.get(bucket, {})
            if not per_step and bucket not in self.not_configured:
                continue
            steps = []
            for step_id, count in per_step.items():
                if step_id is None:
                    continue
                step = self.steps[step_id]
                steps.append(
                    {
                        "step_id": step_id,
                        "sequence": step.sequence,
                        "day_offset": step.day_offset,
                        "label": step.label,
                        "count": count,
                    }
                )
            buckets[bucket.value] = {
                "steps": sorted(steps, key=lambda s: s["sequence"]),
                "no_active_step": per_step.get(None, 0),
                "not_configured": self.not_configured.get(bucket, 0),
            }
        return {
            "buckets": buckets,
            "total": self.total,
            "misconfigured": self.misconfigured,
            "configuration_errors": self.configuration_errors,
            "errors": self.errors,
            "error_details": self.error_details,
            "cancelled": self.cancelled,
            "chunks_total": self.chunks_total,
            "chunks_completed": self.chunks_completed,
        }


class StepWindowCounter:
    """Count eligible obligations per (bucket, step)."""

    def __init__(self, resolver: WorkflowResolver, aggregator: BatchAggregator | None = None):
        self.resolver = resolver
        self.aggregator = aggregator or BatchAggregator()

    def count_chunk(self, obligations: list[Obligation], today: date) -> StepCountReport:
        report = StepCountReport()
        for obligation in obligations:
            if not obligation.is_eligible:
                continue
            try:
                assignment, resolution = self.resolver.resolve_obligation(obligation, today)
            except WorkflowConfigurationError as e:
                report.misconfigured += 1
                report.configuration_errors[e.workflow_id or "unknown"] = str(e)
                continue

            if resolution.status is StepStatus.NOT_CONFIGURED:
                report.add_not_configured(assignment.bucket)
            else:
                report.add(assignment.bucket, resolution.step)
        return report

    def count(self, obligations: list[Obligation], today: date) -> StepCountReport:
        """Count obligations per step, chunked through the aggregator."""
        run = self.aggregator.run(
            obligations, lambda chunk: self.count_chunk(chunk, today), StepCountReport
        )
        report = run.result
        report.cancelled = run.cancelled
        report.chunks_total = run.chunks_total
        report.chunks_completed = run.chunks_completed

        logger.info(
            "Step population counted",
            extra={
                "total": report.total,
                "misconfigured": report.misconfigured,
                "chunks_total": run.chunks_total,
            },
        )
        return report
