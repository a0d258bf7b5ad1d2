"""Bucket reassignment job.

Recomputes the aging bucket of every eligible obligation and persists the
bucket and bucket-entry date when the bucket changed. Runs are mutually
exclusive within the process.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import date

from backend.core.observability import metrics

from .batch import BatchAggregator
from .buckets import classify, is_escalation
from .dto import Obligation, ReassignmentSummary
from .errors import DunningError, ReassignmentInProgressError, StoreError, StoreUnavailableError
from .stores import ObligationStore

logger = logging.getLogger(__name__)

# Guards the bucket and bucket-entry fields against concurrent reassignment runs
_REASSIGNMENT_LOCK = threading.Lock()


class BucketReassigner:
    """Reassign obligations to the bucket matching their current DPD."""

    def __init__(
        self,
        obligation_store: ObligationStore,
        aggregator: BatchAggregator | None = None,
        timezone: str = "UTC",
        lock: threading.Lock | None = None,
    ):
        self.obligation_store = obligation_store
        self.aggregator = aggregator or BatchAggregator()
        self.timezone = timezone
        self.lock = lock or _REASSIGNMENT_LOCK

    def reassign(self, owner_scope: str | None, today: date) -> ReassignmentSummary:
        """Reassign buckets for all eligible obligations in scope.

        Raises:
            ReassignmentInProgressError: If another run holds the lock
            StoreUnavailableError: If obligations cannot be listed
        """
        if not self.lock.acquire(blocking=False):
            raise ReassignmentInProgressError("a bucket reassignment run is already in progress")

        try:
            try:
                obligations = self.obligation_store.list_eligible_obligations(owner_scope)
            except StoreUnavailableError:
                raise
            except DunningError as e:
                raise StoreUnavailableError(f"cannot list obligations: {e}") from e

            started = time.monotonic()
            run = self.aggregator.run(
                obligations, lambda chunk: self._reassign_chunk(chunk, today), ReassignmentSummary
            )
        finally:
            self.lock.release()

        summary = run.result
        summary.cancelled = run.cancelled
        summary.chunks_total = run.chunks_total
        summary.chunks_completed = run.chunks_completed

        metrics.increment_reassigned(summary.reassigned)
        metrics.increment_escalations(summary.escalations)
        metrics.increment_reassign_errors(summary.errors)
        metrics.record_run_duration("reassign", (time.monotonic() - started) * 1000)

        logger.info(
            "Bucket reassignment completed",
            extra={
                "owner_id": owner_scope,
                "reassigned": summary.reassigned,
                "skipped": summary.skipped,
                "errors": summary.errors,
                "escalations": summary.escalations,
            },
        )
        return summary

    def _reassign_chunk(self, obligations: list[Obligation], today: date) -> ReassignmentSummary:
        summary = ReassignmentSummary()
        for obligation in obligations:
            if not obligation.is_eligible:
                continue

            assignment = classify(obligation.due_date, today, self.timezone)
            previous = obligation.aging_bucket
            if previous is assignment.bucket:
                summary.skipped += 1
                continue

            entered = today
            if obligation.bucket_entered_at is not None:
                entered = max(today, obligation.bucket_entered_at)

            try:
                self.obligation_store.update_bucket(
                    obligation.obligation_id, assignment.bucket, entered
                )
            except StoreError as e:
                summary.errors += 1
                summary.error_details.append(f"invoice {obligation.invoice_number}: {e}")
                continue

            summary.reassigned += 1
            change = f"{previous.value if previous else 'none'}->{assignment.bucket.value}"
            summary.bucket_changes[change] = summary.bucket_changes.get(change, 0) + 1
            if previous is not None and is_escalation(previous, assignment.bucket):
                summary.escalations += 1
        return summary
