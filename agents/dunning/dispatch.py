"""Idempotent dispatch of approved templates.

For every approved template (owner o, bucket b, step s) each eligible
obligation of o currently resolved to (b, s) receives the template once.
A pair is settled by a dispatch record: the engine checks for an existing
non-failed record before delivering, claims the pair with a ``pending``
record under the store's uniqueness guarantee, delivers, and then marks the
record ``delivered`` or ``failed``. Failed records do not block later runs.

A process that dies between the claim and the outcome update leaves a
``pending`` record behind, which blocks the pair: delivery is at most once.
A failed delivery whose outcome cannot be written drops its claim instead.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import date

from backend.core.observability import metrics

from .batch import BatchAggregator
from .config import DunningConfig
from .dto import (
    AgingBucket,
    DispatchOutcome,
    DispatchRecord,
    DispatchSummary,
    DraftTemplate,
    Obligation,
)
from .errors import (
    DispatchConflictError,
    DunningError,
    StoreError,
    StoreUnavailableError,
    TemplateRenderError,
    WorkflowConfigurationError,
)
from .stores import (
    DeliveryResult,
    MessageDeliveryService,
    ObligationStore,
    TemplateStore,
)
from .templates import TemplateRenderer
from .workflows import StepResolution, StepStatus, WorkflowResolver

logger = logging.getLogger(__name__)

OUTCOME_WRITE_ATTEMPTS = 2


class _Budget:
    """Thread-safe cap on delivery attempts per run."""

    def __init__(self, limit: int | None):
        self.limit = limit
        self.used = 0
        self.exhausted = False
        self._lock = threading.Lock()

    def take(self) -> bool:
        with self._lock:
            if self.limit is not None and self.used >= self.limit:
                self.exhausted = True
                return False
            self.used += 1
            return True

    def release(self) -> None:
        """Return an attempt that never reached delivery."""
        with self._lock:
            self.used = max(0, self.used - 1)


@dataclass
class _RunState:
    today: date
    templates: dict[tuple[str, AgingBucket, str], list[DraftTemplate]]
    budget: _Budget
    paused: dict[str, bool]
    paused_lock: threading.Lock


class TemplateDispatchEngine:
    """Match approved templates to obligations and deliver them once."""

    def __init__(
        self,
        obligation_store: ObligationStore,
        template_store: TemplateStore,
        resolver: WorkflowResolver,
        delivery: MessageDeliveryService,
        renderer: TemplateRenderer | None = None,
        aggregator: BatchAggregator | None = None,
        config: DunningConfig | None = None,
    ):
        self.obligation_store = obligation_store
        self.template_store = template_store
        self.resolver = resolver
        self.delivery = delivery
        self.config = config or DunningConfig()
        self.renderer = renderer or TemplateRenderer(self.config)
        self.aggregator = aggregator or BatchAggregator()

    def dispatch(self, owner_scope: str | None, today: date) -> DispatchSummary:
        """Run one dispatch pass.

        Args:
            owner_scope: Owner to dispatch for, or None for all owners
            today: Reference date of the run

        Returns:
            Aggregated dispatch summary

        Raises:
            StoreUnavailableError: If templates or obligations cannot be listed
        """
        try:
            approved = self.template_store.list_approved_templates(owner_scope)
        except StoreUnavailableError:
            raise
        except DunningError as e:
            raise StoreUnavailableError(f"cannot list approved templates: {e}") from e

        if not approved:
            logger.info("No approved templates to dispatch", extra={"owner_id": owner_scope})
            return DispatchSummary()

        try:
            obligations = self.obligation_store.list_eligible_obligations(owner_scope)
        except StoreUnavailableError:
            raise
        except DunningError as e:
            raise StoreUnavailableError(f"cannot list obligations: {e}") from e

        templates: dict[tuple[str, AgingBucket, str], list[DraftTemplate]] = defaultdict(list)
        for template in approved:
            if template.dispatchable:
                templates[(template.owner_id, template.bucket, template.step_id)].append(template)

        state = _RunState(
            today=today,
            templates=dict(templates),
            budget=_Budget(self.config.effective_dispatch_limit),
            paused={},
            paused_lock=threading.Lock(),
        )

        started = time.monotonic()
        run = self.aggregator.run(
            obligations, lambda chunk: self._dispatch_chunk(chunk, state), DispatchSummary
        )
        summary = run.result
        summary.has_more = state.budget.exhausted
        summary.cancelled = run.cancelled
        summary.chunks_total = run.chunks_total
        summary.chunks_completed = run.chunks_completed
        metrics.record_run_duration("dispatch", (time.monotonic() - started) * 1000)

        logger.info(
            "Dispatch run completed",
            extra={
                "owner_id": owner_scope,
                "sent": summary.sent,
                "skipped": summary.skipped,
                "errors": summary.errors,
                "has_more": summary.has_more,
                "cancelled": summary.cancelled,
            },
        )
        return summary

    def _owner_paused(self, owner_id: str, state: _RunState) -> bool:
        with state.paused_lock:
            if owner_id in state.paused:
                return state.paused[owner_id]
        paused = self.obligation_store.is_outreach_paused(owner_id)
        with state.paused_lock:
            state.paused[owner_id] = paused
        return paused

    def _dispatch_chunk(self, obligations: list[Obligation], state: _RunState) -> DispatchSummary:
        summary = DispatchSummary()
        for obligation in obligations:
            if not obligation.is_eligible:
                continue
            try:
                assignment, resolution = self.resolver.resolve_obligation(obligation, state.today)
            except WorkflowConfigurationError as e:
                if str(e) not in summary.configuration_errors:
                    summary.configuration_errors.append(str(e))
                continue

            if resolution.status is not StepStatus.ACTIVE:
                continue

            key = (obligation.owner_id, assignment.bucket, resolution.step_id)
            for template in state.templates.get(key, ()):
                self._dispatch_pair(
                    obligation, template, resolution, assignment.days_past_due, state, summary
                )
        return summary

    def _complete(
        self,
        record: DispatchRecord,
        outcome: DispatchOutcome,
        reason: str | None = None,
        message_id: str | None = None,
    ) -> bool:
        """Write the final outcome of a claimed pair, retrying once.

        A failed delivery whose outcome cannot be written has its claim
        removed so that the pair is retried by a later run.
        """
        for attempt in range(OUTCOME_WRITE_ATTEMPTS):
            try:
                self.template_store.update_dispatch_outcome(
                    record.record_id, outcome, reason=reason, message_id=message_id
                )
                return True
            except StoreError as e:
                logger.warning(
                    "Dispatch outcome write failed",
                    extra={
                        "record_id": record.record_id,
                        "outcome": outcome.value,
                        "attempt": attempt + 1,
                        "error": str(e),
                    },
                )

        if outcome is DispatchOutcome.FAILED:
            try:
                self.template_store.delete_dispatch_record(record.record_id)
            except StoreError as e:
                logger.error(
                    "Stale dispatch claim left behind",
                    extra={"record_id": record.record_id, "error": str(e)},
                )
        return False

    def _skip(self, summary: DispatchSummary, reason: str) -> None:
        summary.skipped += 1
        metrics.increment_dispatch_skipped(reason)

    def _dispatch_pair(
        self,
        obligation: Obligation,
        template: DraftTemplate,
        resolution: StepResolution,
        days_past_due: int,
        state: _RunState,
        summary: DispatchSummary,
    ) -> None:
        if resolution.workflow is not None and not resolution.workflow.active:
            self._skip(summary, "workflow_inactive")
            return
        if self._owner_paused(obligation.owner_id, state):
            self._skip(summary, "owner_paused")
            return
        if obligation.outreach_paused:
            self._skip(summary, "account_paused")
            return
        recipients = obligation.recipients(template.channel)
        if not recipients:
            self._skip(summary, "no_recipient")
            return

        if self.template_store.has_dispatch_record(obligation.obligation_id, template.template_id):
            self._skip(summary, "already_dispatched")
            return

        try:
            message = self.renderer.render(template, obligation, days_past_due)
        except TemplateRenderError as e:
            summary.errors += 1
            summary.error_details.append(str(e))
            metrics.increment_dispatch_failures()
            return

        if not state.budget.take():
            return

        record = DispatchRecord(
            obligation_id=obligation.obligation_id,
            template_id=template.template_id,
            owner_id=obligation.owner_id,
            step_id=template.step_id,
            channel=template.channel,
        )
        try:
            self.template_store.insert_dispatch_record(record)
        except DispatchConflictError:
            state.budget.release()
            self._skip(summary, "conflict")
            return

        summary.processed += 1
        started = time.monotonic()
        try:
            result = self.delivery.send(template.channel, message, recipients)
        except Exception as e:
            result = DeliveryResult(delivered=False, reason=f"{type(e).__name__}: {e}")
        metrics.record_delivery_duration((time.monotonic() - started) * 1000)

        if result.delivered:
            summary.sent += 1
            metrics.increment_dispatch_sent(template.channel.value)
            # Left pending on store failure: the message went out, the pair stays blocked
            self._complete(record, DispatchOutcome.DELIVERED, message_id=result.message_id)
            return

        reason = result.reason or "delivery failed"
        self._complete(record, DispatchOutcome.FAILED, reason=reason)
        summary.errors += 1
        summary.error_details.append(
            f"invoice {obligation.invoice_number} / template {template.template_id}: {reason}"
        )
        metrics.increment_dispatch_failures()
        logger.warning(
            "Delivery failed",
            extra={
                "obligation_id": obligation.obligation_id,
                "template_id": template.template_id,
                "reason": reason,
            },
        )
