"""Facade exposing the dunning engine operations.

Each operation reads "today" once from the injected clock, binds a run ID
for logging and builds a fresh workflow resolver so every run works on one
snapshot of the workflow configuration.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from uuid import uuid4

from backend.core.observability import metrics
from backend.core.observability.logging import run_context

from .batch import BatchAggregator, ChunkProgress
from .clock import Clock, SystemClock
from .config import DunningConfig
from .dispatch import TemplateDispatchEngine
from .dto import AgingBucket, DispatchSummary, GenerationSummary, ReassignmentSummary, Workflow
from .errors import DunningError, StoreUnavailableError
from .reassignment import BucketReassigner
from .step_counter import StepCountReport, StepWindowCounter
from .stores import MessageDeliveryService, ObligationStore, TemplateStore, WorkflowStore
from .templates import ContentProvider, TemplateGenerator, TemplateLifecycle, TemplateRenderer
from .workflows import WorkflowResolver, seed_default_workflows

logger = logging.getLogger(__name__)


class DunningEngine:
    """Aging-bucket dunning engine for one owner scope (or all owners)."""

    def __init__(
        self,
        obligation_store: ObligationStore,
        workflow_store: WorkflowStore,
        template_store: TemplateStore,
        delivery: MessageDeliveryService,
        config: DunningConfig | None = None,
        clock: Clock | None = None,
        content_provider: ContentProvider | None = None,
        on_progress: Callable[[ChunkProgress], None] | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.obligation_store = obligation_store
        self.workflow_store = workflow_store
        self.template_store = template_store
        self.delivery = delivery
        self.config = config or DunningConfig.from_owner(None)
        self.clock = clock or SystemClock(self.config.timezone)
        self.on_progress = on_progress
        self.cancel_event = cancel_event or threading.Event()
        self.renderer = TemplateRenderer(self.config)
        self.generator = TemplateGenerator(workflow_store, template_store, content_provider)
        self.lifecycle = TemplateLifecycle(template_store, self.generator, self.renderer)

    @property
    def owner_id(self) -> str | None:
        return self.config.owner_id

    def cancel(self) -> None:
        """Stop the running operation before its next chunk."""
        self.cancel_event.set()

    def _aggregator(self) -> BatchAggregator:
        return BatchAggregator(
            chunk_size=self.config.chunk_size,
            max_workers=self.config.max_workers,
            on_progress=self.on_progress,
            cancel_event=self.cancel_event,
        )

    def _resolver(self) -> WorkflowResolver:
        return WorkflowResolver(self.workflow_store, self.config.timezone)

    def reassign_buckets(self) -> ReassignmentSummary:
        """Recompute buckets for all eligible obligations in scope."""
        with run_context(str(uuid4()), self.owner_id):
            today = self.clock.today()
            reassigner = BucketReassigner(
                self.obligation_store, self._aggregator(), self.config.timezone
            )
            return reassigner.reassign(self.owner_id, today)

    def generate_templates(
        self,
        bucket: AgingBucket | str,
        tone_modifier: int | None = None,
        approach_style: str | None = None,
    ) -> GenerationSummary:
        """Create pending templates for the bucket workflow of the owner.

        Raises:
            ValueError: If no owner scope is configured or the tone
                modifier is out of range
        """
        if self.owner_id is None:
            raise ValueError("generate_templates requires an owner scope")
        if isinstance(bucket, str):
            bucket = AgingBucket.from_key(bucket)
        if tone_modifier is None:
            tone_modifier = self.config.default_tone_modifier

        with run_context(str(uuid4()), self.owner_id):
            summary = self.generator.generate(self.owner_id, bucket, tone_modifier, approach_style)
            metrics.increment_templates_generated(summary.templates_created)
            return summary

    def dispatch_approved_templates(self) -> DispatchSummary:
        """Deliver approved templates to matching obligations once."""
        with run_context(str(uuid4()), self.owner_id):
            today = self.clock.today()
            engine = TemplateDispatchEngine(
                self.obligation_store,
                self.template_store,
                self._resolver(),
                self.delivery,
                renderer=self.renderer,
                aggregator=self._aggregator(),
                config=self.config,
            )
            return engine.dispatch(self.owner_id, today)

    def count_step_populations(self) -> StepCountReport:
        """Count eligible obligations per bucket and workflow step."""
        with run_context(str(uuid4()), self.owner_id):
            today = self.clock.today()
            try:
                obligations = self.obligation_store.list_eligible_obligations(self.owner_id)
            except StoreUnavailableError:
                raise
            except DunningError as e:
                raise StoreUnavailableError(f"cannot list obligations: {e}") from e
            counter = StepWindowCounter(self._resolver(), self._aggregator())
            return counter.count(obligations, today)

    def seed_default_workflows(self) -> list[Workflow]:
        """Create the locked system-default workflows that are missing."""
        with run_context(str(uuid4()), self.owner_id):
            return seed_default_workflows(self.workflow_store)
