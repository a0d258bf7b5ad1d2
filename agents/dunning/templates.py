"""Draft template generation, lifecycle and rendering.

Templates are created ``pending_approval`` from a pluggable content
provider, approved or discarded by an operator, and rendered per
obligation with Jinja2 at dispatch time.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Protocol

from jinja2 import Environment, StrictUndefined, TemplateError

from .config import DunningConfig
from .dto import (
    AgingBucket,
    Channel,
    DraftTemplate,
    GenerationSummary,
    Obligation,
    Step,
    TemplateState,
    Workflow,
)
from .errors import (
    InvalidTemplateTransitionError,
    StoreError,
    TemplateRenderError,
    WorkflowConfigurationError,
)
from .library import load_library
from .stores import RenderedMessage, TemplateStore, WorkflowStore
from .workflows import validate_steps

logger = logging.getLogger(__name__)

TONE_MIN = 1
TONE_MAX = 5
TONE_STANDARD = 3

SIGN_OFF = "Best regards,\n{{ company_name }}"


def validate_tone_modifier(tone_modifier: int | None) -> int:
    """Return the tone modifier, defaulting to standard.

    Raises:
        ValueError: If the modifier is outside 1-5
    """
    if tone_modifier is None:
        return TONE_STANDARD
    if isinstance(tone_modifier, bool) or not isinstance(tone_modifier, int):
        raise ValueError(f"tone_modifier must be an integer, got {tone_modifier!r}")
    if not TONE_MIN <= tone_modifier <= TONE_MAX:
        raise ValueError(
            f"tone_modifier must be between {TONE_MIN} and {TONE_MAX}, got {tone_modifier}"
        )
    return tone_modifier


@dataclass
class ComposedContent:
    """Content produced by a provider for one workflow step."""

    subject_template: str
    body_template: str
    persona: str | None = None


class ContentProvider(Protocol):
    def compose(
        self,
        bucket: AgingBucket,
        step: Step,
        position: int,
        tone_modifier: int,
        approach_style: str | None,
    ) -> ComposedContent: ...


class LibraryContentProvider:
    """Content provider backed by the bundled pre-written library.

    ``position`` is the zero-based index of the step among the workflow
    steps of the same channel; the last library entry repeats when a
    workflow has more steps than the library. A known ``approach_style``
    adds its library sentence to email bodies; SMS bodies are left short.
    """

    def __init__(self, directory: Path | str | None = None):
        self.templates = load_library("templates", directory)
        self.personas = load_library("personas", directory)

    def persona_for(self, bucket: AgingBucket) -> dict[str, Any] | None:
        return self.personas.get("personas", {}).get(bucket.value)

    def tone_closing(self, tone_modifier: int) -> str:
        modifiers = self.personas.get("tone_modifiers", {})
        entry = modifiers.get(tone_modifier) or modifiers.get(str(tone_modifier)) or {}
        return entry.get("closing", "")

    def approach_sentence(self, approach_style: str | None) -> str:
        if not approach_style:
            return ""
        styles = self.personas.get("approach_styles", {})
        entry = styles.get(approach_style.strip().lower()) or {}
        return entry.get("sentence", "")

    def compose(
        self,
        bucket: AgingBucket,
        step: Step,
        position: int,
        tone_modifier: int,
        approach_style: str | None,
    ) -> ComposedContent:
        content = self.templates.get(bucket.value)
        if not content:
            raise WorkflowConfigurationError(f"No library content for bucket {bucket.value}")

        persona = self.persona_for(bucket)
        persona_name = persona.get("name") if persona else None
        closing = self.tone_closing(tone_modifier)

        if step.channel is Channel.SMS:
            entries = content.get("sms") or []
            if not entries:
                raise WorkflowConfigurationError(f"No SMS content for bucket {bucket.value}")
            body = entries[min(position, len(entries) - 1)].strip()
            return ComposedContent(subject_template="", body_template=body, persona=persona_name)

        entries = content.get("email") or []
        if not entries:
            raise WorkflowConfigurationError(f"No email content for bucket {bucket.value}")
        entry = entries[min(position, len(entries) - 1)]
        paragraphs = [entry["body"].strip()]
        approach = self.approach_sentence(approach_style)
        if approach:
            paragraphs.append(approach)
        if closing:
            paragraphs.append(closing)
        paragraphs.append(SIGN_OFF)
        return ComposedContent(
            subject_template=entry["subject"].strip(),
            body_template="\n\n".join(paragraphs),
            persona=persona_name,
        )


def channel_position(workflow: Workflow, step: Step) -> int:
    """Index of ``step`` among the workflow steps sharing its channel."""
    same_channel = [s for s in workflow.ordered_steps if s.channel is step.channel]
    for index, candidate in enumerate(same_channel):
        if candidate.step_id == step.step_id:
            return index
    return 0


class TemplateGenerator:
    """Create pending draft templates for the steps of a bucket workflow."""

    def __init__(
        self,
        workflow_store: WorkflowStore,
        template_store: TemplateStore,
        provider: ContentProvider | None = None,
    ):
        self.workflow_store = workflow_store
        self.template_store = template_store
        self.provider = provider or LibraryContentProvider()

    def build_template(
        self,
        owner_id: str,
        workflow: Workflow,
        step: Step,
        tone_modifier: int,
        approach_style: str | None,
    ) -> DraftTemplate:
        content = self.provider.compose(
            workflow.bucket, step, channel_position(workflow, step), tone_modifier, approach_style
        )
        return DraftTemplate(
            owner_id=owner_id,
            bucket=workflow.bucket,
            workflow_id=workflow.workflow_id,
            step_id=step.step_id,
            channel=step.channel,
            subject_template=content.subject_template,
            body_template=content.body_template,
            step_sequence=step.sequence,
            day_offset=step.day_offset,
            persona=content.persona,
            tone_modifier=tone_modifier,
            approach_style=approach_style,
        )

    def generate(
        self,
        owner_id: str,
        bucket: AgingBucket,
        tone_modifier: int | None = None,
        approach_style: str | None = None,
    ) -> GenerationSummary:
        """Create one pending template per step that has no live template.

        Args:
            owner_id: Owner the templates belong to
            bucket: Aging bucket whose workflow is used
            tone_modifier: Tone intensity 1-5 (3 = standard)
            approach_style: Free-form approach hint stored on the template

        Returns:
            Generation summary; ``needs_workflow`` is set when the bucket has
            no usable workflow

        Raises:
            ValueError: If the tone modifier is out of range
        """
        tone = validate_tone_modifier(tone_modifier)

        workflow = self.workflow_store.get_effective_workflow(bucket, owner_id)
        if workflow is None or not workflow.active or not workflow.steps:
            logger.info(
                "No usable workflow for template generation",
                extra={"owner_id": owner_id, "bucket": bucket.value},
            )
            return GenerationSummary(
                success=False,
                needs_workflow=True,
                workflow_id=workflow.workflow_id if workflow else None,
            )

        try:
            steps = validate_steps(workflow)
        except WorkflowConfigurationError as e:
            return GenerationSummary(success=False, errors=[str(e)], workflow_id=workflow.workflow_id)

        covered = {
            t.step_id
            for t in self.template_store.list_templates(owner_id, bucket)
            if t.workflow_id == workflow.workflow_id and t.state is not TemplateState.DISCARDED
        }

        summary = GenerationSummary(success=True, workflow_id=workflow.workflow_id)
        for step in steps:
            if step.step_id in covered:
                continue
            try:
                template = self.build_template(owner_id, workflow, step, tone, approach_style)
                self.template_store.insert_template(template)
            except (StoreError, WorkflowConfigurationError) as e:
                summary.errors.append(f"step {step.sequence} ({step.label or step.step_id}): {e}")
                continue
            summary.templates_created += 1

        summary.success = not summary.errors
        logger.info(
            "Templates generated",
            extra={
                "owner_id": owner_id,
                "bucket": bucket.value,
                "workflow_id": workflow.workflow_id,
                "templates_created": summary.templates_created,
                "errors": len(summary.errors),
            },
        )
        return summary


class TemplateRenderer:
    """Jinja2 renderer for draft templates."""

    def __init__(self, config: DunningConfig | None = None):
        self.config = config or DunningConfig()
        self.env = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=False,
        )
        self.env.filters["money"] = self._money_filter
        self.env.filters["datefmt"] = self._datefmt_filter
        self._lock = threading.Lock()
        self._compiled: dict[tuple[str, str, str], Any] = {}

    def _money_filter(self, amount_cents: int) -> str:
        return f"{amount_cents / 100:,.2f}"

    def _datefmt_filter(self, value, format_str: str = "%Y-%m-%d") -> str:
        if hasattr(value, "strftime"):
            return value.strftime(format_str)
        return str(value)

    def validate(self, source: str) -> None:
        """Check template syntax.

        Raises:
            TemplateRenderError: If the source does not compile
        """
        try:
            self.env.from_string(source)
        except TemplateError as e:
            raise TemplateRenderError(f"invalid template syntax: {e}") from e

    def build_context(self, obligation: Obligation, days_past_due: int) -> dict[str, Any]:
        due_date: date = obligation.due_date
        return {
            "customer_name": obligation.customer_name or "",
            "debtor_name": obligation.primary_contact_name() or "Customer",
            "company_name": self.config.company_name,
            "invoice_number": obligation.invoice_number,
            "amount": obligation.amount_str,
            "amount_cents": obligation.amount_cents,
            "currency": obligation.currency,
            "due_date": due_date.isoformat(),
            "days_past_due": days_past_due,
            "payment_link": self.config.payment_link,
        }

    def _template(self, template: DraftTemplate, part: str, source: str):
        key = (template.template_id, template.updated_at.isoformat(), part)
        with self._lock:
            compiled = self._compiled.get(key)
        if compiled is None:
            compiled = self.env.from_string(source)
            with self._lock:
                self._compiled[key] = compiled
        return compiled

    def render(
        self, template: DraftTemplate, obligation: Obligation, days_past_due: int
    ) -> RenderedMessage:
        """Render a template for one obligation.

        Raises:
            TemplateRenderError: On syntax errors or unknown placeholders
        """
        context = self.build_context(obligation, days_past_due)
        try:
            subject = None
            if template.channel is Channel.EMAIL:
                subject = self._template(template, "subject", template.subject_template).render(
                    **context
                )
            body = self._template(template, "body", template.body_template).render(**context)
        except TemplateError as e:
            raise TemplateRenderError(
                f"template {template.template_id} failed to render for "
                f"{obligation.obligation_id}: {e}"
            ) from e
        return RenderedMessage(subject=subject, body=body, reply_to=self.config.reply_to or None)


class TemplateLifecycle:
    """State transitions and edits of draft templates.

    ``pending_approval -> approved | discarded``; ``approved -> discarded``.
    Discarded is terminal.
    """

    _TRANSITIONS = {
        TemplateState.PENDING_APPROVAL: {TemplateState.APPROVED, TemplateState.DISCARDED},
        TemplateState.APPROVED: {TemplateState.DISCARDED},
        TemplateState.DISCARDED: set(),
    }

    def __init__(
        self,
        template_store: TemplateStore,
        generator: TemplateGenerator | None = None,
        renderer: TemplateRenderer | None = None,
    ):
        self.template_store = template_store
        self.generator = generator
        self.renderer = renderer or TemplateRenderer()

    def _get(self, template_id: str) -> DraftTemplate:
        template = self.template_store.get_template(template_id)
        if template is None:
            raise StoreError(f"template {template_id} not found")
        return template

    def _transition(self, template_id: str, target: TemplateState) -> DraftTemplate:
        template = self._get(template_id)
        if target not in self._TRANSITIONS[template.state]:
            raise InvalidTemplateTransitionError(
                f"cannot move template {template_id} from {template.state.value} to {target.value}"
            )
        updated = replace(template, state=target, updated_at=datetime.now(UTC))
        self.template_store.update_template(updated)
        logger.info(
            "Template state changed",
            extra={
                "template_id": template_id,
                "from_state": template.state.value,
                "to_state": target.value,
            },
        )
        return updated

    def approve(self, template_id: str) -> DraftTemplate:
        return self._transition(template_id, TemplateState.APPROVED)

    def discard(self, template_id: str) -> DraftTemplate:
        return self._transition(template_id, TemplateState.DISCARDED)

    def edit(
        self,
        template_id: str,
        subject_template: str | None = None,
        body_template: str | None = None,
    ) -> DraftTemplate:
        """Edit template content in place; the state is unchanged.

        Raises:
            InvalidTemplateTransitionError: If the template is discarded
            TemplateRenderError: If the new content does not compile
        """
        template = self._get(template_id)
        if template.state is TemplateState.DISCARDED:
            raise InvalidTemplateTransitionError(f"template {template_id} is discarded")

        changes: dict[str, Any] = {"updated_at": datetime.now(UTC)}
        if subject_template is not None:
            self.renderer.validate(subject_template)
            changes["subject_template"] = subject_template
        if body_template is not None:
            self.renderer.validate(body_template)
            changes["body_template"] = body_template

        updated = replace(template, **changes)
        self.template_store.update_template(updated)
        return updated

    def regenerate(
        self,
        template_id: str,
        workflow_store: WorkflowStore,
        tone_modifier: int | None = None,
        approach_style: str | None = None,
    ) -> DraftTemplate:
        """Delete a template and create a fresh pending one for the same step.

        Dispatch records of the deleted template are kept as history and
        do not carry over to the new template.
        """
        if self.generator is None:
            raise ValueError("regenerate requires a template generator")

        old = self._get(template_id)
        tone = validate_tone_modifier(
            tone_modifier if tone_modifier is not None else old.tone_modifier
        )
        style = approach_style if approach_style is not None else old.approach_style

        workflow = workflow_store.get_workflow(old.workflow_id)
        if workflow is None:
            raise WorkflowConfigurationError(
                f"workflow {old.workflow_id} of template {template_id} no longer exists",
                workflow_id=old.workflow_id,
            )
        step = next((s for s in workflow.steps if s.step_id == old.step_id), None)
        if step is None:
            raise WorkflowConfigurationError(
                f"step {old.step_id} of template {template_id} no longer exists",
                workflow_id=old.workflow_id,
            )

        fresh = self.generator.build_template(old.owner_id, workflow, step, tone, style)
        self.template_store.delete_template(template_id)
        self.template_store.insert_template(fresh)
        logger.info(
            "Template regenerated",
            extra={"template_id": fresh.template_id, "replaced_template_id": template_id},
        )
        return fresh
