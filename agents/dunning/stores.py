"""Store and delivery ports plus in-memory implementations.

The engine consumes four external collaborators through the protocols
defined here. The in-memory implementations are thread-safe and back the
offline tests and local operate runs; `sql_stores` provides the
SQLAlchemy-backed variants.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from typing import Iterable, Protocol

from .dto import (
    AgingBucket,
    Channel,
    DispatchOutcome,
    DispatchRecord,
    DraftTemplate,
    Obligation,
    TemplateState,
    Workflow,
)
from .errors import DispatchConflictError, StoreError
from .workflows import resolve_effective_workflow


@dataclass
class RenderedMessage:
    """Fully personalized message ready for delivery."""

    subject: str | None
    body: str
    reply_to: str | None = None


@dataclass
class DeliveryResult:
    """Response from the message delivery service."""

    delivered: bool
    reason: str | None = None
    message_id: str | None = None


class ObligationStore(Protocol):
    def list_eligible_obligations(self, owner_scope: str | None) -> list[Obligation]: ...

    def update_bucket(
        self, obligation_id: str, bucket: AgingBucket, bucket_entered_at: date
    ) -> None: ...

    def is_outreach_paused(self, owner_id: str) -> bool: ...


class WorkflowStore(Protocol):
    def list_workflows(self, bucket: AgingBucket, owner_scope: str | None) -> list[Workflow]: ...

    def get_effective_workflow(
        self, bucket: AgingBucket, owner_scope: str | None
    ) -> Workflow | None: ...

    def get_workflow(self, workflow_id: str) -> Workflow | None: ...

    def save_workflow(self, workflow: Workflow) -> Workflow: ...


class TemplateStore(Protocol):
    def list_approved_templates(self, owner_scope: str | None) -> list[DraftTemplate]: ...

    def list_templates(self, owner_id: str, bucket: AgingBucket) -> list[DraftTemplate]: ...

    def get_template(self, template_id: str) -> DraftTemplate | None: ...

    def insert_template(self, template: DraftTemplate) -> DraftTemplate: ...

    def update_template(self, template: DraftTemplate) -> DraftTemplate: ...

    def delete_template(self, template_id: str) -> None: ...

    def has_dispatch_record(self, obligation_id: str, template_id: str) -> bool: ...

    def insert_dispatch_record(self, record: DispatchRecord) -> DispatchRecord: ...

    def update_dispatch_outcome(
        self,
        record_id: str,
        outcome: DispatchOutcome,
        reason: str | None = None,
        message_id: str | None = None,
    ) -> None: ...

    def delete_dispatch_record(self, record_id: str) -> None: ...

    def list_dispatch_records(self, template_id: str | None = None) -> list[DispatchRecord]: ...


class MessageDeliveryService(Protocol):
    def send(
        self, channel: Channel, message: RenderedMessage, recipients: list[str]
    ) -> DeliveryResult: ...


class InMemoryObligationStore:
    """Obligation store held in process memory."""

    def __init__(
        self,
        obligations: Iterable[Obligation] | None = None,
        paused_owners: Iterable[str] | None = None,
    ):
        self._lock = threading.Lock()
        self._obligations: dict[str, Obligation] = {
            o.obligation_id: o for o in (obligations or [])
        }
        self.paused_owners: set[str] = set(paused_owners or [])

    def add(self, obligation: Obligation) -> None:
        with self._lock:
            self._obligations[obligation.obligation_id] = obligation

    def get(self, obligation_id: str) -> Obligation | None:
        with self._lock:
            return self._obligations.get(obligation_id)

    def list_eligible_obligations(self, owner_scope: str | None) -> list[Obligation]:
        with self._lock:
            return [
                replace(o)
                for o in self._obligations.values()
                if o.is_eligible and (owner_scope is None or o.owner_id == owner_scope)
            ]

    def update_bucket(
        self, obligation_id: str, bucket: AgingBucket, bucket_entered_at: date
    ) -> None:
        with self._lock:
            obligation = self._obligations.get(obligation_id)
            if obligation is None:
                raise StoreError(f"obligation {obligation_id} not found")
            obligation.aging_bucket = bucket
            obligation.bucket_entered_at = bucket_entered_at

    def is_outreach_paused(self, owner_id: str) -> bool:
        return owner_id in self.paused_owners


class InMemoryWorkflowStore:
    """Workflow configuration store held in process memory."""

    def __init__(self, workflows: Iterable[Workflow] | None = None):
        self._lock = threading.Lock()
        self._workflows: dict[str, Workflow] = {w.workflow_id: w for w in (workflows or [])}

    def list_workflows(self, bucket: AgingBucket, owner_scope: str | None) -> list[Workflow]:
        with self._lock:
            return [
                w
                for w in self._workflows.values()
                if w.bucket is bucket and w.owner_id == owner_scope
            ]

    def get_effective_workflow(
        self, bucket: AgingBucket, owner_scope: str | None
    ) -> Workflow | None:
        return resolve_effective_workflow(self, bucket, owner_scope)

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        with self._lock:
            return self._workflows.get(workflow_id)

    def save_workflow(self, workflow: Workflow) -> Workflow:
        with self._lock:
            self._workflows[workflow.workflow_id] = workflow
        return workflow


class InMemoryTemplateStore:
    """Draft templates and dispatch log held in process memory.

    The dispatch log enforces the one-live-record-per-pair rule under a
    lock, mirroring the unique partial index of the SQL schema.
    """

    def __init__(self, templates: Iterable[DraftTemplate] | None = None):
        self._lock = threading.Lock()
        self._templates: dict[str, DraftTemplate] = {
            t.template_id: t for t in (templates or [])
        }
        self._records: dict[str, DispatchRecord] = {}
        # (obligation_id, template_id) -> record_id of the live record
        self._live: dict[tuple[str, str], str] = {}

    def list_approved_templates(self, owner_scope: str | None) -> list[DraftTemplate]:
        with self._lock:
            return [
                replace(t)
                for t in self._templates.values()
                if t.state is TemplateState.APPROVED
                and (owner_scope is None or t.owner_id == owner_scope)
            ]

    def list_templates(self, owner_id: str, bucket: AgingBucket) -> list[DraftTemplate]:
        with self._lock:
            return [
                replace(t)
                for t in self._templates.values()
                if t.owner_id == owner_id and t.bucket is bucket
            ]

    def get_template(self, template_id: str) -> DraftTemplate | None:
        with self._lock:
            template = self._templates.get(template_id)
            return replace(template) if template else None

    def insert_template(self, template: DraftTemplate) -> DraftTemplate:
        with self._lock:
            if template.template_id in self._templates:
                raise StoreError(f"template {template.template_id} already exists")
            self._templates[template.template_id] = replace(template)
        return template

    def update_template(self, template: DraftTemplate) -> DraftTemplate:
        with self._lock:
            if template.template_id not in self._templates:
                raise StoreError(f"template {template.template_id} not found")
            self._templates[template.template_id] = replace(template)
        return template

    def delete_template(self, template_id: str) -> None:
        with self._lock:
            self._templates.pop(template_id, None)

    def has_dispatch_record(self, obligation_id: str, template_id: str) -> bool:
        with self._lock:
            return (obligation_id, template_id) in self._live

    def insert_dispatch_record(self, record: DispatchRecord) -> DispatchRecord:
        pair = (record.obligation_id, record.template_id)
        with self._lock:
            if record.blocks_redispatch:
                if pair in self._live:
                    raise DispatchConflictError(record.obligation_id, record.template_id)
                self._live[pair] = record.record_id
            self._records[record.record_id] = replace(record)
        return record

    def update_dispatch_outcome(
        self,
        record_id: str,
        outcome: DispatchOutcome,
        reason: str | None = None,
        message_id: str | None = None,
    ) -> None:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise StoreError(f"dispatch record {record_id} not found")
            record.outcome = outcome
            record.reason = reason
            record.message_id = message_id
            record.updated_at = datetime.now(UTC)
            pair = (record.obligation_id, record.template_id)
            if outcome is DispatchOutcome.FAILED and self._live.get(pair) == record_id:
                del self._live[pair]

    def delete_dispatch_record(self, record_id: str) -> None:
        """Drop a claim that never received an outcome."""
        with self._lock:
            record = self._records.get(record_id)
            if record is None or record.outcome is not DispatchOutcome.PENDING:
                return
            del self._records[record_id]
            pair = (record.obligation_id, record.template_id)
            if self._live.get(pair) == record_id:
                del self._live[pair]

    def list_dispatch_records(self, template_id: str | None = None) -> list[DispatchRecord]:
        with self._lock:
            return [
                replace(r)
                for r in self._records.values()
                if template_id is None or r.template_id == template_id
            ]
