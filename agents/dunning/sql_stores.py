"""SQLAlchemy Core implementations of the store ports.

PostgreSQL in production (schema managed by alembic, see
``ops/alembic/versions``), SQLite in tests. The dispatch log relies on a
unique partial index over (obligation_id, template_id) for non-failed
outcomes, so concurrent workers cannot both claim the same pair.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .dto import (
    AgingBucket,
    Channel,
    Contact,
    DispatchOutcome,
    DispatchRecord,
    DraftTemplate,
    Obligation,
    ObligationStatus,
    Step,
    TemplateState,
    Workflow,
)
from .errors import DispatchConflictError, StoreError, StoreUnavailableError
from .workflows import resolve_effective_workflow

ELIGIBLE_STATUSES = [s.value for s in ObligationStatus if s.outreach_eligible]


@dataclass(frozen=True)
class DunningTables:
    obligations: Table
    contacts: Table
    owner_settings: Table
    workflows: Table
    workflow_steps: Table
    draft_templates: Table
    dispatch_records: Table


def get_tables(metadata: MetaData) -> DunningTables:
    """Return the dunning table definitions for the given metadata."""
    obligations = Table(
        "dunning_obligations",
        metadata,
        Column("id", String(64), primary_key=True),
        Column("owner_id", String(64), nullable=False),
        Column("invoice_number", String(128), nullable=False),
        Column("due_date", Date, nullable=False),
        Column("amount_cents", Integer, nullable=False, server_default=sa.text("0")),
        Column("currency", String(3), nullable=False, server_default=sa.text("'USD'")),
        Column("status", String(32), nullable=False),
        Column("aging_bucket", String(32)),
        Column("bucket_entered_at", Date),
        Column("created_at", DateTime(timezone=True)),
        Column("customer_name", Text),
        Column("outreach_paused", Boolean, nullable=False, server_default=sa.false()),
        Index("ix_dunning_obligations_owner_status", "owner_id", "status"),
        extend_existing=True,
    )
    contacts = Table(
        "dunning_contacts",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column(
            "obligation_id",
            String(64),
            ForeignKey("dunning_obligations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        Column("name", Text),
        Column("email", Text),
        Column("phone", String(64)),
        Column("outreach_enabled", Boolean, nullable=False, server_default=sa.true()),
        Column("is_primary", Boolean, nullable=False, server_default=sa.false()),
        Index("ix_dunning_contacts_obligation", "obligation_id"),
        extend_existing=True,
    )
    owner_settings = Table(
        "dunning_owner_settings",
        metadata,
        Column("owner_id", String(64), primary_key=True),
        Column("outreach_paused", Boolean, nullable=False, server_default=sa.false()),
        extend_existing=True,
    )
    workflows = Table(
        "dunning_workflows",
        metadata,
        Column("id", String(64), primary_key=True),
        Column("bucket", String(32), nullable=False),
        Column("owner_id", String(64)),
        Column("name", Text, nullable=False, server_default=sa.text("''")),
        Column("description", Text, nullable=False, server_default=sa.text("''")),
        Column("active", Boolean, nullable=False, server_default=sa.true()),
        Column("locked", Boolean, nullable=False, server_default=sa.false()),
        Column("created_at", DateTime(timezone=True), nullable=False),
        Index("ix_dunning_workflows_bucket_owner", "bucket", "owner_id"),
        extend_existing=True,
    )
    workflow_steps = Table(
        "dunning_workflow_steps",
        metadata,
        Column("id", String(64), primary_key=True),
        Column(
            "workflow_id",
            String(64),
            ForeignKey("dunning_workflows.id", ondelete="CASCADE"),
            nullable=False,
        ),
        Column("sequence", Integer, nullable=False),
        Column("day_offset", Integer, nullable=False),
        Column("channel", String(16), nullable=False),
        Column("template_type", String(64), nullable=False),
        Column("label", Text, nullable=False, server_default=sa.text("''")),
        Index("ix_dunning_workflow_steps_workflow", "workflow_id"),
        extend_existing=True,
    )
    draft_templates = Table(
        "dunning_draft_templates",
        metadata,
        Column("id", String(64), primary_key=True),
        Column("owner_id", String(64), nullable=False),
        Column("bucket", String(32), nullable=False),
        Column("workflow_id", String(64), nullable=False),
        Column("step_id", String(64), nullable=False),
        Column("channel", String(16), nullable=False),
        Column("subject_template", Text, nullable=False),
        Column("body_template", Text, nullable=False),
        Column("state", String(32), nullable=False),
        Column("step_sequence", Integer, nullable=False, server_default=sa.text("0")),
        Column("day_offset", Integer, nullable=False, server_default=sa.text("0")),
        Column("persona", String(64)),
        Column("tone_modifier", Integer),
        Column("approach_style", Text),
        Column("created_at", DateTime(timezone=True), nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False),
        Index("ix_dunning_draft_templates_owner_bucket", "owner_id", "bucket"),
        extend_existing=True,
    )
    dispatch_records = Table(
        "dunning_dispatch_records",
        metadata,
        Column("id", String(64), primary_key=True),
        Column("obligation_id", String(64), nullable=False),
        Column("template_id", String(64), nullable=False),
        Column("owner_id", String(64), nullable=False),
        Column("step_id", String(64), nullable=False),
        Column("channel", String(16), nullable=False),
        Column("outcome", String(16), nullable=False),
        Column("reason", Text),
        Column("message_id", String(255)),
        Column("created_at", DateTime(timezone=True), nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False),
        extend_existing=True,
    )
    # At most one live (non-failed) record per pair
    Index(
        "uq_dunning_dispatch_records_live_pair",
        dispatch_records.c.obligation_id,
        dispatch_records.c.template_id,
        unique=True,
        sqlite_where=dispatch_records.c.outcome != "failed",
        postgresql_where=dispatch_records.c.outcome != "failed",
    )
    return DunningTables(
        obligations=obligations,
        contacts=contacts,
        owner_settings=owner_settings,
        workflows=workflows,
        workflow_steps=workflow_steps,
        draft_templates=draft_templates,
        dispatch_records=dispatch_records,
    )


def create_schema(engine: Engine) -> DunningTables:
    """Create all dunning tables (tests and local runs; production uses alembic)."""
    metadata = MetaData()
    tables = get_tables(metadata)
    metadata.create_all(engine)
    return tables


def _now() -> datetime:
    return datetime.now(UTC)


class _SqlStore:
    def __init__(self, engine: Engine, tables: DunningTables | None = None):
        self.engine = engine
        self.tables = tables or get_tables(MetaData())


class SqlObligationStore(_SqlStore):
    """Obligation store over the dunning_obligations and dunning_contacts tables."""

    def add(self, obligation: Obligation) -> None:
        t = self.tables
        with self.engine.begin() as conn:
            conn.execute(
                insert(t.obligations).values(
                    id=obligation.obligation_id,
                    owner_id=obligation.owner_id,
                    invoice_number=obligation.invoice_number,
                    due_date=obligation.due_date,
                    amount_cents=obligation.amount_cents,
                    currency=obligation.currency,
                    status=obligation.status.value,
                    aging_bucket=obligation.aging_bucket.value if obligation.aging_bucket else None,
                    bucket_entered_at=obligation.bucket_entered_at,
                    created_at=obligation.created_at or _now(),
                    customer_name=obligation.customer_name,
                    outreach_paused=obligation.outreach_paused,
                )
            )
            for contact in obligation.contacts:
                conn.execute(
                    insert(t.contacts).values(
                        obligation_id=obligation.obligation_id,
                        name=contact.name,
                        email=contact.email,
                        phone=contact.phone,
                        outreach_enabled=contact.outreach_enabled,
                        is_primary=contact.is_primary,
                    )
                )

    def set_owner_paused(self, owner_id: str, paused: bool) -> None:
        t = self.tables
        with self.engine.begin() as conn:
            updated = conn.execute(
                update(t.owner_settings)
                .where(t.owner_settings.c.owner_id == owner_id)
                .values(outreach_paused=paused)
            )
            if updated.rowcount == 0:
                conn.execute(
                    insert(t.owner_settings).values(owner_id=owner_id, outreach_paused=paused)
                )

    def get(self, obligation_id: str) -> Obligation | None:
        t = self.tables
        with self.engine.begin() as conn:
            row = conn.execute(
                select(t.obligations).where(t.obligations.c.id == obligation_id)
            ).mappings().first()
            if row is None:
                return None
            contacts = conn.execute(
                select(t.contacts).where(t.contacts.c.obligation_id == obligation_id)
            ).mappings().all()
        return _obligation_from_row(row, [_contact_from_row(c) for c in contacts])

    def list_eligible_obligations(self, owner_scope: str | None) -> list[Obligation]:
        t = self.tables
        query = select(t.obligations).where(t.obligations.c.status.in_(ELIGIBLE_STATUSES))
        if owner_scope is not None:
            query = query.where(t.obligations.c.owner_id == owner_scope)

        contact_query = (
            select(t.contacts)
            .join(t.obligations, t.contacts.c.obligation_id == t.obligations.c.id)
            .where(t.obligations.c.status.in_(ELIGIBLE_STATUSES))
            .order_by(t.contacts.c.id)
        )
        if owner_scope is not None:
            contact_query = contact_query.where(t.obligations.c.owner_id == owner_scope)

        try:
            with self.engine.begin() as conn:
                rows = conn.execute(query.order_by(t.obligations.c.id)).mappings().all()
                contact_rows = conn.execute(contact_query).mappings().all()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"cannot list obligations: {e}") from e

        contacts: dict[str, list[Contact]] = {}
        for row in contact_rows:
            contacts.setdefault(row["obligation_id"], []).append(_contact_from_row(row))
        return [_obligation_from_row(row, contacts.get(row["id"], [])) for row in rows]

    def update_bucket(
        self, obligation_id: str, bucket: AgingBucket, bucket_entered_at: date
    ) -> None:
        t = self.tables
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(t.obligations)
                    .where(t.obligations.c.id == obligation_id)
                    .values(aging_bucket=bucket.value, bucket_entered_at=bucket_entered_at)
                )
        except SQLAlchemyError as e:
            raise StoreError(f"cannot update bucket of {obligation_id}: {e}") from e
        if result.rowcount == 0:
            raise StoreError(f"obligation {obligation_id} not found")

    def is_outreach_paused(self, owner_id: str) -> bool:
        t = self.tables
        with self.engine.begin() as conn:
            paused = conn.execute(
                select(t.owner_settings.c.outreach_paused).where(
                    t.owner_settings.c.owner_id == owner_id
                )
            ).scalar()
        return bool(paused)


class SqlWorkflowStore(_SqlStore):
    """Workflow configuration store over dunning_workflows and dunning_workflow_steps."""

    def _load(self, conn, rows) -> list[Workflow]:
        t = self.tables
        if not rows:
            return []
        ids = [row["id"] for row in rows]
        step_rows = conn.execute(
            select(t.workflow_steps).where(t.workflow_steps.c.workflow_id.in_(ids))
        ).mappings().all()
        steps: dict[str, list[Step]] = {}
        for row in step_rows:
            steps.setdefault(row["workflow_id"], []).append(_step_from_row(row))
        return [_workflow_from_row(row, steps.get(row["id"], [])) for row in rows]

    def list_workflows(self, bucket: AgingBucket, owner_scope: str | None) -> list[Workflow]:
        t = self.tables
        owner_clause = (
            t.workflows.c.owner_id.is_(None)
            if owner_scope is None
            else t.workflows.c.owner_id == owner_scope
        )
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(t.workflows).where(t.workflows.c.bucket == bucket.value).where(owner_clause)
            ).mappings().all()
            return self._load(conn, rows)

    def get_effective_workflow(
        self, bucket: AgingBucket, owner_scope: str | None
    ) -> Workflow | None:
        return resolve_effective_workflow(self, bucket, owner_scope)

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        t = self.tables
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(t.workflows).where(t.workflows.c.id == workflow_id)
            ).mappings().all()
            loaded = self._load(conn, rows)
        return loaded[0] if loaded else None

    def save_workflow(self, workflow: Workflow) -> Workflow:
        t = self.tables
        with self.engine.begin() as conn:
            conn.execute(
                delete(t.workflow_steps).where(
                    t.workflow_steps.c.workflow_id == workflow.workflow_id
                )
            )
            conn.execute(delete(t.workflows).where(t.workflows.c.id == workflow.workflow_id))
            conn.execute(
                insert(t.workflows).values(
                    id=workflow.workflow_id,
                    bucket=workflow.bucket.value,
                    owner_id=workflow.owner_id,
                    name=workflow.name,
                    description=workflow.description,
                    active=workflow.active,
                    locked=workflow.locked,
                    created_at=workflow.created_at,
                )
            )
            for step in workflow.steps:
                conn.execute(
                    insert(t.workflow_steps).values(
                        id=step.step_id,
                        workflow_id=workflow.workflow_id,
                        sequence=step.sequence,
                        day_offset=step.day_offset,
                        channel=step.channel.value,
                        template_type=step.template_type,
                        label=step.label,
                    )
                )
        return workflow


class SqlTemplateStore(_SqlStore):
    """Draft templates and dispatch log over dunning_draft_templates and dunning_dispatch_records."""

    def list_approved_templates(self, owner_scope: str | None) -> list[DraftTemplate]:
        t = self.tables.draft_templates
        query = select(t).where(t.c.state == TemplateState.APPROVED.value)
        if owner_scope is not None:
            query = query.where(t.c.owner_id == owner_scope)
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(query.order_by(t.c.created_at, t.c.id)).mappings().all()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"cannot list approved templates: {e}") from e
        return [_template_from_row(row) for row in rows]

    def list_templates(self, owner_id: str, bucket: AgingBucket) -> list[DraftTemplate]:
        t = self.tables.draft_templates
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(t)
                .where(t.c.owner_id == owner_id)
                .where(t.c.bucket == bucket.value)
                .order_by(t.c.step_sequence, t.c.created_at)
            ).mappings().all()
        return [_template_from_row(row) for row in rows]

    def get_template(self, template_id: str) -> DraftTemplate | None:
        t = self.tables.draft_templates
        with self.engine.begin() as conn:
            row = conn.execute(select(t).where(t.c.id == template_id)).mappings().first()
        return _template_from_row(row) if row else None

    def insert_template(self, template: DraftTemplate) -> DraftTemplate:
        t = self.tables.draft_templates
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(t).values(**_template_values(template)))
        except IntegrityError as e:
            raise StoreError(f"template {template.template_id} already exists") from e
        return template

    def update_template(self, template: DraftTemplate) -> DraftTemplate:
        t = self.tables.draft_templates
        values = _template_values(template)
        values.pop("id")
        with self.engine.begin() as conn:
            result = conn.execute(update(t).where(t.c.id == template.template_id).values(**values))
        if result.rowcount == 0:
            raise StoreError(f"template {template.template_id} not found")
        return template

    def delete_template(self, template_id: str) -> None:
        t = self.tables.draft_templates
        with self.engine.begin() as conn:
            conn.execute(delete(t).where(t.c.id == template_id))

    def has_dispatch_record(self, obligation_id: str, template_id: str) -> bool:
        r = self.tables.dispatch_records
        with self.engine.begin() as conn:
            found = conn.execute(
                select(r.c.id)
                .where(r.c.obligation_id == obligation_id)
                .where(r.c.template_id == template_id)
                .where(r.c.outcome != DispatchOutcome.FAILED.value)
                .limit(1)
            ).first()
        return found is not None

    def insert_dispatch_record(self, record: DispatchRecord) -> DispatchRecord:
        r = self.tables.dispatch_records
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(r).values(
                        id=record.record_id,
                        obligation_id=record.obligation_id,
                        template_id=record.template_id,
                        owner_id=record.owner_id,
                        step_id=record.step_id,
                        channel=record.channel.value,
                        outcome=record.outcome.value,
                        reason=record.reason,
                        message_id=record.message_id,
                        created_at=record.created_at,
                        updated_at=record.updated_at,
                    )
                )
        except IntegrityError as e:
            raise DispatchConflictError(record.obligation_id, record.template_id) from e
        return record

    def update_dispatch_outcome(
        self,
        record_id: str,
        outcome: DispatchOutcome,
        reason: str | None = None,
        message_id: str | None = None,
    ) -> None:
        r = self.tables.dispatch_records
        with self.engine.begin() as conn:
            result = conn.execute(
                update(r)
                .where(r.c.id == record_id)
                .values(
                    outcome=outcome.value,
                    reason=reason,
                    message_id=message_id,
                    updated_at=_now(),
                )
            )
        if result.rowcount == 0:
            raise StoreError(f"dispatch record {record_id} not found")

    def delete_dispatch_record(self, record_id: str) -> None:
        r = self.tables.dispatch_records
        with self.engine.begin() as conn:
            conn.execute(
                delete(r)
                .where(r.c.id == record_id)
                .where(r.c.outcome == DispatchOutcome.PENDING.value)
            )

    def list_dispatch_records(self, template_id: str | None = None) -> list[DispatchRecord]:
        r = self.tables.dispatch_records
        query = select(r).order_by(r.c.created_at, r.c.id)
        if template_id is not None:
            query = query.where(r.c.template_id == template_id)
        with self.engine.begin() as conn:
            rows = conn.execute(query).mappings().all()
        return [_record_from_row(row) for row in rows]


def _contact_from_row(row: Any) -> Contact:
    return Contact(
        name=row["name"],
        email=row["email"],
        phone=row["phone"],
        outreach_enabled=bool(row["outreach_enabled"]),
        is_primary=bool(row["is_primary"]),
    )


def _obligation_from_row(row: Any, contacts: list[Contact]) -> Obligation:
    return Obligation(
        obligation_id=row["id"],
        owner_id=row["owner_id"],
        invoice_number=row["invoice_number"],
        due_date=row["due_date"],
        amount_cents=row["amount_cents"],
        currency=row["currency"],
        status=ObligationStatus(row["status"]),
        aging_bucket=AgingBucket.from_key(row["aging_bucket"]) if row["aging_bucket"] else None,
        bucket_entered_at=row["bucket_entered_at"],
        created_at=row["created_at"],
        customer_name=row["customer_name"],
        outreach_paused=bool(row["outreach_paused"]),
        contacts=contacts,
    )


def _step_from_row(row: Any) -> Step:
    return Step(
        step_id=row["id"],
        workflow_id=row["workflow_id"],
        sequence=row["sequence"],
        day_offset=row["day_offset"],
        channel=Channel(row["channel"]),
        template_type=row["template_type"],
        label=row["label"],
    )


def _workflow_from_row(row: Any, steps: list[Step]) -> Workflow:
    return Workflow(
        workflow_id=row["id"],
        bucket=AgingBucket.from_key(row["bucket"]),
        owner_id=row["owner_id"],
        name=row["name"],
        description=row["description"],
        active=bool(row["active"]),
        locked=bool(row["locked"]),
        created_at=row["created_at"],
        steps=steps,
    )


def _template_values(template: DraftTemplate) -> dict[str, Any]:
    return {
        "id": template.template_id,
        "owner_id": template.owner_id,
        "bucket": template.bucket.value,
        "workflow_id": template.workflow_id,
        "step_id": template.step_id,
        "channel": template.channel.value,
        "subject_template": template.subject_template,
        "body_template": template.body_template,
        "state": template.state.value,
        "step_sequence": template.step_sequence,
        "day_offset": template.day_offset,
        "persona": template.persona,
        "tone_modifier": template.tone_modifier,
        "approach_style": template.approach_style,
        "created_at": template.created_at,
        "updated_at": template.updated_at,
    }


def _template_from_row(row: Any) -> DraftTemplate:
    return DraftTemplate(
        template_id=row["id"],
        owner_id=row["owner_id"],
        bucket=AgingBucket.from_key(row["bucket"]),
        workflow_id=row["workflow_id"],
        step_id=row["step_id"],
        channel=Channel(row["channel"]),
        subject_template=row["subject_template"],
        body_template=row["body_template"],
        state=TemplateState(row["state"]),
        step_sequence=row["step_sequence"],
        day_offset=row["day_offset"],
        persona=row["persona"],
        tone_modifier=row["tone_modifier"],
        approach_style=row["approach_style"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _record_from_row(row: Any) -> DispatchRecord:
    return DispatchRecord(
        record_id=row["id"],
        obligation_id=row["obligation_id"],
        template_id=row["template_id"],
        owner_id=row["owner_id"],
        step_id=row["step_id"],
        channel=Channel(row["channel"]),
        outcome=DispatchOutcome(row["outcome"]),
        reason=row["reason"],
        message_id=row["message_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
