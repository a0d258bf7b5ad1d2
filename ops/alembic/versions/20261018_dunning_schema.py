"""Dunning engine schema: obligations, workflows, templates, dispatch log

Revision ID: 20261018_dunning_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261018_dunning_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "dunning_obligations",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("invoice_number", sa.String(128), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'USD'")),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("aging_bucket", sa.String(32), nullable=True),
        sa.Column("bucket_entered_at", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("customer_name", sa.Text(), nullable=True),
        sa.Column("outreach_paused", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index(
        "ix_dunning_obligations_owner_status", "dunning_obligations", ["owner_id", "status"]
    )

    op.create_table(
        "dunning_contacts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "obligation_id",
            sa.String(64),
            sa.ForeignKey("dunning_obligations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.String(64), nullable=True),
        sa.Column("outreach_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_dunning_contacts_obligation", "dunning_contacts", ["obligation_id"])

    op.create_table(
        "dunning_owner_settings",
        sa.Column("owner_id", sa.String(64), primary_key=True),
        sa.Column("outreach_paused", sa.Boolean(), nullable=False, server_default=sa.false()),
    )

    op.create_table(
        "dunning_workflows",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("bucket", sa.String(32), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=True),
        sa.Column("name", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_dunning_workflows_bucket_owner", "dunning_workflows", ["bucket", "owner_id"]
    )

    op.create_table(
        "dunning_workflow_steps",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "workflow_id",
            sa.String(64),
            sa.ForeignKey("dunning_workflows.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("day_offset", sa.Integer(), nullable=False),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("template_type", sa.String(64), nullable=False),
        sa.Column("label", sa.Text(), nullable=False, server_default=sa.text("''")),
    )
    op.create_index(
        "ix_dunning_workflow_steps_workflow", "dunning_workflow_steps", ["workflow_id"]
    )

    op.create_table(
        "dunning_draft_templates",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("bucket", sa.String(32), nullable=False),
        sa.Column("workflow_id", sa.String(64), nullable=False),
        sa.Column("step_id", sa.String(64), nullable=False),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("subject_template", sa.Text(), nullable=False),
        sa.Column("body_template", sa.Text(), nullable=False),
        sa.Column("state", sa.String(32), nullable=False),
        sa.Column("step_sequence", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("day_offset", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("persona", sa.String(64), nullable=True),
        sa.Column("tone_modifier", sa.Integer(), nullable=True),
        sa.Column("approach_style", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_dunning_draft_templates_owner_bucket",
        "dunning_draft_templates",
        ["owner_id", "bucket"],
    )

    op.create_table(
        "dunning_dispatch_records",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("obligation_id", sa.String(64), nullable=False),
        sa.Column("template_id", sa.String(64), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("step_id", sa.String(64), nullable=False),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("message_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    # Partial unique index: failed records do not block a retry
    op.create_index(
        "uq_dunning_dispatch_records_live_pair",
        "dunning_dispatch_records",
        ["obligation_id", "template_id"],
        unique=True,
        sqlite_where=sa.text("outcome != 'failed'"),
        postgresql_where=sa.text("outcome != 'failed'"),
    )


def downgrade() -> None:
    op.drop_index("uq_dunning_dispatch_records_live_pair", table_name="dunning_dispatch_records")
    op.drop_table("dunning_dispatch_records")
    op.drop_index("ix_dunning_draft_templates_owner_bucket", table_name="dunning_draft_templates")
    op.drop_table("dunning_draft_templates")
    op.drop_index("ix_dunning_workflow_steps_workflow", table_name="dunning_workflow_steps")
    op.drop_table("dunning_workflow_steps")
    op.drop_index("ix_dunning_workflows_bucket_owner", table_name="dunning_workflows")
    op.drop_table("dunning_workflows")
    op.drop_table("dunning_owner_settings")
    op.drop_index("ix_dunning_contacts_obligation", table_name="dunning_contacts")
    op.drop_table("dunning_contacts")
    op.drop_index("ix_dunning_obligations_owner_status", table_name="dunning_obligations")
    op.drop_table("dunning_obligations")
