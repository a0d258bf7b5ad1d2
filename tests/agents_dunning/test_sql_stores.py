"""SQLAlchemy store tests against in-memory SQLite."""

from datetime import timedelta

import pytest
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

from agents.dunning.batch import BatchAggregator
from agents.dunning.dispatch import TemplateDispatchEngine
from agents.dunning.dto import (
    AgingBucket,
    Channel,
    DispatchOutcome,
    DispatchRecord,
    ObligationStatus,
    TemplateState,
)
from agents.dunning.errors import DispatchConflictError, StoreError
from agents.dunning.sql_stores import (
    SqlObligationStore,
    SqlTemplateStore,
    SqlWorkflowStore,
    create_schema,
)
from agents.dunning.workflows import WorkflowResolver, seed_default_workflows
from tests.agents_dunning.factories import (
    OWNER_ID,
    TODAY,
    RecordingDelivery,
    make_obligation,
    make_template,
    make_workflow,
)


@pytest.fixture
def engine():
    engine = sa.create_engine(
        "sqlite://",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def tables(engine):
    return create_schema(engine)


@pytest.fixture
def obligations(engine, tables):
    return SqlObligationStore(engine, tables)


@pytest.fixture
def workflows(engine, tables):
    return SqlWorkflowStore(engine, tables)


@pytest.fixture
def templates(engine, tables):
    return SqlTemplateStore(engine, tables)


class TestObligationStore:
    def test_round_trips_obligation_with_contacts(self, obligations):
        original = make_obligation(15, entered_days_ago=4)
        obligations.add(original)

        loaded = obligations.get(original.obligation_id)

        assert loaded.invoice_number == original.invoice_number
        assert loaded.due_date == original.due_date
        assert loaded.aging_bucket is AgingBucket.DPD_1_30
        assert loaded.bucket_entered_at == TODAY - timedelta(days=4)
        assert loaded.recipients(Channel.EMAIL) == ["debtor@example.com"]
        assert loaded.recipients(Channel.SMS) == ["+15550100"]

    def test_lists_only_eligible_in_scope(self, obligations):
        obligations.add(make_obligation(10))
        obligations.add(make_obligation(10, status=ObligationStatus.IN_PAYMENT_PLAN))
        obligations.add(make_obligation(10, status=ObligationStatus.DISPUTED))
        obligations.add(make_obligation(10, owner_id="other-owner"))

        assert len(obligations.list_eligible_obligations(OWNER_ID)) == 2
        assert len(obligations.list_eligible_obligations(None)) == 3

    def test_update_bucket(self, obligations):
        obligation = make_obligation(40)
        obligations.add(obligation)
        obligations.update_bucket(obligation.obligation_id, AgingBucket.DPD_31_60, TODAY)

        loaded = obligations.get(obligation.obligation_id)
        assert loaded.aging_bucket is AgingBucket.DPD_31_60
        assert loaded.bucket_entered_at == TODAY

        with pytest.raises(StoreError):
            obligations.update_bucket("missing", AgingBucket.DPD_31_60, TODAY)

    def test_owner_pause_flag(self, obligations):
        assert not obligations.is_outreach_paused(OWNER_ID)
        obligations.set_owner_paused(OWNER_ID, True)
        assert obligations.is_outreach_paused(OWNER_ID)
        obligations.set_owner_paused(OWNER_ID, False)
        assert not obligations.is_outreach_paused(OWNER_ID)


class TestWorkflowStore:
    def test_save_and_resolve(self, workflows):
        system = make_workflow(owner_id=None, offsets=[0, 10])
        custom = make_workflow(offsets=[2, 4, 8])
        workflows.save_workflow(system)
        workflows.save_workflow(custom)

        effective = workflows.get_effective_workflow(AgingBucket.DPD_1_30, OWNER_ID)
        assert effective.workflow_id == custom.workflow_id
        assert [s.day_offset for s in effective.ordered_steps] == [2, 4, 8]
        fallback = workflows.get_effective_workflow(AgingBucket.DPD_1_30, "other-owner")
        assert fallback.workflow_id == system.workflow_id

    def test_save_replaces_steps(self, workflows):
        workflow = make_workflow(offsets=[0, 7])
        workflows.save_workflow(workflow)
        workflow.steps = workflow.steps[:1]
        workflows.save_workflow(workflow)
        assert len(workflows.get_workflow(workflow.workflow_id).steps) == 1

    def test_seed_defaults(self, workflows):
        created = seed_default_workflows(workflows)
        assert len(created) == 6
        assert seed_default_workflows(workflows) == []
        stored = workflows.get_effective_workflow(AgingBucket.DPD_121_150, None)
        assert stored.locked
        assert [s.day_offset for s in stored.ordered_steps] == [0, 3, 7, 14, 21, 30]


class TestTemplateStore:
    def test_template_crud(self, templates):
        workflow = make_workflow()
        pending = make_template(workflow, workflow.steps[0], state=TemplateState.PENDING_APPROVAL)
        approved = make_template(workflow, workflow.steps[1])
        templates.insert_template(pending)
        templates.insert_template(approved)

        assert [t.template_id for t in templates.list_approved_templates(OWNER_ID)] == [
            approved.template_id
        ]
        assert len(templates.list_templates(OWNER_ID, AgingBucket.DPD_1_30)) == 2

        with pytest.raises(StoreError):
            templates.insert_template(pending)

        templates.delete_template(pending.template_id)
        assert templates.get_template(pending.template_id) is None

    def test_live_record_is_unique_per_pair(self, templates):
        record = DispatchRecord(obligation_id="o1", template_id="t1", owner_id=OWNER_ID, step_id="s1")
        templates.insert_dispatch_record(record)
        assert templates.has_dispatch_record("o1", "t1")

        with pytest.raises(DispatchConflictError):
            templates.insert_dispatch_record(
                DispatchRecord(obligation_id="o1", template_id="t1", owner_id=OWNER_ID, step_id="s1")
            )

    def test_failed_record_allows_retry(self, templates):
        record = DispatchRecord(obligation_id="o1", template_id="t1", owner_id=OWNER_ID, step_id="s1")
        templates.insert_dispatch_record(record)
        templates.update_dispatch_outcome(record.record_id, DispatchOutcome.FAILED, reason="timeout")
        assert not templates.has_dispatch_record("o1", "t1")

        retry = DispatchRecord(obligation_id="o1", template_id="t1", owner_id=OWNER_ID, step_id="s1")
        templates.insert_dispatch_record(retry)
        templates.update_dispatch_outcome(retry.record_id, DispatchOutcome.DELIVERED, message_id="m1")

        outcomes = {r.outcome for r in templates.list_dispatch_records("t1")}
        assert outcomes == {DispatchOutcome.FAILED, DispatchOutcome.DELIVERED}

    def test_delete_removes_only_pending_claims(self, templates):
        claim = DispatchRecord(obligation_id="o1", template_id="t1", owner_id=OWNER_ID, step_id="s1")
        templates.insert_dispatch_record(claim)
        templates.delete_dispatch_record(claim.record_id)
        assert not templates.has_dispatch_record("o1", "t1")

        sent = DispatchRecord(obligation_id="o2", template_id="t1", owner_id=OWNER_ID, step_id="s1")
        templates.insert_dispatch_record(sent)
        templates.update_dispatch_outcome(sent.record_id, DispatchOutcome.DELIVERED, message_id="m2")
        templates.delete_dispatch_record(sent.record_id)
        assert templates.has_dispatch_record("o2", "t1")
        assert [r.obligation_id for r in templates.list_dispatch_records("t1")] == ["o2"]


def test_dispatch_end_to_end_on_sqlite(obligations, workflows, templates):
    workflow = make_workflow(offsets=[0, 7])
    workflows.save_workflow(workflow)
    templates.insert_template(make_template(workflow, workflow.ordered_steps[0]))
    for _ in range(12):
        obligations.add(make_obligation(10, entered_days_ago=2))

    delivery = RecordingDelivery()
    engine = TemplateDispatchEngine(
        obligations,
        templates,
        WorkflowResolver(workflows),
        delivery,
        aggregator=BatchAggregator(chunk_size=5, max_workers=1),
    )

    first = engine.dispatch(OWNER_ID, TODAY)
    second = engine.dispatch(OWNER_ID, TODAY)

    assert first.sent == 12
    assert first.chunks_total == 3
    assert second.sent == 0
    assert len(templates.list_dispatch_records()) == 12
    assert len(delivery.sent) == 12
