"""End-to-end tests for the DunningEngine facade (in-memory stores)."""

import threading
from datetime import timedelta

import pytest

from agents.dunning import DunningEngine, FixedClock
from agents.dunning.dto import AgingBucket, TemplateState
from agents.dunning.errors import StoreUnavailableError
from agents.dunning.stores import InMemoryObligationStore
from tests.agents_dunning.factories import OWNER_ID, TODAY, make_obligation


@pytest.fixture
def engine(obligation_store, workflow_store, template_store, delivery, config, clock):
    return DunningEngine(
        obligation_store, workflow_store, template_store, delivery, config=config, clock=clock
    )


def test_full_daily_cycle(engine, obligation_store, template_store, delivery):
    engine.seed_default_workflows()
    fresh = make_obligation(3)
    aging = make_obligation(45)
    obligation_store.add(fresh)
    obligation_store.add(aging)

    reassigned = engine.reassign_buckets()
    assert reassigned.reassigned == 2

    generated = engine.generate_templates("dpd_1_30")
    assert generated.success
    assert generated.templates_created == 4

    # Nothing approved yet
    assert engine.dispatch_approved_templates().sent == 0

    for template in template_store.list_templates(OWNER_ID, AgingBucket.DPD_1_30):
        engine.lifecycle.approve(template.template_id)

    summary = engine.dispatch_approved_templates()
    assert summary.sent == 1
    assert delivery.sent[0][1].body.endswith("Best regards,\nAcme Supplies")
    assert engine.dispatch_approved_templates().sent == 0

    report = engine.count_step_populations()
    assert report.total == 2
    assert report.bucket_total(AgingBucket.DPD_1_30) == 1
    assert report.bucket_total(AgingBucket.DPD_31_60) == 1


def test_step_progression_across_days(
    obligation_store, workflow_store, template_store, delivery, config
):
    obligation = make_obligation(5)
    obligation_store.add(obligation)

    def engine_on(day):
        return DunningEngine(
            obligation_store,
            workflow_store,
            template_store,
            delivery,
            config=config,
            clock=FixedClock(day),
        )

    engine = engine_on(TODAY)
    engine.seed_default_workflows()
    engine.reassign_buckets()
    engine.generate_templates(AgingBucket.DPD_1_30)
    for template in template_store.list_templates(OWNER_ID, AgingBucket.DPD_1_30):
        engine.lifecycle.approve(template.template_id)

    sent_per_day = [
        engine_on(TODAY + timedelta(days=offset)).dispatch_approved_templates().sent
        for offset in range(0, 25)
    ]
    # Steps at day 0, 7, 14 (sms) and 21 each fire once
    assert sum(sent_per_day) == 4
    assert [i for i, sent in enumerate(sent_per_day) if sent] == [0, 7, 14, 21]


def test_generate_requires_owner(obligation_store, workflow_store, template_store, delivery, config):
    config.owner_id = None
    engine = DunningEngine(obligation_store, workflow_store, template_store, delivery, config=config)
    with pytest.raises(ValueError):
        engine.generate_templates(AgingBucket.DPD_1_30)


def test_generate_without_workflow_signals_creation(engine):
    summary = engine.generate_templates(AgingBucket.DPD_61_90)
    assert summary.needs_workflow
    assert not summary.success


def test_report_fails_when_obligations_unreadable(workflow_store, template_store, delivery, config, clock):
    class DownStore(InMemoryObligationStore):
        def list_eligible_obligations(self, owner_scope):
            raise StoreUnavailableError("database is locked")

    engine = DunningEngine(DownStore(), workflow_store, template_store, delivery, config=config, clock=clock)
    with pytest.raises(StoreUnavailableError):
        engine.count_step_populations()
    with pytest.raises(StoreUnavailableError):
        engine.reassign_buckets()


def test_cancel_before_run_processes_nothing(engine, obligation_store):
    for _ in range(5):
        obligation_store.add(make_obligation(20))
    engine.cancel()
    summary = engine.reassign_buckets()
    assert summary.cancelled
    assert summary.reassigned == 0


def test_progress_callback(obligation_store, workflow_store, template_store, delivery, config, clock):
    config.chunk_size = 2
    seen = []
    engine = DunningEngine(
        obligation_store,
        workflow_store,
        template_store,
        delivery,
        config=config,
        clock=clock,
        on_progress=seen.append,
        cancel_event=threading.Event(),
    )
    for _ in range(5):
        obligation_store.add(make_obligation(20))
    engine.reassign_buckets()
    assert [p.chunks_total for p in seen] == [3, 3, 3]


def test_generated_templates_are_pending(engine, template_store):
    engine.seed_default_workflows()
    engine.generate_templates(AgingBucket.DPD_150_PLUS, tone_modifier=4)
    templates = template_store.list_templates(OWNER_ID, AgingBucket.DPD_150_PLUS)
    assert len(templates) == 5
    assert all(t.state is TemplateState.PENDING_APPROVAL for t in templates)
    assert all(t.persona == "Rocco" for t in templates)
