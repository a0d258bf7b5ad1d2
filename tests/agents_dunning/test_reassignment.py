"""Bucket reassignment job tests."""

import threading
from datetime import timedelta

import pytest

from agents.dunning.batch import BatchAggregator
from agents.dunning.dto import AgingBucket, ObligationStatus
from agents.dunning.errors import ReassignmentInProgressError, StoreError
from agents.dunning.reassignment import BucketReassigner
from agents.dunning.stores import InMemoryObligationStore
from backend.core.observability import metrics
from tests.agents_dunning.factories import OWNER_ID, TODAY, make_obligation


def _reassigner(store, workers=1) -> BucketReassigner:
    return BucketReassigner(
        store, BatchAggregator(chunk_size=10, max_workers=workers), lock=threading.Lock()
    )


def test_new_obligations_get_bucket_and_entry_date(obligation_store):
    obligation = make_obligation(45)
    obligation_store.add(obligation)

    summary = _reassigner(obligation_store).reassign(OWNER_ID, TODAY)

    stored = obligation_store.get(obligation.obligation_id)
    assert stored.aging_bucket is AgingBucket.DPD_31_60
    assert stored.bucket_entered_at == TODAY
    assert summary.reassigned == 1
    assert summary.bucket_changes == {"none->dpd_31_60": 1}
    assert summary.escalations == 0


def test_unchanged_bucket_is_skipped_and_entry_date_kept(obligation_store):
    obligation = make_obligation(12, entered_days_ago=5)
    obligation_store.add(obligation)

    summary = _reassigner(obligation_store).reassign(OWNER_ID, TODAY)

    assert summary.skipped == 1
    assert summary.reassigned == 0
    assert obligation_store.get(obligation.obligation_id).bucket_entered_at == TODAY - timedelta(days=5)


def test_escalation_histogram(obligation_store):
    obligation_store.add(make_obligation(31, bucket=AgingBucket.DPD_1_30, entered_days_ago=30))
    obligation_store.add(make_obligation(32, bucket=AgingBucket.DPD_1_30, entered_days_ago=30))
    obligation_store.add(make_obligation(61, bucket=AgingBucket.DPD_31_60, entered_days_ago=30))
    obligation_store.add(make_obligation(3))

    summary = _reassigner(obligation_store).reassign(OWNER_ID, TODAY)

    assert summary.reassigned == 4
    assert summary.escalations == 3
    assert summary.bucket_changes == {
        "dpd_1_30->dpd_31_60": 2,
        "dpd_31_60->dpd_61_90": 1,
        "none->dpd_1_30": 1,
    }
    assert metrics.get_counter("dunning_reassigned_total") == 4
    assert metrics.get_counter("dunning_escalations_total") == 3


def test_entry_date_never_moves_backwards(obligation_store):
    # Entry recorded in the future (clock skew on a previous run)
    obligation = make_obligation(40, bucket=AgingBucket.DPD_1_30)
    obligation.bucket_entered_at = TODAY + timedelta(days=2)
    obligation_store.add(obligation)

    _reassigner(obligation_store).reassign(OWNER_ID, TODAY)

    assert obligation_store.get(obligation.obligation_id).bucket_entered_at == TODAY + timedelta(days=2)


def test_ineligible_and_foreign_obligations_are_untouched(obligation_store):
    paid = make_obligation(40, status=ObligationStatus.PAID)
    foreign = make_obligation(40, owner_id="other-owner")
    obligation_store.add(paid)
    obligation_store.add(foreign)

    summary = _reassigner(obligation_store).reassign(OWNER_ID, TODAY)

    assert summary.reassigned == 0
    assert obligation_store.get(paid.obligation_id).aging_bucket is None
    assert obligation_store.get(foreign.obligation_id).aging_bucket is None


def test_store_errors_are_counted_per_obligation():
    class FlakyStore(InMemoryObligationStore):
        def update_bucket(self, obligation_id, bucket, bucket_entered_at):
            if obligation_id.endswith("7"):
                raise StoreError("write timeout")
            super().update_bucket(obligation_id, bucket, bucket_entered_at)

    store = FlakyStore([make_obligation(20, obligation_id=f"obl-{i:02d}") for i in range(20)])
    summary = _reassigner(store, workers=2).reassign(OWNER_ID, TODAY)

    assert summary.errors == 2
    assert summary.reassigned == 18
    assert len(summary.error_details) == 2
    assert summary.chunks_total == 2


def test_concurrent_run_is_rejected(obligation_store):
    lock = threading.Lock()
    reassigner = BucketReassigner(obligation_store, lock=lock)
    lock.acquire()
    try:
        with pytest.raises(ReassignmentInProgressError):
            reassigner.reassign(OWNER_ID, TODAY)
    finally:
        lock.release()

    reassigner.reassign(OWNER_ID, TODAY)
    assert not lock.locked()


def test_rerun_is_a_no_op(obligation_store):
    for dpd in (0, 15, 45, 200):
        obligation_store.add(make_obligation(dpd))
    reassigner = _reassigner(obligation_store)
    assert reassigner.reassign(OWNER_ID, TODAY).reassigned == 4

    again = reassigner.reassign(OWNER_ID, TODAY)
    assert again.reassigned == 0
    assert again.skipped == 4
