"""Aging bucket classification tests."""

from datetime import UTC, date, datetime, timedelta

import pytest

from agents.dunning.buckets import (
    BUCKET_ORDER,
    bucket_for_dpd,
    classify,
    days_past_due,
    is_escalation,
    validate_partition,
)
from agents.dunning.dto import AgingBucket

TODAY = date(2025, 3, 1)


class TestBucketTable:
    def test_every_dpd_maps_to_exactly_one_bucket(self):
        for dpd in range(0, 400):
            matches = [b for b in AgingBucket if b.contains(dpd)]
            assert len(matches) == 1, dpd
            assert bucket_for_dpd(dpd) is matches[0]

    def test_table_is_a_partition(self):
        validate_partition()
        assert BUCKET_ORDER[0] is AgingBucket.CURRENT
        assert BUCKET_ORDER[-1] is AgingBucket.DPD_150_PLUS

    def test_gap_is_rejected(self):
        with pytest.raises(ValueError):
            validate_partition((AgingBucket.CURRENT, AgingBucket.DPD_31_60))

    @pytest.mark.parametrize(
        "dpd,expected",
        [
            (0, AgingBucket.CURRENT),
            (1, AgingBucket.DPD_1_30),
            (30, AgingBucket.DPD_1_30),
            (31, AgingBucket.DPD_31_60),
            (60, AgingBucket.DPD_31_60),
            (61, AgingBucket.DPD_61_90),
            (120, AgingBucket.DPD_91_120),
            (150, AgingBucket.DPD_121_150),
            (151, AgingBucket.DPD_150_PLUS),
            (5000, AgingBucket.DPD_150_PLUS),
        ],
    )
    def test_boundaries(self, dpd, expected):
        assert bucket_for_dpd(dpd) is expected

    def test_labels(self):
        assert AgingBucket.CURRENT.label == "Current"
        assert AgingBucket.DPD_31_60.label == "31-60 days"
        assert AgingBucket.DPD_150_PLUS.label == "151+ days"


class TestClassify:
    def test_due_today_is_current(self):
        assignment = classify(TODAY, TODAY)
        assert assignment.bucket is AgingBucket.CURRENT
        assert assignment.days_past_due == 0

    def test_future_due_date_floors_at_zero(self):
        assert days_past_due(TODAY + timedelta(days=12), TODAY) == 0
        assert classify(TODAY + timedelta(days=12), TODAY).bucket is AgingBucket.CURRENT

    def test_thirty_and_thirty_one_days(self):
        assert classify(TODAY - timedelta(days=30), TODAY).bucket is AgingBucket.DPD_1_30
        assert classify(TODAY - timedelta(days=31), TODAY).bucket is AgingBucket.DPD_31_60

    def test_aware_timestamp_uses_local_calendar_day(self):
        # 23:30 UTC on Feb 27 is already Feb 28 in Berlin
        due = datetime(2025, 2, 27, 23, 30, tzinfo=UTC)
        assert days_past_due(due, TODAY, "UTC") == 2
        assert days_past_due(due, TODAY, "Europe/Berlin") == 1

    def test_classification_is_deterministic(self):
        due = TODAY - timedelta(days=45)
        assert classify(due, TODAY) == classify(due, TODAY)


class TestBucketKeys:
    def test_legacy_alias_parses_to_open_ended_bucket(self):
        assert AgingBucket.from_key("dpd_151_plus") is AgingBucket.DPD_150_PLUS
        assert AgingBucket.from_key("DPD_150_PLUS") is AgingBucket.DPD_150_PLUS

    def test_unknown_key_raises(self):
        with pytest.raises(ValueError, match="Unknown aging bucket"):
            AgingBucket.from_key("dpd_7_14")


class TestEscalation:
    def test_moving_to_older_bucket_is_escalation(self):
        assert is_escalation(AgingBucket.DPD_1_30, AgingBucket.DPD_31_60)
        assert not is_escalation(AgingBucket.DPD_31_60, AgingBucket.DPD_1_30)
        assert not is_escalation(AgingBucket.DPD_31_60, AgingBucket.DPD_31_60)
