"""Aging bucket classification.

Maps days past due (DPD) onto the ordered bucket interval table. All
functions are pure and deterministic for a given reference date.
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from datetime import date, datetime

from .clock import to_local_date
from .dto import AgingBucket

BUCKET_ORDER: tuple[AgingBucket, ...] = tuple(sorted(AgingBucket, key=lambda b: b.low))
_LOWER_BOUNDS: list[int] = [bucket.low for bucket in BUCKET_ORDER]


def validate_partition(buckets: tuple[AgingBucket, ...] = BUCKET_ORDER) -> None:
    """Check that the bucket table covers [0, inf) without gaps or overlaps.

    Raises:
        ValueError: If the table is not a partition
    """
    if not buckets or buckets[0].low != 0:
        raise ValueError("bucket table must start at DPD 0")

    for previous, current in zip(buckets, buckets[1:]):
        if previous.high is None:
            raise ValueError(f"open-ended bucket {previous.value} must be last")
        if current.low != previous.high + 1:
            raise ValueError(
                f"buckets {previous.value} and {current.value} leave a gap or overlap"
            )

    if buckets[-1].high is not None:
        raise ValueError("last bucket must be open-ended")


validate_partition()


@dataclass(frozen=True)
class BucketAssignment:
    """Classification result for one obligation."""

    bucket: AgingBucket
    days_past_due: int


def days_past_due(due_date: date | datetime, today: date, timezone: str = "UTC") -> int:
    """Whole days past due, floored at zero."""
    due = to_local_date(due_date, timezone)
    return max(0, (today - due).days)


def bucket_for_dpd(dpd: int) -> AgingBucket:
    """Return the single bucket whose interval contains ``dpd``."""
    if dpd < 0:
        dpd = 0
    index = bisect_right(_LOWER_BOUNDS, dpd) - 1
    return BUCKET_ORDER[index]


def classify(due_date: date | datetime, today: date, timezone: str = "UTC") -> BucketAssignment:
    """Classify a due date against the reference day.

    Args:
        due_date: Obligation due date (timestamps are reduced to a day)
        today: Reference date of the run
        timezone: Timezone used to reduce aware timestamps

    Returns:
        Bucket assignment with the computed DPD
    """
    dpd = days_past_due(due_date, today, timezone)
    return BucketAssignment(bucket=bucket_for_dpd(dpd), days_past_due=dpd)


def escalation_rank(bucket: AgingBucket | None) -> int:
    """Position of the bucket in aging order (missing bucket ranks as current)."""
    if bucket is None:
        return 0
    return BUCKET_ORDER.index(bucket)


def is_escalation(previous: AgingBucket | None, new: AgingBucket) -> bool:
    return escalation_rank(new) > escalation_rank(previous)
