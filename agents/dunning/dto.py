"""Data Transfer Objects for the dunning workflow engine.

Provides type-safe data structures for obligations, aging buckets,
workflows, draft templates, dispatch records and the run summaries
returned by the engine operations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from .clock import to_local_date


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ObligationStatus(Enum):
    """Lifecycle status of an obligation."""

    OPEN = "Open"
    IN_PAYMENT_PLAN = "InPaymentPlan"
    PAID = "Paid"
    DISPUTED = "Disputed"
    SETTLED = "Settled"
    CANCELED = "Canceled"

    @property
    def outreach_eligible(self) -> bool:
        return self in (ObligationStatus.OPEN, ObligationStatus.IN_PAYMENT_PLAN)


class AgingBucket(Enum):
    """Aging bucket enumeration.

    Each member carries a closed DPD interval; the last bucket is
    open-ended. Values are the storage keys.
    """

    CURRENT = "current"
    DPD_1_30 = "dpd_1_30"
    DPD_31_60 = "dpd_31_60"
    DPD_61_90 = "dpd_61_90"
    DPD_91_120 = "dpd_91_120"
    DPD_121_150 = "dpd_121_150"
    DPD_150_PLUS = "dpd_150_plus"

    @property
    def low(self) -> int:
        return _BUCKET_INTERVALS[self][0]

    @property
    def high(self) -> int | None:
        """Inclusive upper bound, None for the open-ended bucket."""
        return _BUCKET_INTERVALS[self][1]

    @property
    def label(self) -> str:
        if self is AgingBucket.CURRENT:
            return "Current"
        if self.high is None:
            return f"{self.low}+ days"
        return f"{self.low}-{self.high} days"

    def contains(self, dpd: int) -> bool:
        return dpd >= self.low and (self.high is None or dpd <= self.high)

    @classmethod
    def from_key(cls, key: str) -> "AgingBucket":
        """Parse a stored bucket key, accepting the legacy alias for 151+."""
        normalized = key.strip().lower()
        if normalized == "dpd_151_plus":
            return cls.DPD_150_PLUS
        try:
            return cls(normalized)
        except ValueError as err:
            raise ValueError(f"Unknown aging bucket: {key}") from err


_BUCKET_INTERVALS: dict[AgingBucket, tuple[int, int | None]] = {
    AgingBucket.CURRENT: (0, 0),
    AgingBucket.DPD_1_30: (1, 30),
    AgingBucket.DPD_31_60: (31, 60),
    AgingBucket.DPD_61_90: (61, 90),
    AgingBucket.DPD_91_120: (91, 120),
    AgingBucket.DPD_121_150: (121, 150),
    AgingBucket.DPD_150_PLUS: (151, None),
}


class Channel(Enum):
    """Communication channel enumeration."""

    EMAIL = "email"
    SMS = "sms"


class TemplateState(Enum):
    """Draft template lifecycle state."""

    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    DISCARDED = "discarded"


class DispatchOutcome(Enum):
    """Outcome stored on a dispatch record.

    PENDING marks a claimed pair whose delivery has not completed yet.
    """

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class Contact:
    """A contact person attached to the debtor of an obligation."""

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    outreach_enabled: bool = True
    is_primary: bool = False


@dataclass
class Obligation:
    """Represents an overdue financial obligation (invoice)."""

    obligation_id: str
    owner_id: str
    invoice_number: str
    due_date: date
    amount_cents: int = 0
    currency: str = "USD"
    status: ObligationStatus = ObligationStatus.OPEN
    aging_bucket: AgingBucket | None = None
    bucket_entered_at: date | None = None
    created_at: datetime | None = None
    customer_name: str | None = None
    outreach_paused: bool = False
    contacts: list[Contact] = field(default_factory=list)

    @property
    def is_eligible(self) -> bool:
        return self.status.outreach_eligible

    @property
    def amount_str(self) -> str:
        return f"{self.amount_cents / 100:.2f}"

    def entry_date(self, timezone: str = "UTC") -> date | None:
        """Bucket-entry date in ``timezone``, falling back to the creation date."""
        if self.bucket_entered_at is not None:
            return to_local_date(self.bucket_entered_at, timezone)
        if self.created_at is not None:
            return to_local_date(self.created_at, timezone)
        return None

    def recipients(self, channel: Channel) -> list[str]:
        """Addresses of outreach-enabled contacts for the channel."""
        addresses: list[str] = []
        for contact in sorted(self.contacts, key=lambda c: not c.is_primary):
            if not contact.outreach_enabled:
                continue
            address = contact.email if channel is Channel.EMAIL else contact.phone
            if address and address not in addresses:
                addresses.append(address)
        return addresses

    def primary_contact_name(self) -> str:
        for contact in sorted(self.contacts, key=lambda c: not c.is_primary):
            if contact.outreach_enabled and contact.name:
                return contact.name
        return self.customer_name or ""


@dataclass(frozen=True)
class Step:
    """A single outreach stage within a workflow."""

    step_id: str
    workflow_id: str
    sequence: int
    day_offset: int
    channel: Channel = Channel.EMAIL
    template_type: str = "payment_reminder"
    label: str = ""


@dataclass
class Workflow:
    """An ordered sequence of steps configured for one aging bucket."""

    workflow_id: str
    bucket: AgingBucket
    owner_id: str | None = None
    name: str = ""
    description: str = ""
    active: bool = True
    locked: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    steps: list[Step] = field(default_factory=list)

    @property
    def is_system_default(self) -> bool:
        return self.owner_id is None

    @property
    def ordered_steps(self) -> list[Step]:
        return sorted(self.steps, key=lambda s: s.sequence)


@dataclass
class DraftTemplate:
    """Message template scoped to a bucket and a workflow step."""

    owner_id: str
    bucket: AgingBucket
    workflow_id: str
    step_id: str
    channel: Channel
    subject_template: str
    body_template: str
    template_id: str = field(default_factory=_new_id)
    state: TemplateState = TemplateState.PENDING_APPROVAL
    step_sequence: int = 0
    day_offset: int = 0
    persona: str | None = None
    tone_modifier: int | None = None
    approach_style: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def dispatchable(self) -> bool:
        return self.state is TemplateState.APPROVED


@dataclass
class DispatchRecord:
    """Audit record asserting an obligation received a template's content."""

    obligation_id: str
    template_id: str
    owner_id: str
    step_id: str
    channel: Channel = Channel.EMAIL
    outcome: DispatchOutcome = DispatchOutcome.PENDING
    record_id: str = field(default_factory=_new_id)
    reason: str | None = None
    message_id: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def blocks_redispatch(self) -> bool:
        return self.outcome is not DispatchOutcome.FAILED


@dataclass
class ReassignmentSummary:
    """Result of a bucket reassignment run."""

    reassigned: int = 0
    skipped: int = 0
    errors: int = 0
    error_details: list[str] = field(default_factory=list)
    bucket_changes: dict[str, int] = field(default_factory=dict)
    escalations: int = 0
    cancelled: bool = False
    chunks_total: int = 0
    chunks_completed: int = 0

    def merge(self, other: "ReassignmentSummary") -> "ReassignmentSummary":
        changes = dict(self.bucket_changes)
        for key, count in other.bucket_changes.items():
            changes[key] = changes.get(key, 0) + count
        return ReassignmentSummary(
            reassigned=self.reassigned + other.reassigned,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
            error_details=self.error_details + other.error_details,
            bucket_changes=changes,
            escalations=self.escalations + other.escalations,
        )

    @classmethod
    def failed_chunk(cls, size: int, reason: str) -> "ReassignmentSummary":
        return cls(errors=size, error_details=[reason])

    def to_dict(self) -> dict[str, Any]:
        return {
            "reassigned": self.reassigned,
            "skipped": self.skipped,
            "errors": self.errors,
            "error_details": self.error_details,
            "bucket_changes": self.bucket_changes,
            "escalations": self.escalations,
            "cancelled": self.cancelled,
            "chunks_total": self.chunks_total,
            "chunks_completed": self.chunks_completed,
        }


@dataclass
class DispatchSummary:
    """Result of a template dispatch run."""

    sent: int = 0
    skipped: int = 0
    errors: int = 0
    error_details: list[str] = field(default_factory=list)
    processed: int = 0
    configuration_errors: list[str] = field(default_factory=list)
    has_more: bool = False
    cancelled: bool = False
    chunks_total: int = 0
    chunks_completed: int = 0

    def merge(self, other: "DispatchSummary") -> "DispatchSummary":
        return DispatchSummary(
            sent=self.sent + other.sent,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
            error_details=self.error_details + other.error_details,
            processed=self.processed + other.processed,
            configuration_errors=self.configuration_errors
            + [e for e in other.configuration_errors if e not in self.configuration_errors],
        )

    @classmethod
    def failed_chunk(cls, size: int, reason: str) -> "DispatchSummary":
        return cls(errors=size, error_details=[reason])

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent": self.sent,
            "skipped": self.skipped,
            "errors": self.errors,
            "error_details": self.error_details,
            "processed": self.processed,
            "configuration_errors": self.configuration_errors,
            "has_more": self.has_more,
            "cancelled": self.cancelled,
            "chunks_total": self.chunks_total,
            "chunks_completed": self.chunks_completed,
        }


@dataclass
class GenerationSummary:
    """Result of generating draft templates for one bucket."""

    success: bool
    templates_created: int = 0
    errors: list[str] = field(default_factory=list)
    needs_workflow: bool = False
    workflow_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "templates_created": self.templates_created,
            "errors": self.errors,
            "needs_workflow": self.needs_workflow,
            "workflow_id": self.workflow_id,
        }
