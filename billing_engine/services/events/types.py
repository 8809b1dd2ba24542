"""Event types and data structures for the billing event log.

Event naming convention: {entity}.{action}
"""

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4


class EventType(enum.Enum):
    """All billing domain event types."""

    # Anchor runner
    billing_cycle_created = "billing_cycle.created"
    charge_created = "charge.created"
    attempt_created = "attempt.created"

    # Subscriptions
    subscription_status_changed = "subscription.status_changed"

    # Mandates
    mandate_status_changed = "mandate.status_changed"
    mandate_rejected = "mandate.rejected"
    mandate_revoked = "mandate.revoked"

    # Direct debit
    pd_batch_outbound_created = "pd_batch.outbound_created"
    pd_batch_inbound_imported = "pd_batch.inbound_imported"
    attempt_paid = "attempt.paid"
    attempt_rejected = "attempt.rejected"
    attempt_retry_scheduled = "attempt.retry_scheduled"

    # Charges
    charge_paid = "charge.paid"
    charge_failed = "charge.failed"
    charge_canceled = "charge.canceled"

    # Fiscal
    fiscal_document_issued = "fiscal_document.issued"
    fiscal_document_failed = "fiscal_document.failed"

    # Fallback
    fallback_intent_created = "fallback_intent.created"
    fallback_intent_paid = "fallback_intent.paid"
    fallback_intent_expired = "fallback_intent.expired"
    fallback_intent_canceled = "fallback_intent.canceled"
    fallback_intent_failed = "fallback_intent.failed"


@dataclass
class Event:
    """A billing domain event with its scoping context."""

    event_type: EventType
    payload: dict[str, Any]
    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    actor: str | None = None
    agency_id: UUID | None = None
    subscription_id: UUID | None = None
