"""Charge settlement and direct-debit retry scheduling."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from billing_engine.config import BillingConfig, get_billing_config
from billing_engine.models.billing import (
    Attempt,
    AttemptChannel,
    AttemptStatus,
    Charge,
    ChargeStatus,
    SubscriptionStatus,
)
from billing_engine.services.billing.anchor_runner import attempt_reference
from billing_engine.services.collections.direct_debit.adapter import (
    HARD_DECLINE_REASONS,
    DetailedReason,
)
from billing_engine.services.common import find_or_create
from billing_engine.services.events import EventType, emit_event

logger = logging.getLogger(__name__)

_COLLECTION_STATUSES = (SubscriptionStatus.past_due, SubscriptionStatus.suspended)


def _context(charge: Charge, actor: str | None) -> dict:
    return {
        "agency_id": charge.agency_id,
        "subscription_id": charge.subscription_id,
        "actor": actor or "system",
    }


def mark_charge_paid(
    db: Session,
    charge: Charge,
    *,
    channel: AttemptChannel,
    amount_ars: Decimal | None = None,
    reference: str | None = None,
    paid_at: datetime | None = None,
    actor: str | None = None,
) -> bool:
    """Settle a charge. Returns False when it was already paid."""
    if charge.status == ChargeStatus.paid:
        return False
    charge.status = ChargeStatus.paid
    charge.amount_ars_paid = amount_ars if amount_ars is not None else charge.amount_ars_due
    charge.paid_at = paid_at or datetime.now(UTC)
    charge.paid_reference = reference
    charge.paid_via_channel = channel

    pending_attempts = (
        db.query(Attempt)
        .filter(Attempt.charge_id == charge.id)
        .filter(Attempt.status == AttemptStatus.pending)
        .all()
    )
    for attempt in pending_attempts:
        attempt.status = AttemptStatus.canceled
    subscription = charge.subscription
    if subscription is not None and subscription.status in _COLLECTION_STATUSES:
        subscription.status = SubscriptionStatus.active
    db.flush()

    emit_event(
        db,
        EventType.charge_paid,
        {
            "charge_id": str(charge.id),
            "amount_ars_paid": str(charge.amount_ars_paid),
            "paid_reference": reference,
            "channel": channel.value,
        },
        **_context(charge, actor),
    )
    return True


def mark_charge_failed(
    db: Session, charge: Charge, reason: str, actor: str | None = None
) -> bool:
    if charge.status != ChargeStatus.pending:
        return False
    charge.status = ChargeStatus.failed
    charge.failed_at = datetime.now(UTC)
    subscription = charge.subscription
    if subscription is not None and subscription.status == SubscriptionStatus.active:
        subscription.status = SubscriptionStatus.past_due
    db.flush()
    emit_event(
        db,
        EventType.charge_failed,
        {
            "charge_id": str(charge.id),
            "reason": reason,
            "dunning_stage": charge.dunning_stage,
        },
        **_context(charge, actor),
    )
    logger.info("Charge %s failed: %s", charge.id, reason)
    return True


class Dunning:
    @staticmethod
    def retry_date(charge: Charge, attempt_no: int, config: BillingConfig, today: date) -> date:
        offset = config.retry_days[attempt_no - 2]
        base = charge.due_date or today
        return max(base + timedelta(days=offset), today)

    @staticmethod
    def handle_rejection(
        db: Session,
        attempt: Attempt,
        reason: DetailedReason | None,
        config: BillingConfig | None = None,
        today: date | None = None,
        actor: str | None = None,
    ) -> dict:
        """Schedule the next direct-debit attempt or fail the charge."""
        config = config or get_billing_config()
        today = today or datetime.now(UTC).date()
        charge = attempt.charge
        if charge.status != ChargeStatus.pending:
            return {"action": "none"}
        charge.dunning_stage = max(charge.dunning_stage or 0, attempt.attempt_no)

        next_no = attempt.attempt_no + 1
        if reason in HARD_DECLINE_REASONS:
            mark_charge_failed(db, charge, f"hard decline: {reason.value}", actor)
            return {"action": "failed"}
        if next_no > config.max_direct_debit_attempts:
            mark_charge_failed(db, charge, "direct debit retries exhausted", actor)
            return {"action": "failed"}

        scheduled = Dunning.retry_date(charge, next_no, config, today)
        retry, created = find_or_create(
            db,
            Attempt,
            {"charge_id": charge.id, "attempt_no": next_no},
            {
                "channel": AttemptChannel.direct_debit,
                "payment_method_id": attempt.payment_method_id,
                "status": AttemptStatus.pending,
                "external_reference": attempt_reference(charge.id, next_no),
                "amount_ars": charge.amount_ars_due,
                "scheduled_for": scheduled,
            },
        )
        if created:
            emit_event(
                db,
                EventType.attempt_retry_scheduled,
                {
                    "charge_id": str(charge.id),
                    "attempt_id": str(retry.id),
                    "attempt_no": next_no,
                    "scheduled_for": scheduled.isoformat(),
                    "previous_reason": reason.value if reason else None,
                },
                **_context(charge, actor),
            )
        return {"action": "retry", "attempt_id": str(retry.id), "created": created}

    @staticmethod
    def sweep(
        db: Session,
        config: BillingConfig | None = None,
        today: date | None = None,
        actor: str | None = None,
    ) -> dict:
        """Re-run rejection handling for pending charges whose latest attempt
        was rejected without a follow-up (for example after an interrupted
        reconciliation)."""
        config = config or get_billing_config()
        summary = {"charges_checked": 0, "retries_scheduled": 0, "charges_failed": 0, "errors": 0}
        charges = db.query(Charge).filter(Charge.status == ChargeStatus.pending).all()
        for charge in charges:
            direct = [a for a in charge.attempts if a.channel == AttemptChannel.direct_debit]
            if not direct or direct[-1].status != AttemptStatus.rejected:
                continue
            summary["charges_checked"] += 1
            latest = direct[-1]
            reason = None
            if latest.detailed_reason:
                reason = DetailedReason(latest.detailed_reason)
            try:
                with db.begin_nested():
                    outcome = Dunning.handle_rejection(db, latest, reason, config, today, actor)
            except Exception:
                logger.exception("Dunning sweep failed for charge %s", charge.id)
                summary["errors"] += 1
                continue
            if outcome["action"] == "retry" and outcome["created"]:
                summary["retries_scheduled"] += 1
            elif outcome["action"] == "failed":
                summary["charges_failed"] += 1
        db.commit()
        return summary


dunning = Dunning()
