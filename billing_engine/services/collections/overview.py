"""Collection status of subscriptions and daily collection metrics.

A subscription is judged by its latest charge: once the anchor day has
passed without payment it is past due, and after ``suspend_after_days``
full local days it is suspended. Days are counted in the subscription's
own timezone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta

from sqlalchemy import distinct, func
from sqlalchemy.orm import Session

from billing_engine.config import BillingConfig, get_billing_config
from billing_engine.models.billing import (
    Attempt,
    AttemptChannel,
    AttemptStatus,
    Charge,
    ChargeStatus,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.models.collections import (
    FallbackIntent,
    FallbackIntentStatus,
    FileBatch,
    FileBatchDirection,
)
from billing_engine.services.billing.dates import local_date, start_of_local_day
from billing_engine.services.common import get_or_404
from billing_engine.services.events import EventType, emit_event

logger = logging.getLogger(__name__)

_SETTLED_CHARGE_STATUSES = (ChargeStatus.paid, ChargeStatus.canceled)
_OPEN_CHARGE_STATUSES = (ChargeStatus.pending, ChargeStatus.failed)
_SEVERITY = {
    SubscriptionStatus.active: 0,
    SubscriptionStatus.past_due: 1,
    SubscriptionStatus.suspended: 2,
}


@dataclass(frozen=True)
class CollectionStatus:
    status: SubscriptionStatus
    in_collection: bool = False
    is_past_due: bool = False
    is_suspended: bool = False
    retries_exhausted: bool = False
    anchor_date: date | None = None
    days_since_anchor: int | None = None
    next_attempt_at: date | None = None

    def as_dict(self) -> dict:
        return {
            "status": self.status.value,
            "in_collection": self.in_collection,
            "is_past_due": self.is_past_due,
            "is_suspended": self.is_suspended,
            "retries_exhausted": self.retries_exhausted,
            "anchor_date": self.anchor_date.isoformat() if self.anchor_date else None,
            "days_since_anchor": self.days_since_anchor,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
        }


def _charge_anchor(charge: Charge) -> date | None:
    if charge.cycle is not None:
        return charge.cycle.anchor_date
    return charge.due_date


def compute_collection_status(
    charge: Charge | None, today: date, suspend_after_days: int
) -> CollectionStatus:
    """Derive the collection status from a subscription's latest charge.

    ``today`` is the local date in the subscription's timezone. Pending
    attempts scheduled for today or later give ``next_attempt_at``; when all
    of them lie in the past the retries are exhausted and the last one is
    reported instead.
    """
    attempts = sorted(charge.attempts, key=lambda a: a.attempt_no) if charge else []
    pending = [a for a in attempts if a.status == AttemptStatus.pending and a.scheduled_for]

    retries_exhausted = False
    next_attempt_at = None
    if pending:
        upcoming = sorted(a.scheduled_for for a in pending if a.scheduled_for >= today)
        if upcoming:
            next_attempt_at = upcoming[0]
        else:
            retries_exhausted = True
            next_attempt_at = pending[-1].scheduled_for

    anchor = _charge_anchor(charge) if charge is not None else None
    if (
        charge is None
        or anchor is None
        or charge.status in _SETTLED_CHARGE_STATUSES
        or charge.paid_at is not None
    ):
        return CollectionStatus(
            status=SubscriptionStatus.active,
            retries_exhausted=retries_exhausted,
            anchor_date=anchor,
            next_attempt_at=next_attempt_at,
        )

    days_since_anchor = (today - anchor).days
    is_past_due = today >= anchor + timedelta(days=1)
    is_suspended = days_since_anchor >= max(1, suspend_after_days)
    if is_suspended:
        status = SubscriptionStatus.suspended
    elif is_past_due:
        status = SubscriptionStatus.past_due
    else:
        status = SubscriptionStatus.active
    return CollectionStatus(
        status=status,
        in_collection=True,
        is_past_due=is_past_due,
        is_suspended=is_suspended,
        retries_exhausted=retries_exhausted,
        anchor_date=anchor,
        days_since_anchor=days_since_anchor,
        next_attempt_at=next_attempt_at,
    )


def latest_charge(db: Session, subscription_id) -> Charge | None:
    return (
        db.query(Charge)
        .filter(Charge.subscription_id == subscription_id)
        .order_by(Charge.due_date.desc(), Charge.created_at.desc())
        .first()
    )


class CollectionOverview:
    @staticmethod
    def for_subscription(
        db: Session,
        subscription_id,
        now: datetime | None = None,
        config: BillingConfig | None = None,
    ) -> dict:
        config = config or get_billing_config()
        subscription = get_or_404(db, Subscription, subscription_id, "Subscription not found")
        tz_name = subscription.timezone_name or config.default_timezone
        today = local_date(now or datetime.now(UTC), tz_name)
        charge = latest_charge(db, subscription.id)
        computed = compute_collection_status(charge, today, config.suspend_after_days)
        return {
            "subscription_id": str(subscription.id),
            "timezone": tz_name,
            "today": today.isoformat(),
            "stored_status": subscription.status.value,
            "charge_id": str(charge.id) if charge else None,
            **computed.as_dict(),
        }

    @staticmethod
    def sync_statuses(
        db: Session,
        now: datetime | None = None,
        config: BillingConfig | None = None,
        actor: str | None = None,
    ) -> dict:
        """Escalate unpaid subscriptions and reactivate settled ones.

        A charge failed by dunning already marks its subscription past due
        before the grace day ends, so statuses are only lowered once the
        latest charge is settled.
        """
        config = config or get_billing_config()
        now = now or datetime.now(UTC)
        summary = {"subscriptions_checked": 0, "updated": 0, "transitions": {}}
        subscriptions = (
            db.query(Subscription)
            .filter(Subscription.is_active.is_(True))
            .filter(Subscription.status.in_(list(_SEVERITY)))
            .order_by(Subscription.created_at.asc())
            .all()
        )
        for subscription in subscriptions:
            summary["subscriptions_checked"] += 1
            tz_name = subscription.timezone_name or config.default_timezone
            computed = compute_collection_status(
                latest_charge(db, subscription.id),
                local_date(now, tz_name),
                config.suspend_after_days,
            )
            current = subscription.status
            escalate = _SEVERITY[computed.status] > _SEVERITY[current]
            reactivate = not computed.in_collection and current != SubscriptionStatus.active
            if not (escalate or reactivate):
                continue
            subscription.status = computed.status
            transition = f"{current.value}->{computed.status.value}"
            summary["transitions"][transition] = summary["transitions"].get(transition, 0) + 1
            summary["updated"] += 1
            emit_event(
                db,
                EventType.subscription_status_changed,
                {
                    "from_status": current.value,
                    "to_status": computed.status.value,
                    "days_since_anchor": computed.days_since_anchor,
                },
                actor=actor or "system",
                agency_id=subscription.agency_id,
                subscription_id=subscription.id,
            )
            logger.info(
                "Subscription %s status %s -> %s",
                subscription.id,
                current.value,
                computed.status.value,
            )
        db.commit()
        return summary

    @staticmethod
    def daily_metrics(db: Session, today: date, tz_name: str) -> dict:
        """Collection counters for the local day ``today`` in ``tz_name``."""
        start = start_of_local_day(today, tz_name)
        end = start_of_local_day(today + timedelta(days=1), tz_name)
        last_30_start = start_of_local_day(today - timedelta(days=30), tz_name)

        def count(query) -> int:
            return query.scalar() or 0

        charges = db.query(func.count(Charge.id))
        attempts = db.query(func.count(Attempt.id))
        batches = db.query(func.count(FileBatch.id))
        intents = db.query(func.count(FallbackIntent.id))
        return {
            "pending_attempts": count(attempts.filter(Attempt.status == AttemptStatus.pending)),
            "processing_attempts": count(
                attempts.filter(Attempt.status == AttemptStatus.processing)
            ),
            "paid_today": count(
                charges.filter(Charge.status == ChargeStatus.paid)
                .filter(Charge.paid_at >= start)
                .filter(Charge.paid_at < end)
            ),
            "rejected_today": count(
                attempts.filter(Attempt.status == AttemptStatus.rejected)
                .filter(Attempt.processed_at >= start)
                .filter(Attempt.processed_at < end)
            ),
            "overdue_charges": count(
                charges.filter(Charge.status.in_(_OPEN_CHARGE_STATUSES)).filter(
                    Charge.due_date < today
                )
            ),
            "batches_prepared_today": count(
                batches.filter(FileBatch.direction == FileBatchDirection.outbound)
                .filter(FileBatch.created_at >= start)
                .filter(FileBatch.created_at < end)
            ),
            "batches_exported_today": count(
                batches.filter(FileBatch.direction == FileBatchDirection.outbound)
                .filter(FileBatch.exported_at >= start)
                .filter(FileBatch.exported_at < end)
            ),
            "batches_imported_today": count(
                batches.filter(FileBatch.direction == FileBatchDirection.inbound)
                .filter(FileBatch.imported_at >= start)
                .filter(FileBatch.imported_at < end)
            ),
            "charges_fallback_offered": count(
                db.query(func.count(distinct(FallbackIntent.charge_id)))
                .join(Charge, Charge.id == FallbackIntent.charge_id)
                .filter(Charge.status.in_(_OPEN_CHARGE_STATUSES))
            ),
            "fallback_intents_pending": count(
                intents.filter(FallbackIntent.status == FallbackIntentStatus.pending)
            ),
            "fallback_paid_today": count(
                intents.filter(FallbackIntent.status == FallbackIntentStatus.paid)
                .filter(FallbackIntent.paid_at >= start)
                .filter(FallbackIntent.paid_at < end)
            ),
            "fallback_expired_today": count(
                intents.filter(FallbackIntent.status == FallbackIntentStatus.expired)
                .filter(FallbackIntent.updated_at >= start)
                .filter(FallbackIntent.updated_at < end)
            ),
            "paid_via_direct_debit_last_30d": count(
                charges.filter(Charge.status == ChargeStatus.paid)
                .filter(Charge.paid_via_channel == AttemptChannel.direct_debit)
                .filter(Charge.paid_at >= last_30_start)
                .filter(Charge.paid_at < end)
            ),
            "paid_via_fallback_last_30d": count(
                charges.filter(Charge.status == ChargeStatus.paid)
                .filter(Charge.paid_via_channel == AttemptChannel.fallback)
                .filter(Charge.paid_at >= last_30_start)
                .filter(Charge.paid_at < end)
            ),
        }


collection_overview = CollectionOverview()
