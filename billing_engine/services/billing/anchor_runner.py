"""Anchor cycle runner.

For each chargeable subscription whose anchor date has arrived in its own
timezone, find-or-create the billing cycle, the recurring charge and the
first collection attempt, then advance ``next_anchor_date``. Each
subscription is processed inside its own savepoint, so a failure leaves no
partial cycle behind and does not affect the others.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime

from fastapi import HTTPException
from sqlalchemy.orm import Session

from billing_engine.config import BillingConfig, get_billing_config
from billing_engine.models.billing import (
    Attempt,
    AttemptChannel,
    AttemptStatus,
    BillingCycle,
    Charge,
    ChargeStatus,
    PaymentMethod,
    PaymentMethodStatus,
    PaymentMethodType,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.services.billing.dates import (
    count_missed_anchors,
    latest_anchor_on_or_before,
    local_date,
    next_anchor_date,
    period_for_anchor,
)
from billing_engine.services.billing.pricing import snapshot_for_subscription
from billing_engine.services.common import find_or_create
from billing_engine.services.events import EventType, emit_event

logger = logging.getLogger(__name__)

CHARGEABLE_STATUSES = (SubscriptionStatus.active, SubscriptionStatus.past_due)
RECURRING_PURPOSE = "recurring"


def charge_idempotency_key(subscription_id, anchor: date, purpose: str = RECURRING_PURPOSE) -> str:
    return f"{purpose}:{subscription_id}:{anchor.isoformat()}"


def attempt_reference(charge_id, attempt_no: int) -> str:
    """Stable external reference for an attempt, quoted back by the bank."""
    return f"AT-{charge_id.hex[:12].upper()}-{attempt_no:02d}"


def default_payment_method(db: Session, subscription_id) -> PaymentMethod | None:
    return (
        db.query(PaymentMethod)
        .filter(PaymentMethod.subscription_id == subscription_id)
        .filter(PaymentMethod.status == PaymentMethodStatus.active)
        .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.asc())
        .first()
    )


def channel_for_method(method: PaymentMethod | None) -> AttemptChannel:
    if method is None or method.method_type == PaymentMethodType.direct_debit:
        return AttemptChannel.direct_debit
    return AttemptChannel.fallback


def _error_message(exc: Exception) -> str:
    if isinstance(exc, HTTPException):
        return str(exc.detail)
    return str(exc) or exc.__class__.__name__


def _new_summary(run_at: datetime | date) -> dict:
    return {
        "run_at": run_at.isoformat(),
        "subscriptions_total": 0,
        "subscriptions_processed": 0,
        "cycles_created": 0,
        "charges_created": 0,
        "attempts_created": 0,
        "skipped_idempotent": 0,
        "skipped_not_due": 0,
        "errors": [],
        "fx_rates_used": {},
    }


class AnchorCycleRunner:
    @staticmethod
    def eligible_subscriptions(db: Session, subscription_ids=None):
        query = (
            db.query(Subscription)
            .filter(Subscription.status.in_(CHARGEABLE_STATUSES))
            .filter(Subscription.is_active.is_(True))
        )
        if subscription_ids:
            query = query.filter(Subscription.id.in_(list(subscription_ids)))
        return query.order_by(Subscription.created_at.asc()).all()

    @staticmethod
    def run(
        db: Session,
        run_at: datetime | date | None = None,
        config: BillingConfig | None = None,
        subscription_ids=None,
        actor: str | None = None,
        allow_stale_fx: bool | None = None,
    ) -> dict:
        """Run the anchor pipeline for every eligible subscription.

        Re-running for the same date is a no-op: existing cycles are detected
        and counted under ``skipped_idempotent``.
        """
        config = config or get_billing_config()
        run_at = run_at or datetime.now(UTC)
        summary = _new_summary(run_at)
        for subscription in AnchorCycleRunner.eligible_subscriptions(db, subscription_ids):
            summary["subscriptions_total"] += 1
            try:
                with db.begin_nested():
                    outcome = AnchorCycleRunner._process_subscription(
                        db, subscription, run_at, config, actor, allow_stale_fx
                    )
            except Exception as exc:
                logger.exception(
                    "Anchor run failed for subscription %s", subscription.id
                )
                summary["errors"].append(
                    {
                        "subscription_id": str(subscription.id),
                        "message": _error_message(exc),
                    }
                )
                continue
            db.commit()

            if outcome["status"] == "not_due":
                summary["skipped_not_due"] += 1
                continue
            if outcome["status"] == "exists":
                summary["skipped_idempotent"] += 1
                continue
            summary["subscriptions_processed"] += 1
            summary["cycles_created"] += 1
            summary["charges_created"] += int(outcome["charge_created"])
            summary["attempts_created"] += int(outcome["attempt_created"])
            summary["fx_rates_used"][outcome["fx_rate_date"]] = outcome["fx_rate"]

        logger.info(
            "Anchor run %s: processed=%s skipped=%s errors=%s",
            summary["run_at"],
            summary["subscriptions_processed"],
            summary["skipped_idempotent"],
            len(summary["errors"]),
        )
        return summary

    @staticmethod
    def _process_subscription(
        db: Session,
        subscription: Subscription,
        run_at: datetime | date,
        config: BillingConfig,
        actor: str | None,
        allow_stale_fx: bool | None,
    ) -> dict:
        tz_name = subscription.timezone_name or config.default_timezone
        anchor_day = subscription.anchor_day or config.default_anchor_day
        run_date = local_date(run_at, tz_name)
        if subscription.next_anchor_date and subscription.next_anchor_date > run_date:
            return {"status": "not_due"}

        anchor = latest_anchor_on_or_before(run_date, anchor_day)
        following = next_anchor_date(anchor, anchor_day)
        if subscription.next_anchor_date and subscription.next_anchor_date < anchor:
            missed = 1 + count_missed_anchors(
                subscription.next_anchor_date, anchor, anchor_day
            )
            logger.warning(
                "Subscription %s missed %s anchor(s) before %s; billing latest only",
                subscription.id,
                missed,
                anchor,
            )

        existing = (
            db.query(BillingCycle)
            .filter(BillingCycle.subscription_id == subscription.id)
            .filter(BillingCycle.anchor_date == anchor)
            .first()
        )
        if existing:
            if subscription.next_anchor_date != following:
                subscription.next_anchor_date = following
                db.flush()
            return {"status": "exists", "cycle_id": existing.id}

        method = default_payment_method(db, subscription.id)
        snapshot = snapshot_for_subscription(
            db,
            subscription,
            anchor,
            config,
            payment_method_type=method.method_type if method else None,
            allow_stale_fx=allow_stale_fx,
        )
        period_start, period_end = period_for_anchor(anchor, anchor_day)
        cycle, cycle_created = find_or_create(
            db,
            BillingCycle,
            {"subscription_id": subscription.id, "anchor_date": anchor},
            {
                "agency_id": subscription.agency_id,
                "period_start": period_start,
                "period_end": period_end,
                "plan_key": snapshot.plan_key,
                "billing_users": snapshot.billing_users,
                "base_price_usd": snapshot.base_price_usd,
                "addons_usd": snapshot.addons_usd,
                "pre_discount_net_usd": snapshot.pre_discount_net_usd,
                "discount_pct": snapshot.discount_pct,
                "discount_usd": snapshot.discount_usd,
                "net_usd": snapshot.net_usd,
                "vat_rate": snapshot.vat_rate,
                "vat_usd": snapshot.vat_usd,
                "total_usd": snapshot.total_usd,
                "fx_rate": snapshot.fx_rate,
                "fx_rate_date": snapshot.fx_rate_date,
                "total_ars": snapshot.total_ars,
                "snapshot": snapshot.as_dict(),
            },
        )
        if not cycle_created:
            return {"status": "exists", "cycle_id": cycle.id}

        charge, charge_created = find_or_create(
            db,
            Charge,
            {
                "agency_id": subscription.agency_id,
                "idempotency_key": charge_idempotency_key(subscription.id, anchor),
            },
            {
                "subscription_id": subscription.id,
                "cycle_id": cycle.id,
                "purpose": RECURRING_PURPOSE,
                "status": ChargeStatus.pending,
                "amount_usd_due": snapshot.total_usd,
                "amount_ars_due": snapshot.total_ars,
                "fx_rate": snapshot.fx_rate,
                "due_date": anchor,
            },
        )
        attempt, attempt_created = find_or_create(
            db,
            Attempt,
            {"charge_id": charge.id, "attempt_no": 1},
            {
                "channel": channel_for_method(method),
                "payment_method_id": method.id if method else None,
                "status": AttemptStatus.pending,
                "external_reference": attempt_reference(charge.id, 1),
                "amount_ars": charge.amount_ars_due,
                "scheduled_for": anchor,
            },
        )
        subscription.next_anchor_date = following
        db.flush()

        context = {
            "agency_id": subscription.agency_id,
            "subscription_id": subscription.id,
            "actor": actor or "system",
        }
        emit_event(
            db,
            EventType.billing_cycle_created,
            {
                "cycle_id": str(cycle.id),
                "anchor_date": anchor.isoformat(),
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
                "total_usd": str(snapshot.total_usd),
                "total_ars": str(snapshot.total_ars),
                "fx_rate": str(snapshot.fx_rate),
            },
            **context,
        )
        if charge_created:
            emit_event(
                db,
                EventType.charge_created,
                {
                    "charge_id": str(charge.id),
                    "cycle_id": str(cycle.id),
                    "idempotency_key": charge.idempotency_key,
                    "amount_usd_due": str(charge.amount_usd_due),
                    "amount_ars_due": str(charge.amount_ars_due),
                },
                **context,
            )
        if attempt_created:
            emit_event(
                db,
                EventType.attempt_created,
                {
                    "attempt_id": str(attempt.id),
                    "charge_id": str(charge.id),
                    "attempt_no": attempt.attempt_no,
                    "channel": attempt.channel.value,
                    "external_reference": attempt.external_reference,
                    "scheduled_for": attempt.scheduled_for.isoformat(),
                },
                **context,
            )
        return {
            "status": "created",
            "cycle_id": cycle.id,
            "charge_created": charge_created,
            "attempt_created": attempt_created,
            "fx_rate": str(snapshot.fx_rate),
            "fx_rate_date": snapshot.fx_rate_date.isoformat(),
        }


anchor_cycle_runner = AnchorCycleRunner()
