"""Tests for the anchor cycle runner."""

from datetime import UTC, date, datetime
from decimal import Decimal

from billing_engine.models import (
    Attempt,
    AttemptChannel,
    AttemptStatus,
    BillingCycle,
    BillingEvent,
    Charge,
    ChargeStatus,
    SubscriptionStatus,
)
from billing_engine.services.billing.anchor_runner import (
    anchor_cycle_runner,
    attempt_reference,
    charge_idempotency_key,
)

ANCHOR_DATE = date(2026, 3, 8)


def _count(db_session, model, **filters):
    return db_session.query(model).filter_by(**filters).count()


class TestAnchorRun:
    def test_creates_cycle_charge_and_attempt(
        self, db_session, subscription, payment_method, mandate, fx_rate, billing_config
    ):
        summary = anchor_cycle_runner.run(db_session, run_at=ANCHOR_DATE, config=billing_config)

        assert summary["subscriptions_total"] == 1
        assert summary["cycles_created"] == 1
        assert summary["charges_created"] == 1
        assert summary["attempts_created"] == 1
        assert summary["errors"] == []
        assert Decimal(summary["fx_rates_used"]["2026-03-01"]) == Decimal("1300")

        cycle = db_session.query(BillingCycle).one()
        assert cycle.anchor_date == ANCHOR_DATE
        assert cycle.period_end == date(2026, 4, 7)
        assert Decimal(cycle.total_ars) == Decimal("28314.00")
        assert cycle.snapshot["total_usd"] == "21.78"

        charge = db_session.query(Charge).one()
        assert charge.status == ChargeStatus.pending
        assert charge.idempotency_key == charge_idempotency_key(subscription.id, ANCHOR_DATE)
        assert charge.due_date == ANCHOR_DATE

        attempt = db_session.query(Attempt).one()
        assert attempt.attempt_no == 1
        assert attempt.channel == AttemptChannel.direct_debit
        assert attempt.status == AttemptStatus.pending
        assert attempt.external_reference == attempt_reference(charge.id, 1)
        assert attempt.payment_method_id == payment_method.id

        db_session.refresh(subscription)
        assert subscription.next_anchor_date == date(2026, 4, 8)

    def test_rerun_is_idempotent(self, db_session, anchor_charge, billing_config):
        summary = anchor_cycle_runner.run(db_session, run_at=ANCHOR_DATE, config=billing_config)

        assert summary["cycles_created"] == 0
        assert summary["skipped_not_due"] == 1
        assert _count(db_session, BillingCycle) == 1
        assert _count(db_session, Charge) == 1
        assert _count(db_session, Attempt) == 1

    def test_existing_cycle_counted_as_idempotent_skip(
        self, db_session, subscription, anchor_charge, billing_config
    ):
        """A lost next_anchor_date update is repaired without a second cycle."""
        subscription.next_anchor_date = None
        db_session.commit()

        summary = anchor_cycle_runner.run(db_session, run_at=ANCHOR_DATE, config=billing_config)

        assert summary["skipped_idempotent"] == 1
        assert _count(db_session, BillingCycle) == 1
        db_session.refresh(subscription)
        assert subscription.next_anchor_date == date(2026, 4, 8)

    def test_not_due_before_local_anchor(
        self, db_session, subscription, payment_method, mandate, fx_rate, billing_config
    ):
        """02:00 UTC on the 8th is still the 7th in Buenos Aires."""
        subscription.next_anchor_date = ANCHOR_DATE
        db_session.commit()

        summary = anchor_cycle_runner.run(
            db_session,
            run_at=datetime(2026, 3, 8, 2, 0, tzinfo=UTC),
            config=billing_config,
        )

        assert summary["skipped_not_due"] == 1
        assert _count(db_session, BillingCycle) == 0

    def test_missing_fx_rate_recorded_as_error(
        self, db_session, subscription, payment_method, mandate, billing_config
    ):
        summary = anchor_cycle_runner.run(db_session, run_at=ANCHOR_DATE, config=billing_config)

        assert summary["cycles_created"] == 0
        assert len(summary["errors"]) == 1
        assert summary["errors"][0]["subscription_id"] == str(subscription.id)
        assert "FX rate" in summary["errors"][0]["message"]
        assert _count(db_session, BillingCycle) == 0
        assert _count(db_session, Charge) == 0

    def test_catch_up_bills_latest_anchor_only(
        self, db_session, subscription, payment_method, mandate, fx_rate, billing_config
    ):
        subscription.next_anchor_date = date(2026, 1, 8)
        db_session.commit()

        summary = anchor_cycle_runner.run(db_session, run_at=ANCHOR_DATE, config=billing_config)

        assert summary["cycles_created"] == 1
        cycles = db_session.query(BillingCycle).all()
        assert [cycle.anchor_date for cycle in cycles] == [ANCHOR_DATE]

    def test_new_subscription_billed_for_current_cycle(
        self, db_session, subscription, payment_method, mandate, fx_rate, billing_config
    ):
        """Without a next anchor, a mid-month run bills the cycle already under way."""
        summary = anchor_cycle_runner.run(
            db_session, run_at=date(2026, 3, 20), config=billing_config
        )

        assert summary["cycles_created"] == 1
        assert db_session.query(BillingCycle).one().anchor_date == ANCHOR_DATE
        db_session.refresh(subscription)
        assert subscription.next_anchor_date == date(2026, 4, 8)

    def test_preset_next_anchor_defers_first_charge(
        self, db_session, subscription, payment_method, mandate, fx_rate, billing_config
    ):
        subscription.next_anchor_date = date(2026, 4, 8)
        db_session.commit()

        summary = anchor_cycle_runner.run(
            db_session, run_at=date(2026, 3, 20), config=billing_config
        )

        assert summary["skipped_not_due"] == 1
        assert _count(db_session, BillingCycle) == 0

    def test_canceled_subscription_not_billed(
        self, db_session, subscription, payment_method, mandate, fx_rate, billing_config
    ):
        subscription.status = SubscriptionStatus.canceled
        db_session.commit()

        summary = anchor_cycle_runner.run(db_session, run_at=ANCHOR_DATE, config=billing_config)

        assert summary["subscriptions_total"] == 0
        assert _count(db_session, BillingCycle) == 0

    def test_emits_creation_events(self, db_session, subscription, anchor_charge):
        event_types = {
            event.event_type
            for event in db_session.query(BillingEvent)
            .filter(BillingEvent.subscription_id == subscription.id)
            .all()
        }
        assert {"billing_cycle.created", "charge.created", "attempt.created"} <= event_types


def test_attempt_reference_format():
    import uuid

    charge_id = uuid.UUID("0123456789abcdef0123456789abcdef")
    assert attempt_reference(charge_id, 2) == "AT-0123456789AB-02"
