"""Tests for charge settlement helpers and retry scheduling."""

from datetime import date

from billing_engine.models import (
    Attempt,
    AttemptChannel,
    AttemptStatus,
    BillingEvent,
    ChargeStatus,
    SubscriptionStatus,
)
from billing_engine.services.collections.direct_debit.adapter import DetailedReason
from billing_engine.services.collections.dunning import (
    dunning,
    mark_charge_failed,
    mark_charge_paid,
)


def _reject(db_session, attempt, reason=DetailedReason.insufficient_funds):
    attempt.status = AttemptStatus.rejected
    attempt.detailed_reason = reason.value if reason else None
    db_session.flush()


def _attempts(charge):
    return sorted(charge.attempts, key=lambda a: a.attempt_no)


class TestSettlement:
    def test_mark_paid_is_idempotent(self, db_session, anchor_charge):
        assert mark_charge_paid(
            db_session, anchor_charge, channel=AttemptChannel.direct_debit, reference="OP-1"
        )
        assert not mark_charge_paid(
            db_session, anchor_charge, channel=AttemptChannel.direct_debit, reference="OP-2"
        )
        db_session.commit()

        assert anchor_charge.paid_reference == "OP-1"
        assert anchor_charge.amount_ars_paid == anchor_charge.amount_ars_due
        assert (
            db_session.query(BillingEvent).filter(BillingEvent.event_type == "charge.paid").count()
            == 1
        )

    def test_payment_restores_past_due_subscription(
        self, db_session, subscription, anchor_charge
    ):
        subscription.status = SubscriptionStatus.past_due
        db_session.commit()

        mark_charge_paid(db_session, anchor_charge, channel=AttemptChannel.fallback)

        assert subscription.status == SubscriptionStatus.active
        assert _attempts(anchor_charge)[0].status == AttemptStatus.canceled

    def test_mark_failed_only_from_pending(self, db_session, subscription, anchor_charge):
        assert mark_charge_failed(db_session, anchor_charge, "test")
        assert not mark_charge_failed(db_session, anchor_charge, "again")
        assert anchor_charge.status == ChargeStatus.failed
        assert subscription.status == SubscriptionStatus.past_due


class TestHandleRejection:
    def test_retry_schedule_follows_configured_days(
        self, db_session, anchor_charge, billing_config
    ):
        first = _attempts(anchor_charge)[0]
        _reject(db_session, first)

        outcome = dunning.handle_rejection(
            db_session, first, DetailedReason.insufficient_funds, billing_config, date(2026, 3, 9)
        )
        assert outcome["action"] == "retry"
        assert outcome["created"] is True

        second = db_session.query(Attempt).filter(Attempt.attempt_no == 2).one()
        assert second.scheduled_for == date(2026, 3, 11)
        _reject(db_session, second)

        dunning.handle_rejection(
            db_session, second, DetailedReason.insufficient_funds, billing_config, date(2026, 3, 12)
        )
        third = db_session.query(Attempt).filter(Attempt.attempt_no == 3).one()
        assert third.scheduled_for == date(2026, 3, 15)
        _reject(db_session, third)

        outcome = dunning.handle_rejection(
            db_session, third, DetailedReason.insufficient_funds, billing_config, date(2026, 3, 16)
        )
        assert outcome == {"action": "failed"}
        assert anchor_charge.status == ChargeStatus.failed
        assert anchor_charge.dunning_stage == 3

    def test_late_processing_never_schedules_in_the_past(
        self, db_session, anchor_charge, billing_config
    ):
        first = _attempts(anchor_charge)[0]
        _reject(db_session, first)

        dunning.handle_rejection(db_session, first, None, billing_config, date(2026, 3, 20))

        second = db_session.query(Attempt).filter(Attempt.attempt_no == 2).one()
        assert second.scheduled_for == date(2026, 3, 20)

    def test_repeat_handling_reuses_retry(self, db_session, anchor_charge, billing_config):
        first = _attempts(anchor_charge)[0]
        _reject(db_session, first)

        dunning.handle_rejection(db_session, first, None, billing_config, date(2026, 3, 9))
        outcome = dunning.handle_rejection(db_session, first, None, billing_config, date(2026, 3, 9))

        assert outcome["created"] is False
        assert db_session.query(Attempt).count() == 2

    def test_hard_decline_fails_immediately(self, db_session, anchor_charge, billing_config):
        first = _attempts(anchor_charge)[0]
        _reject(db_session, first, DetailedReason.mandate_invalid)

        outcome = dunning.handle_rejection(
            db_session, first, DetailedReason.mandate_invalid, billing_config, date(2026, 3, 9)
        )

        assert outcome == {"action": "failed"}
        assert db_session.query(Attempt).count() == 1

    def test_settled_charge_ignored(self, db_session, anchor_charge, billing_config):
        first = _attempts(anchor_charge)[0]
        mark_charge_paid(db_session, anchor_charge, channel=AttemptChannel.direct_debit)
        assert dunning.handle_rejection(db_session, first, None, billing_config) == {
            "action": "none"
        }


class TestSweep:
    def test_sweep_schedules_missing_retries(self, db_session, anchor_charge, billing_config):
        _reject(db_session, _attempts(anchor_charge)[0])
        db_session.commit()

        summary = dunning.sweep(db_session, billing_config, today=date(2026, 3, 9))

        assert summary == {
            "charges_checked": 1,
            "retries_scheduled": 1,
            "charges_failed": 0,
            "errors": 0,
        }
        second = dunning.sweep(db_session, billing_config, today=date(2026, 3, 9))
        assert second["charges_checked"] == 0

    def test_sweep_fails_hard_declines(self, db_session, anchor_charge, billing_config):
        _reject(db_session, _attempts(anchor_charge)[0], DetailedReason.account_closed)
        db_session.commit()

        summary = dunning.sweep(db_session, billing_config, today=date(2026, 3, 9))

        assert summary["charges_failed"] == 1
        db_session.refresh(anchor_charge)
        assert anchor_charge.status == ChargeStatus.failed
