"""Fallback payment intents for charges direct debit cannot collect."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta

from fastapi import HTTPException
from sqlalchemy.orm import Session

from billing_engine.config import BillingConfig, get_billing_config
from billing_engine.models.billing import (
    Attempt,
    AttemptChannel,
    AttemptStatus,
    Charge,
    ChargeStatus,
)
from billing_engine.models.collections import FallbackIntent, FallbackIntentStatus
from billing_engine.services.billing.fiscal import FiscalIssuer, fiscal_issuance
from billing_engine.services.collections.dunning import mark_charge_paid
from billing_engine.services.collections.fallback.providers import (
    FallbackProvider,
    IntentRequest,
    IntentSnapshot,
    get_provider,
)
from billing_engine.services.collections.mandates import mandate_lifecycle
from billing_engine.services.common import find_or_create, get_or_404, money_str
from billing_engine.services.events import EventType, emit_event

logger = logging.getLogger(__name__)

_OPEN_ATTEMPT_STATUSES = (AttemptStatus.pending, AttemptStatus.processing)


def fallback_reference(charge: Charge, provider: str, seq: int) -> str:
    return f"FBK-{charge.id.hex.upper()}-{provider.upper()}-{seq:02d}"


def _context(charge: Charge, actor: str | None) -> dict:
    return {
        "agency_id": charge.agency_id,
        "subscription_id": charge.subscription_id,
        "actor": actor or "system",
    }


def _snapshot(intent: FallbackIntent) -> IntentSnapshot:
    return IntentSnapshot(
        external_reference=intent.external_reference,
        status=intent.status,
        provider_status=intent.provider_status,
        provider_payment_id=intent.provider_payment_id,
        expires_at=intent.expires_at,
        paid_at=intent.paid_at,
    )


def _intent_payload(intent: FallbackIntent, **extra) -> dict:
    return {
        "fallback_intent_id": str(intent.id),
        "charge_id": str(intent.charge_id),
        "provider": intent.provider,
        "external_reference": intent.external_reference,
        "amount": money_str(intent.amount),
        **extra,
    }


def _has_open_intent(db: Session, charge_id) -> bool:
    return (
        db.query(FallbackIntent.id)
        .filter(FallbackIntent.charge_id == charge_id)
        .filter(FallbackIntent.status == FallbackIntentStatus.pending)
        .first()
        is not None
    )


def _direct_debit_usable(db: Session, charge: Charge, config: BillingConfig) -> bool:
    """True while a direct-debit attempt can still collect the charge."""
    for attempt in charge.attempts:
        if attempt.channel != AttemptChannel.direct_debit:
            continue
        if attempt.status == AttemptStatus.processing:
            return True
        if attempt.status != AttemptStatus.pending:
            continue
        if attempt.payment_method_id is None:
            continue
        if not config.require_active_mandate:
            return True
        if mandate_lifecycle.active_mandate_for_method(db, attempt.payment_method_id):
            return True
    return False


class FallbackCollections:
    @staticmethod
    def eligible_charges(
        db: Session,
        config: BillingConfig,
        today: date,
        charge_id=None,
    ) -> list[Charge]:
        query = db.query(Charge).filter(
            Charge.status.in_([ChargeStatus.failed, ChargeStatus.pending])
        )
        if charge_id is not None:
            query = query.filter(Charge.id == charge_id)
        eligible = []
        for charge in query.order_by(Charge.created_at.asc()).all():
            if _has_open_intent(db, charge.id):
                continue
            if charge.status == ChargeStatus.pending:
                if charge.due_date and charge.due_date > today:
                    continue
                if _direct_debit_usable(db, charge, config):
                    continue
            eligible.append(charge)
        return eligible

    @staticmethod
    def create_intents(
        db: Session,
        config: BillingConfig | None = None,
        provider_name: str | None = None,
        charge_id=None,
        now: datetime | None = None,
        provider: FallbackProvider | None = None,
        actor: str | None = None,
    ) -> dict:
        """Open a payment intent for every charge direct debit cannot collect.

        At most one pending intent exists per charge; a charge whose intent
        expired gets a new one with the next sequence number.
        """
        config = config or get_billing_config()
        now = now or datetime.now(UTC)
        provider_name = (provider_name or config.fallback_provider).strip().lower()
        provider = provider or get_provider(provider_name, config)
        summary = {"considered": 0, "created": 0, "skipped": 0, "errors": 0, "intent_ids": []}

        for charge in FallbackCollections.eligible_charges(db, config, now.date(), charge_id):
            summary["considered"] += 1
            try:
                with db.begin_nested():
                    intent = FallbackCollections._open_intent(
                        db, charge, provider, provider_name, config, now, actor
                    )
            except Exception:
                logger.exception("Fallback intent creation failed for charge %s", charge.id)
                summary["errors"] += 1
                continue
            db.commit()
            if intent is None:
                summary["skipped"] += 1
            elif intent.status == FallbackIntentStatus.pending:
                summary["created"] += 1
                summary["intent_ids"].append(str(intent.id))
            else:
                summary["errors"] += 1
        return summary

    @staticmethod
    def _open_intent(
        db: Session,
        charge: Charge,
        provider: FallbackProvider,
        provider_name: str,
        config: BillingConfig,
        now: datetime,
        actor: str | None,
    ) -> FallbackIntent | None:
        seq = db.query(FallbackIntent).filter(FallbackIntent.charge_id == charge.id).count() + 1
        reference = fallback_reference(charge, provider_name, seq)
        expires_at = now + timedelta(hours=config.fallback_intent_ttl_hours)
        intent, created = find_or_create(
            db,
            FallbackIntent,
            {"external_reference": reference},
            {
                "charge_id": charge.id,
                "agency_id": charge.agency_id,
                "provider": provider_name,
                "status": FallbackIntentStatus.pending,
                "idempotency_key": f"fallback:{charge.id}:{provider_name}:{seq}",
                "amount": charge.amount_ars_due,
                "currency": "ARS",
                "expires_at": expires_at,
            },
        )
        if not created:
            return None

        for attempt in charge.attempts:
            if attempt.channel == AttemptChannel.direct_debit and attempt.status == AttemptStatus.pending:
                attempt.status = AttemptStatus.canceled
                attempt.result_message = "Superseded by fallback intent"
        attempt = next(
            (
                a
                for a in charge.attempts
                if a.channel == AttemptChannel.fallback and a.status == AttemptStatus.pending
            ),
            None,
        )
        if attempt is None:
            next_no = max((a.attempt_no for a in charge.attempts), default=0) + 1
            attempt, _ = find_or_create(
                db,
                Attempt,
                {"charge_id": charge.id, "attempt_no": next_no},
                {
                    "channel": AttemptChannel.fallback,
                    "status": AttemptStatus.pending,
                    "external_reference": reference,
                    "amount_ars": charge.amount_ars_due,
                    "scheduled_for": now.date(),
                },
            )
        intent.attempt_id = attempt.id
        attempt.status = AttemptStatus.processing
        db.flush()

        request = IntentRequest(
            charge_id=str(charge.id),
            amount=intent.amount,
            currency=intent.currency,
            external_reference=reference,
            idempotency_key=intent.idempotency_key,
            expires_at=expires_at,
        )
        try:
            created_intent = provider.create_payment_intent(request)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.warning("Fallback provider failed for charge %s: %s", charge.id, message)
            intent.status = FallbackIntentStatus.expired
            intent.provider_status = "ERROR"
            intent.error_message = message
            attempt.status = AttemptStatus.error
            attempt.result_message = message
            db.flush()
            emit_event(
                db,
                EventType.fallback_intent_failed,
                _intent_payload(intent, error=message),
                **_context(charge, actor),
            )
            return intent

        intent.provider_payment_id = created_intent.provider_payment_id
        intent.provider_status = created_intent.provider_status
        intent.status = created_intent.status
        intent.payment_url = created_intent.payment_url
        intent.qr_payload = created_intent.qr_payload
        db.flush()
        emit_event(
            db,
            EventType.fallback_intent_created,
            _intent_payload(
                intent,
                payment_url=intent.payment_url,
                expires_at=expires_at.isoformat(),
            ),
            **_context(charge, actor),
        )
        logger.info("Opened %s fallback intent %s for charge %s", provider_name, reference, charge.id)
        return intent

    @staticmethod
    def sync_statuses(
        db: Session,
        config: BillingConfig | None = None,
        provider_name: str | None = None,
        intent_id=None,
        limit: int = 100,
        provider: FallbackProvider | None = None,
        issuer: FiscalIssuer | None = None,
        actor: str | None = None,
    ) -> dict:
        """Poll pending intents and settle or expire them."""
        config = config or get_billing_config()
        query = db.query(FallbackIntent).filter(
            FallbackIntent.status == FallbackIntentStatus.pending
        )
        if provider_name:
            query = query.filter(FallbackIntent.provider == provider_name.strip().lower())
        if intent_id is not None:
            query = query.filter(FallbackIntent.id == intent_id)
        intents = query.order_by(FallbackIntent.created_at.asc()).limit(limit).all()

        summary = {
            "considered": len(intents),
            "paid": 0,
            "pending": 0,
            "expired": 0,
            "canceled": 0,
            "errors": 0,
            "fiscal_issued": 0,
            "fiscal_failed": 0,
        }
        paid_charge_ids = []
        for intent in intents:
            try:
                with db.begin_nested():
                    outcome = FallbackCollections._sync_intent(
                        db, intent, provider or get_provider(intent.provider, config), actor
                    )
            except Exception as exc:
                logger.exception("Fallback status sync failed for intent %s", intent.id)
                intent.last_checked_at = datetime.now(UTC)
                intent.error_message = str(exc) or exc.__class__.__name__
                db.commit()
                summary["errors"] += 1
                continue
            db.commit()
            summary[outcome] += 1
            if outcome == "paid":
                paid_charge_ids.append(intent.charge_id)

        fiscal = fiscal_issuance.autorun_for_paid_charges(
            db, paid_charge_ids, config=config, issuer=issuer, actor=actor
        )
        summary["fiscal_issued"] = fiscal["issued"]
        summary["fiscal_failed"] = fiscal["failed"]
        db.commit()
        return summary

    @staticmethod
    def _sync_intent(
        db: Session, intent: FallbackIntent, provider: FallbackProvider, actor: str | None
    ) -> str:
        charge = intent.charge
        now = datetime.now(UTC)
        intent.last_checked_at = now
        if charge.status in (ChargeStatus.paid, ChargeStatus.canceled):
            # Settled elsewhere; close the intent instead of polling it.
            return FallbackCollections._cancel(db, intent, provider, actor)

        observed = provider.get_payment_status(_snapshot(intent))
        intent.provider_status = observed.provider_status
        intent.error_message = None
        attempt = intent.attempt

        if observed.status == FallbackIntentStatus.paid:
            intent.status = FallbackIntentStatus.paid
            intent.paid_at = observed.paid_at or now
            if attempt is not None:
                attempt.status = AttemptStatus.paid
                attempt.processed_at = now
                attempt.paid_reference = intent.provider_payment_id
            db.flush()
            emit_event(
                db,
                EventType.fallback_intent_paid,
                _intent_payload(intent, paid_at=intent.paid_at.isoformat()),
                **_context(charge, actor),
            )
            mark_charge_paid(
                db,
                charge,
                channel=AttemptChannel.fallback,
                amount_ars=intent.amount,
                reference=intent.provider_payment_id or intent.external_reference,
                paid_at=intent.paid_at,
                actor=actor,
            )
            return "paid"

        if observed.status == FallbackIntentStatus.expired:
            intent.status = FallbackIntentStatus.expired
            if attempt is not None and attempt.status in _OPEN_ATTEMPT_STATUSES:
                attempt.status = AttemptStatus.canceled
                attempt.processed_at = now
                attempt.result_message = f"Fallback intent {observed.provider_status.lower()}"
            db.flush()
            emit_event(
                db,
                EventType.fallback_intent_expired,
                _intent_payload(intent, provider_status=observed.provider_status),
                **_context(charge, actor),
            )
            return "expired"

        db.flush()
        return "pending"

    @staticmethod
    def _cancel(
        db: Session, intent: FallbackIntent, provider: FallbackProvider, actor: str | None
    ) -> str:
        """Cancel one intent. Returns ``paid`` when the provider says it was paid."""
        if intent.status != FallbackIntentStatus.pending:
            return intent.status.value
        result = provider.cancel_payment_intent(_snapshot(intent))
        now = datetime.now(UTC)
        attempt = intent.attempt
        charge = intent.charge
        if result.final_status == FallbackIntentStatus.paid:
            intent.status = FallbackIntentStatus.paid
            intent.paid_at = intent.paid_at or now
            if attempt is not None:
                attempt.status = AttemptStatus.paid
                attempt.processed_at = now
            db.flush()
            emit_event(
                db,
                EventType.fallback_intent_paid,
                _intent_payload(intent, paid_at=intent.paid_at.isoformat()),
                **_context(charge, actor),
            )
            mark_charge_paid(
                db,
                charge,
                channel=AttemptChannel.fallback,
                amount_ars=intent.amount,
                reference=intent.provider_payment_id or intent.external_reference,
                paid_at=intent.paid_at,
                actor=actor,
            )
            return "paid"

        intent.status = FallbackIntentStatus.canceled
        intent.canceled_at = now
        if attempt is not None and attempt.status in _OPEN_ATTEMPT_STATUSES:
            attempt.status = AttemptStatus.canceled
            attempt.processed_at = now
        db.flush()
        emit_event(
            db,
            EventType.fallback_intent_canceled,
            _intent_payload(intent),
            **_context(charge, actor),
        )
        return "canceled"

    @staticmethod
    def get_intent(db: Session, intent_id) -> FallbackIntent:
        return get_or_404(db, FallbackIntent, intent_id, "Fallback intent not found")

    @staticmethod
    def cancel_intent(
        db: Session,
        intent_id,
        config: BillingConfig | None = None,
        provider: FallbackProvider | None = None,
        actor: str | None = None,
    ) -> dict:
        """Cancel a single intent. Canceling a paid intent reports ``paid``."""
        config = config or get_billing_config()
        intent = get_or_404(db, FallbackIntent, intent_id, "Fallback intent not found")
        final_status = FallbackCollections._cancel(
            db, intent, provider or get_provider(intent.provider, config), actor
        )
        db.commit()
        return {"fallback_intent_id": str(intent.id), "final_status": final_status}

    @staticmethod
    def cancel_charge(
        db: Session,
        charge_id,
        reason: str | None = None,
        config: BillingConfig | None = None,
        provider: FallbackProvider | None = None,
        actor: str | None = None,
    ) -> dict:
        """Cancel an unpaid charge with its pending attempts and open intents.

        Raises:
            HTTPException: 404 if the charge does not exist, 409 if it is paid
        """
        config = config or get_billing_config()
        charge = get_or_404(db, Charge, charge_id, "Charge not found")
        if charge.status == ChargeStatus.canceled:
            return {"charge_id": str(charge.id), "status": "canceled", "already_canceled": True}
        if charge.status == ChargeStatus.paid:
            raise HTTPException(status_code=409, detail="Paid charges cannot be canceled")

        open_intents = (
            db.query(FallbackIntent)
            .filter(FallbackIntent.charge_id == charge.id)
            .filter(FallbackIntent.status == FallbackIntentStatus.pending)
            .all()
        )
        for intent in open_intents:
            outcome = FallbackCollections._cancel(
                db, intent, provider or get_provider(intent.provider, config), actor
            )
            if outcome == "paid":
                db.commit()
                return {"charge_id": str(charge.id), "status": "paid", "already_canceled": False}

        now = datetime.now(UTC)
        for attempt in charge.attempts:
            if attempt.status == AttemptStatus.pending:
                attempt.status = AttemptStatus.canceled
                attempt.processed_at = now
        charge.status = ChargeStatus.canceled
        charge.canceled_at = now
        db.flush()
        emit_event(
            db,
            EventType.charge_canceled,
            {"charge_id": str(charge.id), "reason": reason},
            **_context(charge, actor),
        )
        db.commit()
        logger.info("Canceled charge %s", charge.id)
        return {"charge_id": str(charge.id), "status": "canceled", "already_canceled": False}


fallback_collections = FallbackCollections()

create_fallback_intents = fallback_collections.create_intents
sync_fallback_statuses = fallback_collections.sync_statuses
cancel_fallback_intent = fallback_collections.cancel_intent
cancel_charge = fallback_collections.cancel_charge
