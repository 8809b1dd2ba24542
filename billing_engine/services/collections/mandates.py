"""Direct-debit mandate lifecycle."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import HTTPException
from sqlalchemy.orm import Session

from billing_engine.models.billing import (
    Mandate,
    MandateStatus,
    PaymentMethodStatus,
)
from billing_engine.services.common import get_or_404, validate_enum
from billing_engine.services.events import EventType, emit_event

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[MandateStatus, set[MandateStatus]] = {
    MandateStatus.pending: {
        MandateStatus.pending_bank,
        MandateStatus.active,
        MandateStatus.rejected,
        MandateStatus.revoked,
    },
    MandateStatus.pending_bank: {
        MandateStatus.active,
        MandateStatus.rejected,
        MandateStatus.revoked,
    },
    MandateStatus.active: {MandateStatus.rejected, MandateStatus.revoked},
    MandateStatus.rejected: {MandateStatus.pending_bank, MandateStatus.revoked},
    MandateStatus.revoked: set(),
}

_METHOD_STATUS_FOR_MANDATE = {
    MandateStatus.active: PaymentMethodStatus.active,
    MandateStatus.revoked: PaymentMethodStatus.inactive,
}


class MandateLifecycle:
    @staticmethod
    def can_transition(current: MandateStatus, target: MandateStatus) -> bool:
        return current == target or target in ALLOWED_TRANSITIONS[current]

    @staticmethod
    def transition(
        db: Session,
        mandate_id,
        new_status: MandateStatus | str,
        bank_reference: str | None = None,
        rejection_code: str | None = None,
        rejection_reason: str | None = None,
        actor: str | None = None,
    ) -> Mandate:
        """Move a mandate to ``new_status`` and record the side effects.

        Raises:
            HTTPException: 404 for an unknown mandate, 400 for an illegal edge
        """
        mandate = get_or_404(db, Mandate, mandate_id, "Mandate not found")
        target = validate_enum(new_status, MandateStatus, "mandate status")
        previous = mandate.status
        if not MandateLifecycle.can_transition(previous, target):
            raise HTTPException(
                status_code=400,
                detail=f"Mandate cannot move from {previous.value} to {target.value}",
            )

        now = datetime.now(UTC)
        changed = previous != target
        mandate.status = target
        mandate.last_status_check_at = now
        if bank_reference:
            mandate.bank_reference = bank_reference
        if target == MandateStatus.active and mandate.activated_at is None:
            mandate.activated_at = now
        if target == MandateStatus.revoked and mandate.revoked_at is None:
            mandate.revoked_at = now
        if target == MandateStatus.rejected:
            if changed or rejection_code or rejection_reason:
                mandate.rejection_code = rejection_code
                mandate.rejection_reason = rejection_reason
        else:
            mandate.rejection_code = None
            mandate.rejection_reason = None

        payment_method = mandate.payment_method
        method_status = _METHOD_STATUS_FOR_MANDATE.get(target)
        if changed and method_status is not None:
            payment_method.status = method_status
        db.flush()

        if changed:
            subscription = payment_method.subscription
            context = {
                "agency_id": subscription.agency_id,
                "subscription_id": subscription.id,
                "actor": actor or "system",
            }
            payload = {
                "mandate_id": str(mandate.id),
                "payment_method_id": str(payment_method.id),
                "previous_status": previous.value,
                "new_status": target.value,
                "bank_reference": mandate.bank_reference,
                "rejection_code": mandate.rejection_code,
                "rejection_reason": mandate.rejection_reason,
            }
            emit_event(db, EventType.mandate_status_changed, payload, **context)
            if target == MandateStatus.rejected:
                emit_event(db, EventType.mandate_rejected, payload, **context)
            elif target == MandateStatus.revoked:
                emit_event(db, EventType.mandate_revoked, payload, **context)
            logger.info(
                "Mandate %s moved %s -> %s", mandate.id, previous.value, target.value
            )
        return mandate

    @staticmethod
    def active_mandate_for_method(db: Session, payment_method_id) -> Mandate | None:
        if payment_method_id is None:
            return None
        return (
            db.query(Mandate)
            .filter(Mandate.payment_method_id == payment_method_id)
            .filter(Mandate.status == MandateStatus.active)
            .order_by(Mandate.activated_at.desc())
            .first()
        )


mandate_lifecycle = MandateLifecycle()
