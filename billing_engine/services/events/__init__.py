"""Billing event log.

Usage:
    from billing_engine.services.events import emit_event
    from billing_engine.services.events.types import EventType

    emit_event(
        db,
        EventType.mandate_status_changed,
        {"mandate_id": str(mandate.id), "new_status": "active"},
        agency_id=subscription.agency_id,
        subscription_id=subscription.id,
    )
"""

from billing_engine.services.events.dispatcher import emit_event
from billing_engine.services.events.types import Event, EventType

__all__ = ["emit_event", "Event", "EventType"]
