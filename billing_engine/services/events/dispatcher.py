"""Central event dispatcher for billing domain events.

Events are appended to the billing_events table inside the caller's
transaction, so an event only becomes visible if the state change it
describes is committed. Registered in-process handlers are notified after
the row is staged; their failures are logged and never propagate.
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from billing_engine.services.common import coerce_uuid
from billing_engine.services.events.types import Event, EventType

logger = logging.getLogger(__name__)


class LoggingHandler:
    """Writes every billing event to the application log."""

    def handle(self, db: Session, event: Event) -> None:
        logger.info(
            "billing event %s agency=%s subscription=%s actor=%s",
            event.event_type.value,
            event.agency_id,
            event.subscription_id,
            event.actor,
        )


class EventDispatcher:
    """Persists events to the billing event log and fans out to handlers."""

    def __init__(self):
        self._handlers: list = []

    def register_handler(self, handler):
        """Register an event handler."""
        self._handlers.append(handler)

    def dispatch(self, db: Session, event: Event) -> None:
        from billing_engine.models.event_store import BillingEvent

        logger.debug(
            "Dispatching event %s (id=%s)", event.event_type.value, event.event_id
        )
        db.add(
            BillingEvent(
                event_id=event.event_id,
                event_type=event.event_type.value,
                agency_id=event.agency_id,
                subscription_id=event.subscription_id,
                payload=event.payload,
                actor=event.actor,
                created_at=event.occurred_at,
            )
        )
        db.flush()

        for handler in self._handlers:
            try:
                handler.handle(db, event)
            except Exception as exc:
                logger.exception(
                    "Handler %s failed for event %s: %s",
                    handler.__class__.__name__,
                    event.event_type.value,
                    exc,
                )


_dispatcher: EventDispatcher | None = None


def get_dispatcher() -> EventDispatcher:
    """Get the global event dispatcher, initializing handlers if needed."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = EventDispatcher()
        _dispatcher.register_handler(LoggingHandler())
    return _dispatcher


def emit_event(
    db: Session,
    event_type: EventType,
    payload: dict[str, Any],
    *,
    actor: str | None = None,
    agency_id: UUID | str | None = None,
    subscription_id: UUID | str | None = None,
) -> Event:
    """Record a billing event in the current transaction.

    Example:
        emit_event(
            db,
            EventType.charge_paid,
            {"charge_id": str(charge.id)},
            agency_id=charge.agency_id,
            subscription_id=charge.subscription_id,
        )
    """
    event = Event(
        event_type=event_type,
        payload=payload,
        actor=actor,
        agency_id=coerce_uuid(agency_id),
        subscription_id=coerce_uuid(subscription_id),
    )
    get_dispatcher().dispatch(db, event)
    return event
