"""Collections: mandates, direct-debit batches, dunning and fallback payments."""

from billing_engine.services.collections.dunning import (
    Dunning,
    dunning,
    mark_charge_failed,
    mark_charge_paid,
)
from billing_engine.services.collections.mandates import (
    MandateLifecycle,
    mandate_lifecycle,
)

__all__ = [
    "Dunning",
    "MandateLifecycle",
    "dunning",
    "mandate_lifecycle",
    "mark_charge_failed",
    "mark_charge_paid",
]
