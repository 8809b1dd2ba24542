"""Fallback payment intents (QR / checkout) for charges outside direct debit."""

from billing_engine.services.collections.fallback.providers import (
    FallbackProviderError,
    get_provider,
)
from billing_engine.services.collections.fallback.service import (
    FallbackCollections,
    cancel_charge,
    cancel_fallback_intent,
    create_fallback_intents,
    fallback_collections,
    sync_fallback_statuses,
)

__all__ = [
    "FallbackCollections",
    "FallbackProviderError",
    "cancel_charge",
    "cancel_fallback_intent",
    "create_fallback_intents",
    "fallback_collections",
    "get_provider",
    "sync_fallback_statuses",
]
