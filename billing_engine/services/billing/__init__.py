"""Billing services: pricing, anchor cycles and fiscal issuance."""

from billing_engine.services.billing.anchor_runner import (
    AnchorCycleRunner,
    anchor_cycle_runner,
)
from billing_engine.services.billing.fiscal import (
    FiscalIssuance,
    FiscalIssueResult,
    fiscal_issuance,
)
from billing_engine.services.billing.fx_rates import FxQuote, FxRates, fx_rates
from billing_engine.services.billing.pricing import (
    AdjustmentInput,
    PricingSnapshot,
    build_pricing_snapshot,
    snapshot_for_subscription,
)

__all__ = [
    "AdjustmentInput",
    "AnchorCycleRunner",
    "FiscalIssuance",
    "FiscalIssueResult",
    "FxQuote",
    "FxRates",
    "PricingSnapshot",
    "anchor_cycle_runner",
    "build_pricing_snapshot",
    "fiscal_issuance",
    "fx_rates",
    "snapshot_for_subscription",
]
