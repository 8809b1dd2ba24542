"""Pricing snapshot builder.

Resolves plan price, add-ons, discounts, VAT and the FX rate for a cycle into
an immutable snapshot. All amounts are USD unless suffixed ``_ars``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from billing_engine.config import BillingConfig
from billing_engine.models.billing import (
    AdjustmentKind,
    AdjustmentMode,
    BillingAdjustment,
    PaymentMethodType,
    Subscription,
)
from billing_engine.services.billing.fx_rates import FxQuote, fx_rates
from billing_engine.services.common import round_money

PLAN_BASE_PRICES_USD: dict[str, Decimal] = {
    "basico": Decimal("20.00"),
    "medio": Decimal("40.00"),
    "pro": Decimal("50.00"),
}
INCLUDED_USERS = 3
DEFAULT_BILLING_USERS = 3
ZERO = Decimal("0.00")


def extra_users_price(billing_users: int | None) -> Decimal:
    """Monthly USD surcharge for users beyond the included seats."""
    users = billing_users or DEFAULT_BILLING_USERS
    if users <= INCLUDED_USERS:
        return ZERO
    if users <= 10:
        return Decimal((users - INCLUDED_USERS) * 5).quantize(Decimal("0.01"))
    return Decimal(35 + (users - 10) * 10).quantize(Decimal("0.01"))


def plan_base_price(plan_key: str) -> Decimal:
    try:
        return PLAN_BASE_PRICES_USD[plan_key]
    except KeyError as exc:
        raise ValueError(f"Unknown plan: {plan_key}") from exc


@dataclass(frozen=True)
class AdjustmentInput:
    label: str
    kind: str
    mode: str
    value: Decimal
    currency: str = "USD"


@dataclass(frozen=True)
class PricingSnapshot:
    plan_key: str
    billing_users: int
    plan_price_usd: Decimal
    extra_users_usd: Decimal
    base_price_usd: Decimal
    addons_usd: Decimal
    pre_discount_net_usd: Decimal
    discount_pct: Decimal
    discount_usd: Decimal
    net_usd: Decimal
    vat_rate: Decimal
    vat_usd: Decimal
    total_usd: Decimal
    fx_rate: Decimal
    fx_rate_date: date
    fx_stale: bool
    net_ars: Decimal
    vat_ars: Decimal
    total_ars: Decimal
    adjustment_lines: tuple[dict, ...] = field(default_factory=tuple)
    skipped_adjustments: tuple[dict, ...] = field(default_factory=tuple)

    def as_dict(self) -> dict:
        """JSON-safe representation stored on the billing cycle."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = str(value)
            elif isinstance(value, date):
                data[key] = value.isoformat()
        data["adjustment_lines"] = [dict(line) for line in self.adjustment_lines]
        data["skipped_adjustments"] = [dict(line) for line in self.skipped_adjustments]
        return data


def _adjustment_amount(adjustment: AdjustmentInput, base: Decimal) -> Decimal:
    value = Decimal(str(adjustment.value))
    if adjustment.mode == AdjustmentMode.percent.value:
        amount = round_money(base * value / Decimal("100"))
    else:
        amount = round_money(value)
    if adjustment.kind == AdjustmentKind.discount.value:
        return -amount
    return amount


def build_pricing_snapshot(
    plan_key: str,
    billing_users: int | None,
    adjustments: list[AdjustmentInput],
    fx: FxQuote,
    *,
    is_direct_debit: bool,
    discount_pct: Decimal,
    vat_rate: Decimal,
) -> PricingSnapshot:
    """Compute the priced snapshot for one cycle.

    The direct-debit discount applies only when the subscription collects by
    direct debit. ARS amounts are derived from the USD total; the rounding
    remainder lands on the VAT line so ``net_ars + vat_ars == total_ars``.
    """
    users = billing_users or DEFAULT_BILLING_USERS
    plan_price = plan_base_price(plan_key)
    extra_users = extra_users_price(users)
    base = plan_price + extra_users

    lines: list[dict] = []
    skipped: list[dict] = []
    addons = ZERO
    for adjustment in adjustments:
        if (adjustment.currency or "USD").upper() != "USD":
            skipped.append(
                {"label": adjustment.label, "reason": "unsupported currency"}
            )
            continue
        amount = _adjustment_amount(adjustment, base)
        addons += amount
        lines.append(
            {
                "label": adjustment.label,
                "kind": adjustment.kind,
                "mode": adjustment.mode,
                "value": str(adjustment.value),
                "amount_usd": str(amount),
            }
        )

    pre_discount_net = max(ZERO, round_money(base + addons))
    effective_pct = Decimal(str(discount_pct)) if is_direct_debit else ZERO
    discount = round_money(pre_discount_net * effective_pct / Decimal("100"))
    net = round_money(pre_discount_net - discount)
    vat = round_money(net * vat_rate)
    total = net + vat

    total_ars = round_money(total * fx.rate)
    net_ars = round_money(net * fx.rate)
    vat_ars = total_ars - net_ars

    return PricingSnapshot(
        plan_key=plan_key,
        billing_users=users,
        plan_price_usd=plan_price,
        extra_users_usd=extra_users,
        base_price_usd=base,
        addons_usd=round_money(addons),
        pre_discount_net_usd=pre_discount_net,
        discount_pct=effective_pct,
        discount_usd=discount,
        net_usd=net,
        vat_rate=vat_rate,
        vat_usd=vat,
        total_usd=total,
        fx_rate=fx.rate,
        fx_rate_date=fx.rate_date,
        fx_stale=fx.stale,
        net_ars=net_ars,
        vat_ars=vat_ars,
        total_ars=total_ars,
        adjustment_lines=tuple(lines),
        skipped_adjustments=tuple(skipped),
    )


def _active_adjustments(
    db: Session, subscription: Subscription, cycle_date: date
) -> list[AdjustmentInput]:
    rows = (
        db.query(BillingAdjustment)
        .filter(BillingAdjustment.subscription_id == subscription.id)
        .filter(BillingAdjustment.is_active.is_(True))
        .order_by(BillingAdjustment.created_at.asc())
        .all()
    )
    result = []
    for row in rows:
        if row.starts_on and row.starts_on > cycle_date:
            continue
        if row.ends_on and row.ends_on < cycle_date:
            continue
        result.append(
            AdjustmentInput(
                label=row.label,
                kind=row.kind.value,
                mode=row.mode.value,
                value=Decimal(row.value),
                currency=row.currency,
            )
        )
    return result


def snapshot_for_subscription(
    db: Session,
    subscription: Subscription,
    cycle_date: date,
    config: BillingConfig,
    payment_method_type: PaymentMethodType | None = None,
    allow_stale_fx: bool | None = None,
) -> PricingSnapshot:
    """Load adjustments and the FX rate, then build the snapshot.

    Raises:
        HTTPException: 409 when no FX rate is available for the cycle date
    """
    allow_stale = config.allow_stale_fx if allow_stale_fx is None else allow_stale_fx
    fx = fx_rates.resolve(
        db,
        cycle_date,
        fx_type=config.fx_type,
        allow_stale=allow_stale,
        fallback_rate=config.fallback_fx_rate,
    )
    discount_pct = subscription.direct_debit_discount_pct
    if discount_pct is None:
        discount_pct = config.direct_debit_discount_pct
    return build_pricing_snapshot(
        subscription.plan_key.value,
        subscription.billing_users,
        _active_adjustments(db, subscription, cycle_date),
        fx,
        is_direct_debit=payment_method_type == PaymentMethodType.direct_debit,
        discount_pct=Decimal(discount_pct),
        vat_rate=config.vat_rate,
    )
