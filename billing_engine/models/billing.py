import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_engine.db import Base


class SubscriptionStatus(enum.Enum):
    active = "active"
    past_due = "past_due"
    suspended = "suspended"
    canceled = "canceled"


class PlanKey(enum.Enum):
    basico = "basico"
    medio = "medio"
    pro = "pro"


class PaymentMethodType(enum.Enum):
    direct_debit = "direct_debit"
    qr = "qr"
    checkout = "checkout"


class PaymentMethodStatus(enum.Enum):
    pending = "pending"
    active = "active"
    inactive = "inactive"


class MandateStatus(enum.Enum):
    pending = "pending"
    pending_bank = "pending_bank"
    active = "active"
    rejected = "rejected"
    revoked = "revoked"


class AdjustmentKind(enum.Enum):
    addon = "addon"
    discount = "discount"


class AdjustmentMode(enum.Enum):
    percent = "percent"
    absolute = "absolute"


class ChargeStatus(enum.Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    canceled = "canceled"


class AttemptChannel(enum.Enum):
    direct_debit = "direct_debit"
    fallback = "fallback"


class AttemptStatus(enum.Enum):
    pending = "pending"
    processing = "processing"
    paid = "paid"
    rejected = "rejected"
    error = "error"
    canceled = "canceled"


class Subscription(Base):
    __tablename__ = "billing_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    agency_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.active
    )
    plan_key: Mapped[PlanKey] = mapped_column(Enum(PlanKey), default=PlanKey.basico)
    billing_users: Mapped[int] = mapped_column(Integer, default=3)
    anchor_day: Mapped[int] = mapped_column(Integer, default=8)
    timezone_name: Mapped[str] = mapped_column(
        "timezone", String(64), default="America/Argentina/Buenos_Aires"
    )
    direct_debit_discount_pct: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), default=Decimal("10.00")
    )
    next_anchor_date: Mapped[date | None] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    payment_methods = relationship("PaymentMethod", back_populates="subscription")
    adjustments = relationship("BillingAdjustment", back_populates="subscription")
    cycles = relationship("BillingCycle", back_populates="subscription")


class PaymentMethod(Base):
    __tablename__ = "billing_payment_methods"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "method_type", name="uq_billing_payment_methods_sub_type"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_subscriptions.id"), nullable=False
    )
    method_type: Mapped[PaymentMethodType] = mapped_column(
        Enum(PaymentMethodType), default=PaymentMethodType.direct_debit
    )
    status: Mapped[PaymentMethodStatus] = mapped_column(
        Enum(PaymentMethodStatus), default=PaymentMethodStatus.pending
    )
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    holder_name: Mapped[str | None] = mapped_column(String(160))
    holder_tax_id: Mapped[str | None] = mapped_column(String(32))
    account_last4: Mapped[str | None] = mapped_column(String(4))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    subscription = relationship("Subscription", back_populates="payment_methods")
    mandates = relationship("Mandate", back_populates="payment_method")


class Mandate(Base):
    __tablename__ = "billing_mandates"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    payment_method_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_payment_methods.id"), nullable=False
    )
    status: Mapped[MandateStatus] = mapped_column(
        Enum(MandateStatus), default=MandateStatus.pending
    )
    bank_reference: Mapped[str | None] = mapped_column(String(120))
    rejection_code: Mapped[str | None] = mapped_column(String(40))
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_status_check_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    payment_method = relationship("PaymentMethod", back_populates="mandates")


class BillingAdjustment(Base):
    __tablename__ = "billing_adjustments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_subscriptions.id"), nullable=False
    )
    kind: Mapped[AdjustmentKind] = mapped_column(
        Enum(AdjustmentKind), default=AdjustmentKind.addon
    )
    mode: Mapped[AdjustmentMode] = mapped_column(
        Enum(AdjustmentMode), default=AdjustmentMode.absolute
    )
    label: Mapped[str] = mapped_column(String(120), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    starts_on: Mapped[date | None] = mapped_column(Date)
    ends_on: Mapped[date | None] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    subscription = relationship("Subscription", back_populates="adjustments")


class FxRate(Base):
    __tablename__ = "billing_fx_rates"
    __table_args__ = (
        UniqueConstraint("fx_type", "rate_date", name="uq_billing_fx_rates_type_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    fx_type: Mapped[str] = mapped_column(String(40), default="oficial")
    rate_date: Mapped[date] = mapped_column(Date, nullable=False)
    ars_per_usd: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    source: Mapped[str | None] = mapped_column(String(80))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class BillingCycle(Base):
    __tablename__ = "billing_cycles"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "anchor_date", name="uq_billing_cycles_sub_anchor"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_subscriptions.id"), nullable=False
    )
    agency_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    anchor_date: Mapped[date] = mapped_column(Date, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    plan_key: Mapped[str] = mapped_column(String(40), nullable=False)
    billing_users: Mapped[int] = mapped_column(Integer, default=3)
    base_price_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    addons_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    pre_discount_net_usd: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0.00")
    )
    discount_pct: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0.00"))
    discount_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    net_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    vat_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), default=Decimal("0.2100"))
    vat_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    total_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    fx_rate: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    fx_rate_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_ars: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"))
    snapshot: Mapped[dict | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    subscription = relationship("Subscription", back_populates="cycles")
    charges = relationship("Charge", back_populates="cycle")


class Charge(Base):
    __tablename__ = "billing_charges"
    __table_args__ = (
        UniqueConstraint(
            "agency_id", "idempotency_key", name="uq_billing_charges_agency_idempotency"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    agency_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_subscriptions.id"), nullable=False
    )
    cycle_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_cycles.id")
    )
    idempotency_key: Mapped[str] = mapped_column(String(160), nullable=False)
    purpose: Mapped[str] = mapped_column(String(40), default="recurring")
    status: Mapped[ChargeStatus] = mapped_column(
        Enum(ChargeStatus), default=ChargeStatus.pending
    )
    amount_usd_due: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    amount_ars_due: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"))
    amount_ars_paid: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    fx_rate: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    due_date: Mapped[date | None] = mapped_column(Date)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_reference: Mapped[str | None] = mapped_column(String(120))
    paid_via_channel: Mapped[AttemptChannel | None] = mapped_column(Enum(AttemptChannel))
    dunning_stage: Mapped[int] = mapped_column(Integer, default=0)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    subscription = relationship("Subscription")
    cycle = relationship("BillingCycle", back_populates="charges")
    attempts = relationship(
        "Attempt", back_populates="charge", order_by="Attempt.attempt_no"
    )


class Attempt(Base):
    __tablename__ = "billing_attempts"
    __table_args__ = (
        UniqueConstraint("charge_id", "attempt_no", name="uq_billing_attempts_charge_no"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    charge_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_charges.id"), nullable=False
    )
    attempt_no: Mapped[int] = mapped_column(Integer, nullable=False)
    channel: Mapped[AttemptChannel] = mapped_column(
        Enum(AttemptChannel), default=AttemptChannel.direct_debit
    )
    payment_method_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_payment_methods.id")
    )
    status: Mapped[AttemptStatus] = mapped_column(
        Enum(AttemptStatus), default=AttemptStatus.pending
    )
    external_reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    amount_ars: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"))
    scheduled_for: Mapped[date] = mapped_column(Date, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_reference: Mapped[str | None] = mapped_column(String(120))
    result_code: Mapped[str | None] = mapped_column(String(40))
    result_message: Mapped[str | None] = mapped_column(Text)
    detailed_reason: Mapped[str | None] = mapped_column(String(40))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    charge = relationship("Charge", back_populates="attempts")
    payment_method = relationship("PaymentMethod")
