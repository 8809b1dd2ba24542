import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
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


class FallbackIntentStatus(enum.Enum):
    pending = "pending"
    paid = "paid"
    expired = "expired"
    canceled = "canceled"


class FileBatchDirection(enum.Enum):
    outbound = "outbound"
    inbound = "inbound"


class FileBatchStatus(enum.Enum):
    ready = "ready"
    exported = "exported"
    processing = "processing"
    imported = "imported"
    failed = "failed"


class FileBatchItemStatus(enum.Enum):
    presented = "presented"
    paid = "paid"
    rejected = "rejected"
    error = "error"
    unknown = "unknown"
    unmatched = "unmatched"


class FallbackIntent(Base):
    __tablename__ = "billing_fallback_intents"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    charge_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_charges.id"), nullable=False
    )
    attempt_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_attempts.id")
    )
    agency_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[FallbackIntentStatus] = mapped_column(
        Enum(FallbackIntentStatus), default=FallbackIntentStatus.pending
    )
    provider_status: Mapped[str | None] = mapped_column(String(40))
    provider_payment_id: Mapped[str | None] = mapped_column(String(120))
    external_reference: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(160), unique=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), default="ARS")
    payment_url: Mapped[str | None] = mapped_column(String(500))
    qr_payload: Mapped[str | None] = mapped_column(Text)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    charge = relationship("Charge")
    attempt = relationship("Attempt")


class FileBatch(Base):
    __tablename__ = "billing_file_batches"
    __table_args__ = (
        UniqueConstraint("direction", "sha256", name="uq_billing_file_batches_direction_sha"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    direction: Mapped[FileBatchDirection] = mapped_column(
        Enum(FileBatchDirection), nullable=False
    )
    adapter: Mapped[str] = mapped_column(String(40), nullable=False)
    business_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[FileBatchStatus] = mapped_column(
        Enum(FileBatchStatus), default=FileBatchStatus.ready
    )
    parent_batch_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_file_batches.id")
    )
    file_name: Mapped[str] = mapped_column(String(200), nullable=False)
    storage_key: Mapped[str | None] = mapped_column(String(300))
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, default=0)
    amount_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"))
    checksum: Mapped[str | None] = mapped_column(String(64))
    validation_errors: Mapped[list | None] = mapped_column(JSON)
    warnings: Mapped[list | None] = mapped_column(JSON)
    summary: Mapped[dict | None] = mapped_column(JSON)
    exported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    imported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[str | None] = mapped_column(String(120))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    parent_batch = relationship("FileBatch", remote_side=[id])
    items = relationship("FileBatchItem", back_populates="batch")


class FileBatchItem(Base):
    __tablename__ = "billing_file_batch_items"
    __table_args__ = (
        UniqueConstraint("batch_id", "attempt_id", name="uq_billing_file_batch_items_attempt"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_file_batches.id"), nullable=False
    )
    attempt_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_attempts.id")
    )
    line_no: Mapped[int] = mapped_column(Integer, default=0)
    external_reference: Mapped[str | None] = mapped_column(String(64))
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    raw_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[FileBatchItemStatus] = mapped_column(
        Enum(FileBatchItemStatus), default=FileBatchItemStatus.presented
    )
    result_code: Mapped[str | None] = mapped_column(String(40))
    result_message: Mapped[str | None] = mapped_column(Text)
    detailed_reason: Mapped[str | None] = mapped_column(String(40))
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    trace_id: Mapped[str | None] = mapped_column(String(80))
    operation_id: Mapped[str | None] = mapped_column(String(80))
    error_message: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    batch = relationship("FileBatch", back_populates="items")
    attempt = relationship("Attempt")
