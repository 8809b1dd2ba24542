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


class FiscalDocumentType(enum.Enum):
    invoice_a = "invoice_a"
    invoice_b = "invoice_b"
    invoice_c = "invoice_c"


class FiscalDocumentStatus(enum.Enum):
    pending = "pending"
    issued = "issued"
    failed = "failed"


class FiscalDocument(Base):
    __tablename__ = "billing_fiscal_documents"
    __table_args__ = (
        UniqueConstraint(
            "charge_id", "document_type", name="uq_billing_fiscal_documents_charge_type"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    charge_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_charges.id"), nullable=False
    )
    agency_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    document_type: Mapped[FiscalDocumentType] = mapped_column(
        Enum(FiscalDocumentType), default=FiscalDocumentType.invoice_b
    )
    status: Mapped[FiscalDocumentStatus] = mapped_column(
        Enum(FiscalDocumentStatus), default=FiscalDocumentStatus.pending
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), default="ARS")
    point_of_sale: Mapped[int | None] = mapped_column(Integer)
    voucher_type: Mapped[int | None] = mapped_column(Integer)
    document_number: Mapped[str | None] = mapped_column(String(40))
    external_reference: Mapped[str | None] = mapped_column(String(120))
    cae: Mapped[str | None] = mapped_column(String(40))
    cae_due_date: Mapped[date | None] = mapped_column(Date)
    request_payload: Mapped[dict | None] = mapped_column(JSON)
    response_payload: Mapped[dict | None] = mapped_column(JSON)
    error_message: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    charge = relationship("Charge")
