import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Enum, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.db import Base


class BillingJobStatus(enum.Enum):
    running = "running"
    success = "success"
    partial = "partial"
    failed = "failed"
    no_op = "no_op"
    skipped_locked = "skipped_locked"


class BillingJobRun(Base):
    __tablename__ = "billing_job_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    job_name: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    lock_key: Mapped[str | None] = mapped_column(String(160))
    status: Mapped[BillingJobStatus] = mapped_column(
        Enum(BillingJobStatus), default=BillingJobStatus.running
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    params: Mapped[dict | None] = mapped_column(JSON)
    summary: Mapped[dict | None] = mapped_column(JSON)
    error: Mapped[str | None] = mapped_column(Text)
    triggered_by: Mapped[str | None] = mapped_column(String(120))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class BillingJobLock(Base):
    __tablename__ = "billing_job_locks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lock_key: Mapped[str] = mapped_column(String(160), unique=True, nullable=False)
    owner_run_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
