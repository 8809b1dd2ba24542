from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from billing_engine.models.billing import MandateStatus
from billing_engine.models.collections import (
    FallbackIntentStatus,
    FileBatchDirection,
    FileBatchStatus,
)
from billing_engine.models.fiscal import FiscalDocumentType
from billing_engine.models.jobs import BillingJobStatus


class AnchorRunRequest(BaseModel):
    target_date: date | None = None
    allow_stale_fx: bool | None = None


class FxRateUpsert(BaseModel):
    rate_date: date
    ars_per_usd: Decimal = Field(gt=0)
    fx_type: str = Field(default="oficial", max_length=40)
    source: str | None = Field(default=None, max_length=80)


class FxRateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    fx_type: str
    rate_date: date
    ars_per_usd: Decimal
    source: str | None = None


class MandateTransitionRequest(BaseModel):
    status: MandateStatus
    bank_reference: str | None = Field(default=None, max_length=120)
    rejection_code: str | None = Field(default=None, max_length=40)
    rejection_reason: str | None = None


class MandateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payment_method_id: UUID
    status: MandateStatus
    bank_reference: str | None = None
    rejection_code: str | None = None
    rejection_reason: str | None = None
    activated_at: datetime | None = None
    revoked_at: datetime | None = None
    last_status_check_at: datetime | None = None


class PrepareBatchRequest(BaseModel):
    business_date: date | None = None
    adapter: str | None = Field(default=None, max_length=40)


class ExportBatchesRequest(BaseModel):
    business_date: date | None = None
    adapter: str | None = Field(default=None, max_length=40)


class FileBatchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    direction: FileBatchDirection
    adapter: str
    business_date: date
    status: FileBatchStatus
    parent_batch_id: UUID | None = None
    file_name: str
    record_count: int
    amount_total: Decimal
    checksum: str | None = None
    validation_errors: list | None = None
    warnings: list | None = None
    summary: dict | None = None
    exported_at: datetime | None = None
    imported_at: datetime | None = None


class FiscalIssueBody(BaseModel):
    document_type: FiscalDocumentType | None = None
    force_retry: bool = False


class FiscalIssueResultRead(BaseModel):
    ok: bool
    status: str
    document_id: str | None = None
    document_number: str | None = None
    message: str | None = None
    already_issued: bool = False


class FallbackCreateRequest(BaseModel):
    charge_id: UUID | None = None
    provider: str | None = Field(default=None, max_length=40)


class FallbackSyncRequest(BaseModel):
    intent_id: UUID | None = None
    provider: str | None = Field(default=None, max_length=40)


class FallbackIntentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    charge_id: UUID
    provider: str
    status: FallbackIntentStatus
    provider_status: str | None = None
    external_reference: str
    amount: Decimal
    currency: str
    payment_url: str | None = None
    qr_payload: str | None = None
    expires_at: datetime | None = None
    paid_at: datetime | None = None


class ChargeCancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=200)


class JobRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_name: str
    lock_key: str | None = None
    status: BillingJobStatus
    started_at: datetime
    finished_at: datetime | None = None
    duration_ms: int | None = None
    params: dict | None = None
    summary: dict | None = None
    error: str | None = None
    triggered_by: str | None = None
