from dataclasses import asdict

from fastapi import APIRouter, Depends, File, Query, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from billing_engine.db import get_db
from billing_engine.schemas.billing import (
    AnchorRunRequest,
    ChargeCancelRequest,
    ExportBatchesRequest,
    FallbackCreateRequest,
    FallbackIntentRead,
    FallbackSyncRequest,
    FileBatchRead,
    FiscalIssueBody,
    FiscalIssueResultRead,
    FxRateRead,
    FxRateUpsert,
    JobRunRead,
    MandateRead,
    MandateTransitionRequest,
    PrepareBatchRequest,
)
from billing_engine.services import billing_jobs
from billing_engine.services.billing.fiscal import fiscal_issuance
from billing_engine.services.billing.fx_rates import fx_rates
from billing_engine.services.collections.direct_debit.batches import presentment_batches
from billing_engine.services.collections.fallback.service import fallback_collections
from billing_engine.services.collections.mandates import mandate_lifecycle
from billing_engine.services.collections.overview import collection_overview

router = APIRouter(prefix="/billing")


# --- Anchor runs & FX ---


@router.post("/anchor-runs", tags=["billing-jobs"])
def trigger_anchor_run(payload: AnchorRunRequest, db: Session = Depends(get_db)) -> dict:
    return billing_jobs.run_anchor_daily(
        db,
        target_date=payload.target_date,
        allow_stale_fx=payload.allow_stale_fx,
        triggered_by="api",
    )


@router.put("/fx-rates", response_model=FxRateRead, tags=["fx-rates"])
def upsert_fx_rate(payload: FxRateUpsert, db: Session = Depends(get_db)):
    record = fx_rates.upsert(
        db, payload.rate_date, payload.ars_per_usd, payload.fx_type, payload.source
    )
    db.commit()
    db.refresh(record)
    return record


# --- Mandates ---


@router.post(
    "/mandates/{mandate_id}/transition",
    response_model=MandateRead,
    tags=["mandates"],
)
def transition_mandate(
    mandate_id: str, payload: MandateTransitionRequest, db: Session = Depends(get_db)
):
    mandate = mandate_lifecycle.transition(
        db,
        mandate_id,
        payload.status,
        bank_reference=payload.bank_reference,
        rejection_code=payload.rejection_code,
        rejection_reason=payload.rejection_reason,
        actor="api",
    )
    db.commit()
    db.refresh(mandate)
    return mandate


# --- Direct debit batches ---


@router.post(
    "/direct-debit/batches",
    status_code=status.HTTP_201_CREATED,
    tags=["direct-debit"],
)
def prepare_batch(payload: PrepareBatchRequest, db: Session = Depends(get_db)) -> dict:
    return billing_jobs.prepare_pd_batch(
        db,
        target_date=payload.business_date,
        adapter_name=payload.adapter,
        triggered_by="api",
    )


@router.post("/direct-debit/batches/export", tags=["direct-debit"])
def export_ready_batches(payload: ExportBatchesRequest, db: Session = Depends(get_db)) -> dict:
    return billing_jobs.export_pd_batch(
        db,
        target_date=payload.business_date,
        adapter_name=payload.adapter,
        triggered_by="api",
    )


@router.post(
    "/direct-debit/batches/{batch_id}/export",
    response_model=FileBatchRead,
    tags=["direct-debit"],
)
def export_batch(batch_id: str, db: Session = Depends(get_db)):
    return presentment_batches.mark_exported(db, batch_id)


@router.get("/direct-debit/batches/{batch_id}/file", tags=["direct-debit"])
def download_batch_file(batch_id: str, db: Session = Depends(get_db)):
    file_name, content = presentment_batches.get_file(db, batch_id)
    return Response(
        content=content,
        media_type="text/plain",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@router.post("/direct-debit/batches/{batch_id}/responses", tags=["direct-debit"])
def import_batch_response(
    batch_id: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
) -> dict:
    content = file.file.read()
    return billing_jobs.reconcile_pd_batch(
        db, batch_id, content, file_name=file.filename, triggered_by="api"
    )


# --- Subscriptions ---


@router.get("/subscriptions/{subscription_id}/collection-status", tags=["collections"])
def get_collection_status(subscription_id: str, db: Session = Depends(get_db)) -> dict:
    return collection_overview.for_subscription(db, subscription_id)


# --- Charges ---


@router.post(
    "/charges/{charge_id}/fiscal-documents",
    response_model=FiscalIssueResultRead,
    tags=["fiscal"],
)
def issue_fiscal_document(
    charge_id: str, payload: FiscalIssueBody, db: Session = Depends(get_db)
):
    result = fiscal_issuance.issue_for_charge(
        db,
        charge_id,
        document_type=payload.document_type,
        force_retry=payload.force_retry,
        actor="api",
    )
    db.commit()
    return FiscalIssueResultRead(**asdict(result))


@router.post("/charges/{charge_id}/cancel", tags=["charges"])
def cancel_charge(
    charge_id: str, payload: ChargeCancelRequest, db: Session = Depends(get_db)
) -> dict:
    return fallback_collections.cancel_charge(db, charge_id, reason=payload.reason, actor="api")


# --- Fallback intents ---


@router.post("/fallback/intents", tags=["fallback"])
def create_fallback_intents(
    payload: FallbackCreateRequest, db: Session = Depends(get_db)
) -> dict:
    return billing_jobs.fallback_create(
        db, provider_name=payload.provider, charge_id=payload.charge_id, triggered_by="api"
    )


@router.post("/fallback/sync", tags=["fallback"])
def sync_fallback_intents(payload: FallbackSyncRequest, db: Session = Depends(get_db)) -> dict:
    return billing_jobs.fallback_status_sync(
        db, provider_name=payload.provider, intent_id=payload.intent_id, triggered_by="api"
    )


@router.get(
    "/fallback/intents/{intent_id}",
    response_model=FallbackIntentRead,
    tags=["fallback"],
)
def get_fallback_intent(intent_id: str, db: Session = Depends(get_db)):
    return fallback_collections.get_intent(db, intent_id)


@router.post("/fallback/intents/{intent_id}/cancel", tags=["fallback"])
def cancel_fallback_intent(intent_id: str, db: Session = Depends(get_db)) -> dict:
    return fallback_collections.cancel_intent(db, intent_id, actor="api")


# --- Jobs ---


@router.get("/jobs/runs", response_model=list[JobRunRead], tags=["billing-jobs"])
def list_job_runs(
    job_name: str | None = None,
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_jobs.list_job_runs(db, job_name=job_name, limit=limit, offset=offset)


@router.post("/jobs/cron-tick", tags=["billing-jobs"])
def run_cron_tick(db: Session = Depends(get_db)) -> dict:
    return billing_jobs.cron_tick(db)


@router.get("/jobs/overview", tags=["billing-jobs"])
def get_jobs_overview(
    runs_limit: int = Query(default=12, ge=1, le=100),
    db: Session = Depends(get_db),
) -> dict:
    return billing_jobs.jobs_overview(db, runs_limit=runs_limit)
