"""Scheduled billing jobs with run history and database locks.

Every job goes through ``execute_billing_job``: it records a
``BillingJobRun``, takes a ``BillingJobLock`` keyed by what the job works on
(for example ``billing:run_anchor:2026-03-08``) and classifies the outcome.
Overlapping invocations of the same key end as ``skipped_locked``.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta

from fastapi import HTTPException
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_engine.config import BillingConfig, get_billing_config
from billing_engine.metrics import record_billing_job
from billing_engine.models.collections import FileBatch, FileBatchStatus
from billing_engine.models.jobs import BillingJobLock, BillingJobRun, BillingJobStatus
from billing_engine.services.billing.anchor_runner import anchor_cycle_runner
from billing_engine.services.billing.dates import local_date, start_of_local_day
from billing_engine.services.collections.direct_debit.batches import presentment_batches
from billing_engine.services.collections.dunning import dunning
from billing_engine.services.collections.fallback.service import fallback_collections
from billing_engine.services.collections.overview import collection_overview
from billing_engine.services.common import apply_pagination, get_or_404

logger = logging.getLogger(__name__)

JobFn = Callable[[Session], tuple[BillingJobStatus, dict]]


def classify(done: int, errors: int) -> BillingJobStatus:
    if errors:
        return BillingJobStatus.partial if done else BillingJobStatus.failed
    if not done:
        return BillingJobStatus.no_op
    return BillingJobStatus.success


def acquire_lock(
    db: Session,
    lock_key: str,
    owner_run_id,
    ttl_seconds: int,
    now: datetime | None = None,
) -> bool:
    """Take the lock, or take it over when expired or released."""
    now = now or datetime.now(UTC)
    expires_at = now + timedelta(seconds=max(1, ttl_seconds))
    try:
        with db.begin_nested():
            db.add(
                BillingJobLock(
                    lock_key=lock_key,
                    owner_run_id=owner_run_id,
                    acquired_at=now,
                    expires_at=expires_at,
                )
            )
            db.flush()
        db.commit()
        return True
    except IntegrityError:
        pass
    taken = (
        db.query(BillingJobLock)
        .filter(BillingJobLock.lock_key == lock_key)
        .filter(or_(BillingJobLock.expires_at <= now, BillingJobLock.released_at.isnot(None)))
        .update(
            {
                "owner_run_id": owner_run_id,
                "acquired_at": now,
                "expires_at": expires_at,
                "released_at": None,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return taken > 0


def release_lock(db: Session, lock_key: str, owner_run_id) -> bool:
    released = (
        db.query(BillingJobLock)
        .filter(BillingJobLock.lock_key == lock_key)
        .filter(BillingJobLock.owner_run_id == owner_run_id)
        .filter(BillingJobLock.released_at.is_(None))
        .update({"released_at": datetime.now(UTC)}, synchronize_session=False)
    )
    db.commit()
    return released > 0


def _run_result(run: BillingJobRun) -> dict:
    return {
        "run_id": str(run.id),
        "job_name": run.job_name,
        "status": run.status.value,
        "lock_key": run.lock_key,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "duration_ms": run.duration_ms,
        "summary": run.summary or {},
        "error": run.error,
    }


def _error_message(exc: Exception) -> str:
    if isinstance(exc, HTTPException):
        return str(exc.detail)
    return str(exc) or exc.__class__.__name__


def execute_billing_job(
    db: Session,
    job_name: str,
    lock_key: str,
    fn: JobFn,
    params: dict | None = None,
    triggered_by: str | None = None,
    config: BillingConfig | None = None,
) -> dict:
    config = config or get_billing_config()
    start = time.monotonic()
    run = BillingJobRun(
        job_name=job_name,
        lock_key=lock_key,
        status=BillingJobStatus.running,
        params=params or {},
        triggered_by=triggered_by or "system",
    )
    db.add(run)
    db.commit()
    run_id = run.id
    logger.info("billing_job_start job=%s run_id=%s lock=%s", job_name, run_id, lock_key)

    locked = False
    status = BillingJobStatus.failed
    summary: dict = {}
    error = None
    try:
        locked = acquire_lock(db, lock_key, run_id, config.job_lock_ttl_seconds)
        if not locked:
            status = BillingJobStatus.skipped_locked
            logger.info("billing_job_skipped_locked job=%s lock=%s", job_name, lock_key)
        else:
            status, summary = fn(db)
    except Exception as exc:
        db.rollback()
        status = BillingJobStatus.failed
        error = _error_message(exc)
        logger.exception("billing_job_failed job=%s run_id=%s", job_name, run_id)
    finally:
        if locked:
            release_lock(db, lock_key, run_id)
        run = db.get(BillingJobRun, run_id)
        run.status = status
        run.summary = summary
        run.error = error
        run.finished_at = datetime.now(UTC)
        duration = time.monotonic() - start
        run.duration_ms = int(duration * 1000)
        db.commit()
        record_billing_job(job_name, status.value, duration)
    logger.info(
        "billing_job_finished job=%s run_id=%s status=%s duration_ms=%s",
        job_name,
        run_id,
        status.value,
        run.duration_ms,
    )
    return _run_result(run)


def _target_date(config: BillingConfig, target_date: date | None) -> date:
    return target_date or local_date(datetime.now(UTC), config.default_timezone)


def _job_moment(
    config: BillingConfig, target_date: date | None, now: datetime | None
) -> tuple[datetime, date]:
    """Instant a per-timezone job runs at, and its day in the default timezone.

    A ``target_date`` runs as the instant that day begins in the default
    timezone; otherwise ``now`` (or the current time) is used.
    """
    if target_date is not None:
        return start_of_local_day(target_date, config.default_timezone), target_date
    run_at = now or datetime.now(UTC)
    return run_at, local_date(run_at, config.default_timezone)


def run_anchor_daily(
    db: Session,
    target_date: date | None = None,
    config: BillingConfig | None = None,
    allow_stale_fx: bool | None = None,
    triggered_by: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Bill every subscription whose anchor has arrived in its own timezone."""
    config = config or get_billing_config()
    run_at, target_date = _job_moment(config, target_date, now)

    def _run(session: Session):
        summary = anchor_cycle_runner.run(
            session,
            run_at=run_at,
            config=config,
            actor=triggered_by,
            allow_stale_fx=allow_stale_fx,
        )
        status = classify(summary["subscriptions_processed"], len(summary["errors"]))
        return status, summary

    return execute_billing_job(
        db,
        "run_anchor_daily",
        f"billing:run_anchor:{target_date.isoformat()}",
        _run,
        params={"target_date": target_date.isoformat(), "allow_stale_fx": allow_stale_fx},
        triggered_by=triggered_by,
        config=config,
    )


def prepare_pd_batch(
    db: Session,
    target_date: date | None = None,
    config: BillingConfig | None = None,
    adapter_name: str | None = None,
    triggered_by: str | None = None,
) -> dict:
    config = config or get_billing_config()
    target_date = _target_date(config, target_date)
    adapter_name = (adapter_name or config.pd_adapter).strip().lower()

    def _run(session: Session):
        result = presentment_batches.prepare(
            session,
            business_date=target_date,
            config=config,
            adapter_name=adapter_name,
            actor=triggered_by,
        )
        if result["status"] == "no_op":
            return BillingJobStatus.no_op, result
        return BillingJobStatus.success, result

    return execute_billing_job(
        db,
        "prepare_pd_batch",
        f"billing:prepare_batch:{adapter_name}:{target_date.isoformat()}",
        _run,
        params={"target_date": target_date.isoformat(), "adapter": adapter_name},
        triggered_by=triggered_by,
        config=config,
    )


def export_pd_batch(
    db: Session,
    target_date: date | None = None,
    config: BillingConfig | None = None,
    adapter_name: str | None = None,
    batch_id=None,
    triggered_by: str | None = None,
) -> dict:
    """Export one outbound batch, or every ready one for the adapter."""
    config = config or get_billing_config()
    target_date = _target_date(config, target_date)
    adapter_name = (adapter_name or config.pd_adapter).strip().lower()
    lock_key = (
        f"billing:export_batch:{batch_id}"
        if batch_id
        else f"billing:export_batch:{adapter_name}:{target_date.isoformat()}"
    )

    def _run(session: Session):
        if batch_id:
            batch = get_or_404(session, FileBatch, batch_id, "Batch not found")
            already_exported = batch.status != FileBatchStatus.ready
            batch = presentment_batches.mark_exported(session, batch_id)
            summary = {
                "batch_id": str(batch.id),
                "exported": not already_exported,
                "already_exported": already_exported,
                "status": batch.status.value,
                "record_count": batch.record_count,
                "amount_total": str(batch.amount_total),
            }
            status = BillingJobStatus.no_op if already_exported else BillingJobStatus.success
            return status, summary
        summary = presentment_batches.export_ready(session, adapter_name, target_date)
        return classify(summary["batches_exported"], len(summary["errors"])), summary

    return execute_billing_job(
        db,
        "export_pd_batch",
        lock_key,
        _run,
        params={
            "target_date": target_date.isoformat(),
            "adapter": adapter_name,
            "batch_id": str(batch_id) if batch_id else None,
        },
        triggered_by=triggered_by,
        config=config,
    )


def reconcile_pd_batch(
    db: Session,
    outbound_batch_id,
    content: bytes,
    file_name: str | None = None,
    config: BillingConfig | None = None,
    triggered_by: str | None = None,
) -> dict:
    config = config or get_billing_config()
    file_hash = hashlib.sha256(content).hexdigest()

    def _run(session: Session):
        result = presentment_batches.import_response(
            session,
            outbound_batch_id,
            content,
            file_name=file_name,
            config=config,
            actor=triggered_by,
        )
        if result["status"] == "already_imported":
            return BillingJobStatus.no_op, result
        if result["status"] == "failed":
            return BillingJobStatus.failed, result
        applied = result["paid"] + result["rejected"]
        problems = result["errors"] + result["unknown"] + result["unmatched"]
        if problems:
            return BillingJobStatus.partial, result
        return classify(applied, 0), result

    return execute_billing_job(
        db,
        "reconcile_pd_batch",
        f"billing:reconcile:{outbound_batch_id}:{file_hash[:16]}",
        _run,
        params={"outbound_batch_id": str(outbound_batch_id), "file_name": file_name},
        triggered_by=triggered_by,
        config=config,
    )


def dunning_retry(
    db: Session,
    target_date: date | None = None,
    config: BillingConfig | None = None,
    triggered_by: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Schedule missing retries, then bring subscription statuses up to date."""
    config = config or get_billing_config()
    run_at, target_date = _job_moment(config, target_date, now)

    def _run(session: Session):
        summary = dunning.sweep(session, config=config, today=target_date, actor=triggered_by)
        statuses = collection_overview.sync_statuses(
            session, now=run_at, config=config, actor=triggered_by
        )
        summary["subscriptions_updated"] = statuses["updated"]
        summary["status_transitions"] = statuses["transitions"]
        done = summary["retries_scheduled"] + summary["charges_failed"] + statuses["updated"]
        return classify(done, summary["errors"]), summary

    return execute_billing_job(
        db,
        "dunning_retry",
        f"billing:dunning:{target_date.isoformat()}",
        _run,
        params={"target_date": target_date.isoformat()},
        triggered_by=triggered_by,
        config=config,
    )


def fallback_create(
    db: Session,
    target_date: date | None = None,
    config: BillingConfig | None = None,
    provider_name: str | None = None,
    charge_id=None,
    triggered_by: str | None = None,
) -> dict:
    config = config or get_billing_config()
    target_date = _target_date(config, target_date)
    provider_name = (provider_name or config.fallback_provider).strip().lower()
    lock_key = (
        f"billing:fallback_create:charge:{charge_id}"
        if charge_id
        else f"billing:fallback_create:{target_date.isoformat()}"
    )

    def _run(session: Session):
        summary = fallback_collections.create_intents(
            session,
            config=config,
            provider_name=provider_name,
            charge_id=charge_id,
            actor=triggered_by,
        )
        return classify(summary["created"], summary["errors"]), summary

    return execute_billing_job(
        db,
        "fallback_create",
        lock_key,
        _run,
        params={
            "target_date": target_date.isoformat(),
            "provider": provider_name,
            "charge_id": str(charge_id) if charge_id else None,
        },
        triggered_by=triggered_by,
        config=config,
    )


def fallback_status_sync(
    db: Session,
    target_date: date | None = None,
    config: BillingConfig | None = None,
    provider_name: str | None = None,
    intent_id=None,
    triggered_by: str | None = None,
) -> dict:
    config = config or get_billing_config()
    target_date = _target_date(config, target_date)
    provider_name = (provider_name or config.fallback_provider).strip().lower()
    lock_key = (
        f"billing:fallback_sync:intent:{intent_id}"
        if intent_id
        else f"billing:fallback_sync:{provider_name}:{target_date.isoformat()}"
    )

    def _run(session: Session):
        summary = fallback_collections.sync_statuses(
            session,
            config=config,
            provider_name=provider_name,
            intent_id=intent_id,
            actor=triggered_by,
        )
        done = summary["considered"] - summary["errors"]
        return classify(done, summary["errors"]), summary

    return execute_billing_job(
        db,
        "fallback_status_sync",
        lock_key,
        _run,
        params={
            "target_date": target_date.isoformat(),
            "provider": provider_name,
            "intent_id": str(intent_id) if intent_id else None,
        },
        triggered_by=triggered_by,
        config=config,
    )


def cron_tick(
    db: Session,
    now: datetime | None = None,
    config: BillingConfig | None = None,
) -> dict:
    """Run every enabled job for the current local day, in pipeline order."""
    config = config or get_billing_config()
    now = now or datetime.now(UTC)
    today = local_date(now, config.default_timezone)
    results: dict[str, dict | None] = {
        "run_anchor": None,
        "prepare_batch": None,
        "export_batch": None,
        "dunning_retry": None,
        "fallback_create": None,
        "fallback_status_sync": None,
    }
    if config.cron_run_anchor:
        results["run_anchor"] = run_anchor_daily(
            db, config=config, triggered_by="cron", now=now
        )
    if config.cron_prepare_batch:
        results["prepare_batch"] = prepare_pd_batch(
            db, target_date=today, config=config, triggered_by="cron"
        )
    if config.cron_export_batch:
        results["export_batch"] = export_pd_batch(
            db, target_date=today, config=config, triggered_by="cron"
        )
    if config.cron_dunning:
        results["dunning_retry"] = dunning_retry(
            db, config=config, triggered_by="cron", now=now
        )
    if config.cron_fallback:
        results["fallback_create"] = fallback_create(
            db, target_date=today, config=config, triggered_by="cron"
        )
        results["fallback_status_sync"] = fallback_status_sync(
            db, target_date=today, config=config, triggered_by="cron"
        )
    return {"date": today.isoformat(), "timezone": config.default_timezone, **results}


def list_job_runs(
    db: Session,
    job_name: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[BillingJobRun]:
    query = db.query(BillingJobRun)
    if job_name:
        query = query.filter(BillingJobRun.job_name == job_name)
    return apply_pagination(query.order_by(BillingJobRun.started_at.desc()), limit, offset).all()


def jobs_overview(
    db: Session,
    now: datetime | None = None,
    config: BillingConfig | None = None,
    runs_limit: int = 12,
) -> dict:
    config = config or get_billing_config()
    tz_name = config.default_timezone
    today = local_date(now or datetime.now(UTC), tz_name)
    return {
        "timezone": tz_name,
        "today": today.isoformat(),
        "metrics": collection_overview.daily_metrics(db, today, tz_name),
        "recent_runs": [_run_result(run) for run in list_job_runs(db, limit=runs_limit)],
    }
