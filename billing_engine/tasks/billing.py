from datetime import date

from billing_engine.celery_app import celery_app
from billing_engine.db import SessionLocal
from billing_engine.services import billing_jobs
from billing_engine.services.object_storage import get_storage


def _parse_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


@celery_app.task(name="billing_engine.tasks.billing.run_anchor_daily")
def run_anchor_daily(target_date: str | None = None):
    session = SessionLocal()
    try:
        return billing_jobs.run_anchor_daily(
            session, target_date=_parse_date(target_date), triggered_by="celery"
        )
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="billing_engine.tasks.billing.prepare_pd_batch")
def prepare_pd_batch(target_date: str | None = None, adapter: str | None = None):
    session = SessionLocal()
    try:
        return billing_jobs.prepare_pd_batch(
            session,
            target_date=_parse_date(target_date),
            adapter_name=adapter,
            triggered_by="celery",
        )
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="billing_engine.tasks.billing.export_pd_batch")
def export_pd_batch(
    target_date: str | None = None, adapter: str | None = None, batch_id: str | None = None
):
    session = SessionLocal()
    try:
        return billing_jobs.export_pd_batch(
            session,
            target_date=_parse_date(target_date),
            adapter_name=adapter,
            batch_id=batch_id,
            triggered_by="celery",
        )
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="billing_engine.tasks.billing.reconcile_pd_batch")
def reconcile_pd_batch(outbound_batch_id: str, storage_key: str, file_name: str | None = None):
    session = SessionLocal()
    try:
        content = get_storage().download(storage_key)
        return billing_jobs.reconcile_pd_batch(
            session,
            outbound_batch_id,
            content,
            file_name=file_name or storage_key.rsplit("/", 1)[-1],
            triggered_by="celery",
        )
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="billing_engine.tasks.billing.dunning_retry")
def dunning_retry(target_date: str | None = None):
    session = SessionLocal()
    try:
        return billing_jobs.dunning_retry(
            session, target_date=_parse_date(target_date), triggered_by="celery"
        )
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="billing_engine.tasks.billing.fallback_create")
def fallback_create(target_date: str | None = None, provider: str | None = None):
    session = SessionLocal()
    try:
        return billing_jobs.fallback_create(
            session,
            target_date=_parse_date(target_date),
            provider_name=provider,
            triggered_by="celery",
        )
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="billing_engine.tasks.billing.fallback_status_sync")
def fallback_status_sync(provider: str | None = None):
    session = SessionLocal()
    try:
        return billing_jobs.fallback_status_sync(
            session, provider_name=provider, triggered_by="celery"
        )
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="billing_engine.tasks.billing.cron_tick")
def cron_tick():
    session = SessionLocal()
    try:
        return billing_jobs.cron_tick(session)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
