"""Tests for scheduled billing jobs, locks and run history."""

import uuid
from datetime import UTC, date, datetime, timedelta

import pytest

from billing_engine.models import (
    BillingCycle,
    BillingJobLock,
    BillingJobRun,
    BillingJobStatus,
    FileBatch,
    FileBatchStatus,
    SubscriptionStatus,
)
from billing_engine.services import billing_jobs
from billing_engine.services.billing_jobs import (
    acquire_lock,
    classify,
    execute_billing_job,
    release_lock,
)
from billing_engine.services.collections.direct_debit import batches as batches_module

ANCHOR_DATE = date(2026, 3, 8)


@pytest.fixture()
def patched_storage(monkeypatch, storage):
    monkeypatch.setattr(batches_module, "get_storage", lambda: storage)
    return storage


def _live_lock(db_session, key):
    now = datetime.now(UTC)
    db_session.add(
        BillingJobLock(lock_key=key, acquired_at=now, expires_at=now + timedelta(minutes=10))
    )
    db_session.commit()


@pytest.mark.parametrize(
    "done,errors,expected",
    [
        (3, 0, BillingJobStatus.success),
        (0, 0, BillingJobStatus.no_op),
        (2, 1, BillingJobStatus.partial),
        (0, 2, BillingJobStatus.failed),
    ],
)
def test_classify(done, errors, expected):
    assert classify(done, errors) == expected


class TestLocks:
    def test_acquire_and_release(self, db_session):
        assert acquire_lock(db_session, "billing:test", None, 60)
        assert not acquire_lock(db_session, "billing:test", None, 60)

    def test_released_lock_can_be_taken(self, db_session):
        owner = uuid.uuid4()
        assert acquire_lock(db_session, "billing:test", owner, 60)
        assert release_lock(db_session, "billing:test", owner)
        assert acquire_lock(db_session, "billing:test", uuid.uuid4(), 60)

    def test_expired_lock_taken_over(self, db_session):
        now = datetime.now(UTC)
        db_session.add(
            BillingJobLock(
                lock_key="billing:stale",
                acquired_at=now - timedelta(hours=2),
                expires_at=now - timedelta(hours=1),
            )
        )
        db_session.commit()
        assert acquire_lock(db_session, "billing:stale", None, 60, now=now)

    def test_release_requires_owner(self, db_session):
        owner = uuid.uuid4()
        acquire_lock(db_session, "billing:test", owner, 60)
        assert not release_lock(db_session, "billing:test", uuid.uuid4())


class TestExecuteBillingJob:
    def test_records_successful_run(self, db_session, billing_config):
        result = execute_billing_job(
            db_session,
            "demo",
            "billing:demo",
            lambda session: (BillingJobStatus.success, {"done": 1}),
            params={"x": 1},
            triggered_by="test",
            config=billing_config,
        )

        assert result["status"] == "success"
        assert result["summary"] == {"done": 1}
        run = db_session.query(BillingJobRun).one()
        assert run.triggered_by == "test"
        assert run.finished_at is not None
        assert run.duration_ms is not None
        lock = db_session.query(BillingJobLock).filter_by(lock_key="billing:demo").one()
        assert lock.released_at is not None

    def test_skipped_when_locked(self, db_session, billing_config):
        _live_lock(db_session, "billing:demo")
        called = []

        result = execute_billing_job(
            db_session,
            "demo",
            "billing:demo",
            lambda session: called.append(1) or (BillingJobStatus.success, {}),
            config=billing_config,
        )

        assert result["status"] == "skipped_locked"
        assert called == []

    def test_failure_recorded_and_lock_released(self, db_session, billing_config):
        def boom(session):
            raise RuntimeError("kaput")

        result = execute_billing_job(
            db_session, "demo", "billing:demo", boom, config=billing_config
        )

        assert result["status"] == "failed"
        assert result["error"] == "kaput"
        follow_up = execute_billing_job(
            db_session,
            "demo",
            "billing:demo",
            lambda session: (BillingJobStatus.no_op, {}),
            config=billing_config,
        )
        assert follow_up["status"] == "no_op"


class TestJobs:
    def test_run_anchor_daily(
        self, db_session, subscription, payment_method, mandate, fx_rate, billing_config
    ):
        result = billing_jobs.run_anchor_daily(
            db_session, target_date=ANCHOR_DATE, config=billing_config, triggered_by="test"
        )

        assert result["status"] == "success"
        assert result["lock_key"] == "billing:run_anchor:2026-03-08"
        assert result["summary"]["cycles_created"] == 1
        assert db_session.query(BillingCycle).count() == 1

        again = billing_jobs.run_anchor_daily(
            db_session, target_date=ANCHOR_DATE, config=billing_config
        )
        assert again["status"] == "no_op"

    def test_run_anchor_daily_respects_subscription_timezone(
        self, db_session, subscription, payment_method, mandate, fx_rate, billing_config
    ):
        subscription.timezone_name = "Pacific/Honolulu"
        subscription.next_anchor_date = ANCHOR_DATE
        db_session.commit()

        # midnight in Buenos Aires is still Mar 7 in Honolulu
        early = billing_jobs.run_anchor_daily(
            db_session, target_date=ANCHOR_DATE, config=billing_config
        )
        assert early["status"] == "no_op"
        assert early["summary"]["skipped_not_due"] == 1
        assert db_session.query(BillingCycle).count() == 0

        later = billing_jobs.run_anchor_daily(
            db_session, config=billing_config, now=datetime(2026, 3, 8, 12, 0, tzinfo=UTC)
        )
        assert later["status"] == "success"
        assert later["lock_key"] == "billing:run_anchor:2026-03-08"
        cycle = db_session.query(BillingCycle).one()
        assert cycle.anchor_date == ANCHOR_DATE

    def test_run_anchor_daily_skips_when_locked(
        self, db_session, subscription, payment_method, mandate, fx_rate, billing_config
    ):
        _live_lock(db_session, "billing:run_anchor:2026-03-08")

        result = billing_jobs.run_anchor_daily(
            db_session, target_date=ANCHOR_DATE, config=billing_config
        )

        assert result["status"] == "skipped_locked"
        assert db_session.query(BillingCycle).count() == 0

    def test_run_anchor_daily_failed_without_fx(
        self, db_session, subscription, payment_method, mandate, billing_config
    ):
        result = billing_jobs.run_anchor_daily(
            db_session, target_date=ANCHOR_DATE, config=billing_config
        )
        assert result["status"] == "failed"
        assert len(result["summary"]["errors"]) == 1

    def test_prepare_and_reconcile(
        self, db_session, anchor_charge, billing_config, patched_storage
    ):
        from billing_engine.services.collections.direct_debit.batches import presentment_batches

        prepared = billing_jobs.prepare_pd_batch(
            db_session, target_date=ANCHOR_DATE, config=billing_config
        )
        assert prepared["status"] == "success"
        batch_id = prepared["summary"]["batch_id"]
        assert db_session.query(FileBatch).count() == 1

        content = presentment_batches.render_sandbox_response(db_session, batch_id)
        reconciled = billing_jobs.reconcile_pd_batch(
            db_session, batch_id, content, file_name="resp.csv", config=billing_config
        )
        assert reconciled["status"] == "success"
        assert reconciled["summary"]["paid"] == 1

        repeated = billing_jobs.reconcile_pd_batch(
            db_session, batch_id, content, file_name="resp.csv", config=billing_config
        )
        assert repeated["status"] == "no_op"

    def test_prepare_with_nothing_due(self, db_session, billing_config, patched_storage):
        result = billing_jobs.prepare_pd_batch(
            db_session, target_date=ANCHOR_DATE, config=billing_config
        )
        assert result["status"] == "no_op"

    def test_dunning_retry_no_op(self, db_session, anchor_charge, billing_config):
        result = billing_jobs.dunning_retry(
            db_session, target_date=ANCHOR_DATE, config=billing_config
        )
        assert result["status"] == "no_op"
        assert result["lock_key"] == "billing:dunning:2026-03-08"

    def test_fallback_jobs_no_op(self, db_session, billing_config):
        created = billing_jobs.fallback_create(
            db_session, target_date=ANCHOR_DATE, config=billing_config
        )
        synced = billing_jobs.fallback_status_sync(
            db_session, target_date=ANCHOR_DATE, config=billing_config
        )
        assert created["status"] == "no_op"
        assert synced["status"] == "no_op"
        assert synced["lock_key"] == "billing:fallback_sync:cig_qr:2026-03-08"

    def test_export_ready_batches(
        self, db_session, anchor_charge, billing_config, patched_storage
    ):
        prepared = billing_jobs.prepare_pd_batch(
            db_session, target_date=ANCHOR_DATE, config=billing_config
        )
        batch_id = prepared["summary"]["batch_id"]

        result = billing_jobs.export_pd_batch(
            db_session, target_date=ANCHOR_DATE, config=billing_config
        )

        assert result["status"] == "success"
        assert result["lock_key"] == "billing:export_batch:debug_csv:2026-03-08"
        assert result["summary"]["batches_exported"] == 1
        assert result["summary"]["batch_ids"] == [batch_id]
        batch = db_session.query(FileBatch).one()
        assert batch.status == FileBatchStatus.exported
        assert batch.exported_at is not None

        again = billing_jobs.export_pd_batch(
            db_session, target_date=ANCHOR_DATE, config=billing_config
        )
        assert again["status"] == "no_op"
        assert again["summary"]["batches_considered"] == 0

    def test_export_single_batch(
        self, db_session, anchor_charge, billing_config, patched_storage
    ):
        prepared = billing_jobs.prepare_pd_batch(
            db_session, target_date=ANCHOR_DATE, config=billing_config
        )
        batch_id = prepared["summary"]["batch_id"]

        first = billing_jobs.export_pd_batch(
            db_session, config=billing_config, batch_id=batch_id
        )
        second = billing_jobs.export_pd_batch(
            db_session, config=billing_config, batch_id=batch_id
        )

        assert first["status"] == "success"
        assert first["lock_key"] == f"billing:export_batch:{batch_id}"
        assert first["summary"]["exported"] is True
        assert second["status"] == "no_op"
        assert second["summary"]["already_exported"] is True
        assert second["summary"]["status"] == "exported"

    def test_export_unknown_batch_fails(self, db_session, billing_config):
        result = billing_jobs.export_pd_batch(
            db_session, config=billing_config, batch_id=str(uuid.uuid4())
        )
        assert result["status"] == "failed"
        assert result["error"] == "Batch not found"

    def test_dunning_retry_suspends_unpaid_subscription(
        self, db_session, subscription, anchor_charge, billing_config
    ):
        result = billing_jobs.dunning_retry(
            db_session, target_date=date(2026, 3, 23), config=billing_config
        )

        assert result["status"] == "success"
        assert result["summary"]["subscriptions_updated"] == 1
        assert result["summary"]["status_transitions"] == {"active->suspended": 1}
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.suspended

    def test_jobs_overview(self, db_session, anchor_charge, billing_config, patched_storage):
        billing_jobs.prepare_pd_batch(db_session, target_date=ANCHOR_DATE, config=billing_config)
        billing_jobs.export_pd_batch(db_session, target_date=ANCHOR_DATE, config=billing_config)

        overview = billing_jobs.jobs_overview(
            db_session, now=datetime.now(UTC), config=billing_config, runs_limit=1
        )

        assert overview["timezone"] == "America/Argentina/Buenos_Aires"
        assert overview["metrics"]["processing_attempts"] == 1
        assert overview["metrics"]["batches_exported_today"] == 1
        assert overview["metrics"]["batches_imported_today"] == 0
        assert [run["job_name"] for run in overview["recent_runs"]] == ["export_pd_batch"]

    def test_list_job_runs_filters_by_name(self, db_session, billing_config):
        billing_jobs.dunning_retry(db_session, target_date=ANCHOR_DATE, config=billing_config)
        billing_jobs.fallback_create(db_session, target_date=ANCHOR_DATE, config=billing_config)

        runs = billing_jobs.list_job_runs(db_session, job_name="dunning_retry")
        assert [run.job_name for run in runs] == ["dunning_retry"]
        assert len(billing_jobs.list_job_runs(db_session)) == 2


class TestCronTick:
    def test_disabled_jobs_are_skipped(self, db_session, billing_config):
        config = billing_config.model_copy(
            update={
                "cron_run_anchor": False,
                "cron_prepare_batch": False,
                "cron_dunning": False,
                "cron_fallback": False,
            }
        )
        result = billing_jobs.cron_tick(
            db_session, now=datetime(2026, 3, 8, 2, 0, tzinfo=UTC), config=config
        )

        assert result["date"] == "2026-03-07"
        assert result["run_anchor"] is None
        assert result["export_batch"] is None
        assert result["fallback_status_sync"] is None
        assert db_session.query(BillingJobRun).count() == 0

    def test_runs_pipeline_in_order(
        self, db_session, subscription, payment_method, mandate, fx_rate, billing_config,
        patched_storage,
    ):
        result = billing_jobs.cron_tick(
            db_session, now=datetime(2026, 3, 8, 15, 0, tzinfo=UTC), config=billing_config
        )

        assert result["date"] == "2026-03-08"
        assert result["run_anchor"]["status"] == "success"
        assert result["prepare_batch"]["status"] == "success"
        assert result["export_batch"] is None
        assert result["dunning_retry"]["status"] == "no_op"
        assert result["fallback_create"]["status"] == "no_op"
        assert db_session.query(BillingJobRun).count() == 5

    def test_auto_export_after_prepare(
        self, db_session, subscription, payment_method, mandate, fx_rate, billing_config,
        patched_storage,
    ):
        config = billing_config.model_copy(
            update={"cron_export_batch": True, "cron_fallback": False}
        )
        result = billing_jobs.cron_tick(
            db_session, now=datetime(2026, 3, 8, 15, 0, tzinfo=UTC), config=config
        )

        assert result["export_batch"]["status"] == "success"
        assert result["export_batch"]["summary"]["batch_ids"] == [
            result["prepare_batch"]["summary"]["batch_id"]
        ]
        assert db_session.query(FileBatch).one().status == FileBatchStatus.exported
        assert sorted(run.job_name for run in billing_jobs.list_job_runs(db_session)) == [
            "dunning_retry",
            "export_pd_batch",
            "prepare_pd_batch",
            "run_anchor_daily",
        ]
