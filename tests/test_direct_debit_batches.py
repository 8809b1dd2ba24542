"""Tests for presentment batch preparation and response reconciliation."""

import uuid
from datetime import UTC, date, datetime
from decimal import Decimal

import pytest
from fastapi import HTTPException

from billing_engine.models import (
    Attempt,
    AttemptStatus,
    BillingEvent,
    ChargeStatus,
    FileBatch,
    FileBatchDirection,
    FileBatchItem,
    FileBatchItemStatus,
    FileBatchStatus,
    FiscalDocument,
    MandateStatus,
    SubscriptionStatus,
)
from billing_engine.services.billing.fiscal import MockFiscalIssuer
from billing_engine.services.collections.direct_debit.batches import presentment_batches

BUSINESS_DATE = date(2026, 3, 8)
SETTLED_AT = datetime(2026, 3, 9, 12, 0, tzinfo=UTC)


def _prepare(db_session, billing_config, storage, adapter_name=None):
    return presentment_batches.prepare(
        db_session,
        business_date=BUSINESS_DATE,
        config=billing_config,
        adapter_name=adapter_name,
        storage=storage,
    )


def _import(db_session, batch_id, content, billing_config, storage):
    return presentment_batches.import_response(
        db_session,
        batch_id,
        content,
        file_name="response.csv",
        config=billing_config,
        storage=storage,
        issuer=MockFiscalIssuer(),
    )


def _first_attempt(charge):
    return sorted(charge.attempts, key=lambda a: a.attempt_no)[0]


class TestPrepare:
    def test_no_due_attempts_is_noop(self, db_session, billing_config, storage):
        result = _prepare(db_session, billing_config, storage)
        assert result == {"status": "no_op", "batch_id": None, "record_count": 0}
        assert db_session.query(FileBatch).count() == 0

    def test_creates_outbound_batch(self, db_session, anchor_charge, billing_config, storage):
        result = _prepare(db_session, billing_config, storage)

        assert result["status"] == "created"
        assert result["record_count"] == 1
        assert result["amount_total"] == "28314.00"

        batch = db_session.get(FileBatch, uuid.UUID(result["batch_id"]))
        assert batch.direction == FileBatchDirection.outbound
        assert batch.status == FileBatchStatus.ready
        assert batch.adapter == "debug_csv"
        assert len(batch.items) == 1
        assert batch.items[0].status == FileBatchItemStatus.presented

        attempt = _first_attempt(anchor_charge)
        db_session.refresh(attempt)
        assert attempt.status == AttemptStatus.processing

        file_name, content = presentment_batches.get_file(db_session, batch.id, storage=storage)
        assert file_name == batch.file_name
        assert attempt.external_reference.encode() in content

    def test_processing_attempts_not_presented_twice(
        self, db_session, anchor_charge, billing_config, storage
    ):
        _prepare(db_session, billing_config, storage)
        assert _prepare(db_session, billing_config, storage)["status"] == "no_op"

    def test_inactive_mandate_excluded(
        self, db_session, anchor_charge, mandate, billing_config, storage
    ):
        mandate.status = MandateStatus.revoked
        db_session.commit()
        assert _prepare(db_session, billing_config, storage)["status"] == "no_op"

    def test_galicia_adapter_override(self, db_session, anchor_charge, billing_config, storage):
        result = _prepare(db_session, billing_config, storage, adapter_name="galicia_pd_v1")
        assert result["file_name"].startswith("galicia_pd_v1_0001_20260308")

    def test_mark_exported(self, db_session, anchor_charge, billing_config, storage):
        result = _prepare(db_session, billing_config, storage)
        batch = presentment_batches.mark_exported(db_session, result["batch_id"])
        assert batch.status == FileBatchStatus.exported
        assert batch.exported_at is not None

    def test_missing_file_returns_404(self, db_session, anchor_charge, billing_config, storage, tmp_path):
        from billing_engine.services.object_storage import LocalStorageService

        result = _prepare(db_session, billing_config, storage)
        with pytest.raises(HTTPException) as exc:
            presentment_batches.get_file(
                db_session, result["batch_id"], storage=LocalStorageService(tmp_path / "empty")
            )
        assert exc.value.status_code == 404


class TestImportResponse:
    def test_paid_response_settles_charge_and_issues_invoice(
        self, db_session, anchor_charge, billing_config, storage
    ):
        batch_id = _prepare(db_session, billing_config, storage)["batch_id"]
        content = presentment_batches.render_sandbox_response(
            db_session, batch_id, settled_at=SETTLED_AT
        )

        result = _import(db_session, batch_id, content, billing_config, storage)

        assert result["status"] == "imported"
        assert result["validation_errors"] == []
        assert result["paid"] == 1
        assert result["matched"] == 1
        assert result["fiscal_issued"] == 1

        db_session.refresh(anchor_charge)
        assert anchor_charge.status == ChargeStatus.paid
        assert Decimal(anchor_charge.amount_ars_paid) == Decimal("28314.00")
        assert _first_attempt(anchor_charge).status == AttemptStatus.paid
        document = db_session.query(FiscalDocument).one()
        assert document.charge_id == anchor_charge.id

        inbound = db_session.get(FileBatch, uuid.UUID(result["batch_id"]))
        assert inbound.direction == FileBatchDirection.inbound
        assert inbound.parent_batch_id == uuid.UUID(batch_id)
        assert inbound.status == FileBatchStatus.imported

    def test_reimport_is_detected(self, db_session, anchor_charge, billing_config, storage):
        batch_id = _prepare(db_session, billing_config, storage)["batch_id"]
        content = presentment_batches.render_sandbox_response(
            db_session, batch_id, settled_at=SETTLED_AT
        )
        first = _import(db_session, batch_id, content, billing_config, storage)
        second = _import(db_session, batch_id, content, billing_config, storage)

        assert second["status"] == "already_imported"
        assert second["batch_id"] == first["batch_id"]
        assert second["paid"] == 1
        paid_events = (
            db_session.query(BillingEvent).filter(BillingEvent.event_type == "charge.paid").count()
        )
        assert paid_events == 1

    def test_reworded_file_skips_applied_rows(
        self, db_session, anchor_charge, billing_config, storage
    ):
        """A different file carrying the same lines is deduped row by row."""
        batch_id = _prepare(db_session, billing_config, storage)["batch_id"]
        content = presentment_batches.render_sandbox_response(
            db_session, batch_id, settled_at=SETTLED_AT
        )
        first = _import(db_session, batch_id, content, billing_config, storage)
        second = _import(db_session, batch_id, content + b"\n", billing_config, storage)

        assert second["status"] == "imported"
        assert second["batch_id"] != first["batch_id"]
        assert second["duplicates"] == 1
        assert second["paid"] == 0
        assert second["fiscal_issued"] == 0
        paid_events = (
            db_session.query(BillingEvent).filter(BillingEvent.event_type == "charge.paid").count()
        )
        assert paid_events == 1
        assert db_session.query(FiscalDocument).count() == 1

    def test_interrupted_import_can_be_rerun(
        self, db_session, anchor_charge, billing_config, storage
    ):
        batch_id = _prepare(db_session, billing_config, storage)["batch_id"]
        content = presentment_batches.render_sandbox_response(
            db_session, batch_id, settled_at=SETTLED_AT
        )
        first = _import(db_session, batch_id, content, billing_config, storage)
        inbound = db_session.get(FileBatch, uuid.UUID(first["batch_id"]))
        inbound.status = FileBatchStatus.processing
        db_session.commit()

        rerun = _import(db_session, batch_id, content, billing_config, storage)

        assert rerun["status"] == "imported"
        assert rerun["batch_id"] == first["batch_id"]
        assert rerun["duplicates"] == 1
        assert rerun["paid"] == 0
        db_session.refresh(inbound)
        assert inbound.status == FileBatchStatus.imported
        assert (
            db_session.query(FileBatch)
            .filter(FileBatch.direction == FileBatchDirection.inbound)
            .count()
            == 1
        )
        paid_events = (
            db_session.query(BillingEvent).filter(BillingEvent.event_type == "charge.paid").count()
        )
        assert paid_events == 1

    def test_soft_rejection_schedules_retry(
        self, db_session, anchor_charge, billing_config, storage
    ):
        batch_id = _prepare(db_session, billing_config, storage)["batch_id"]
        reference = _first_attempt(anchor_charge).external_reference
        content = presentment_batches.render_sandbox_response(
            db_session,
            batch_id,
            results={reference: ("REJECTED", "insufficient_funds")},
            settled_at=SETTLED_AT,
        )

        result = _import(db_session, batch_id, content, billing_config, storage)

        assert result["rejected"] == 1
        db_session.refresh(anchor_charge)
        assert anchor_charge.status == ChargeStatus.pending
        attempts = sorted(anchor_charge.attempts, key=lambda a: a.attempt_no)
        assert [a.status for a in attempts] == [AttemptStatus.rejected, AttemptStatus.pending]
        assert attempts[0].detailed_reason == "insufficient_funds"
        assert attempts[1].scheduled_for == date(2026, 3, 11)
        assert attempts[1].external_reference.endswith("-02")

    def test_hard_decline_fails_charge(
        self, db_session, anchor_charge, subscription, billing_config, storage
    ):
        batch_id = _prepare(db_session, billing_config, storage)["batch_id"]
        reference = _first_attempt(anchor_charge).external_reference
        content = presentment_batches.render_sandbox_response(
            db_session,
            batch_id,
            results={reference: ("REJECTED", "account_closed")},
            settled_at=SETTLED_AT,
        )

        _import(db_session, batch_id, content, billing_config, storage)

        db_session.refresh(anchor_charge)
        db_session.refresh(subscription)
        assert anchor_charge.status == ChargeStatus.failed
        assert subscription.status == SubscriptionStatus.past_due
        assert db_session.query(Attempt).count() == 1

    def test_unmatched_reference_recorded(
        self, db_session, anchor_charge, billing_config, storage
    ):
        batch_id = _prepare(db_session, billing_config, storage)["batch_id"]
        content = (
            "H,DEBUG_PD_RESP,1,0001,PD,2026-03-08,1,100.00,\n"
            "D,1,AT-UNKNOWN-01,PAID,,ok,100.00,,,\n"
            "T,1,100.00,\n"
        ).encode("utf-8")

        result = _import(db_session, batch_id, content, billing_config, storage)

        assert result["unmatched"] == 1
        assert result["matched"] == 0
        item = db_session.query(FileBatchItem).filter(
            FileBatchItem.status == FileBatchItemStatus.unmatched
        ).one()
        assert item.external_reference == "AT-UNKNOWN-01"
        db_session.refresh(anchor_charge)
        assert anchor_charge.status == ChargeStatus.pending

    def test_amount_mismatch_needs_review(
        self, db_session, anchor_charge, billing_config, storage
    ):
        batch_id = _prepare(db_session, billing_config, storage)["batch_id"]
        reference = _first_attempt(anchor_charge).external_reference
        content = (
            "H,DEBUG_PD_RESP,1,0001,PD,2026-03-08,1,100.00,\n"
            f"D,1,{reference},PAID,,ok,100.00,,,\n"
            "T,1,100.00,\n"
        ).encode("utf-8")

        result = _import(db_session, batch_id, content, billing_config, storage)

        assert result["errors"] == 1
        assert result["paid"] == 0
        db_session.refresh(anchor_charge)
        assert anchor_charge.status == ChargeStatus.pending

    def test_control_total_mismatch_reported(
        self, db_session, anchor_charge, billing_config, storage
    ):
        batch_id = _prepare(db_session, billing_config, storage)["batch_id"]
        reference = _first_attempt(anchor_charge).external_reference
        content = (
            "H,DEBUG_PD_RESP,1,0001,PD,2026-03-08,2,28314.00,\n"
            f"D,1,{reference},PAID,,ok,28314.00,,,\n"
            "T,2,28314.00,\n"
        ).encode("utf-8")

        result = _import(db_session, batch_id, content, billing_config, storage)

        assert result["status"] == "imported"
        assert any("record_count" in message for message in result["validation_errors"])
        assert result["paid"] == 1

    def test_garbage_file_marked_failed(
        self, db_session, anchor_charge, billing_config, storage
    ):
        batch_id = _prepare(db_session, billing_config, storage)["batch_id"]

        result = _import(db_session, batch_id, b"not a bank file", billing_config, storage)

        assert result["status"] == "failed"
        inbound = db_session.get(FileBatch, uuid.UUID(result["batch_id"]))
        assert inbound.status == FileBatchStatus.failed
        assert inbound.validation_errors

    def test_unknown_batch_returns_404(self, db_session, billing_config, storage):
        with pytest.raises(HTTPException) as exc:
            _import(db_session, uuid.uuid4(), b"", billing_config, storage)
        assert exc.value.status_code == 404
