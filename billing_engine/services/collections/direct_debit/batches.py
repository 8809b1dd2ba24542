"""Presentment batch preparation and response reconciliation."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, date, datetime
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy.orm import Session

from billing_engine.config import BillingConfig, get_billing_config
from billing_engine.models.billing import (
    Attempt,
    AttemptChannel,
    AttemptStatus,
    Charge,
    ChargeStatus,
)
from billing_engine.models.collections import (
    FileBatch,
    FileBatchDirection,
    FileBatchItem,
    FileBatchItemStatus,
    FileBatchStatus,
)
from billing_engine.services.billing.fiscal import FiscalIssuer, fiscal_issuance
from billing_engine.services.collections.direct_debit.adapter import (
    AMOUNT_TOLERANCE,
    BatchFileFormatError,
    BatchHeader,
    ParsedRow,
    PresentmentRow,
    ResponseRecord,
    ResultStatus,
    compute_control_totals,
    file_sha256,
)
from billing_engine.services.collections.direct_debit.registry import get_adapter
from billing_engine.services.collections.dunning import dunning, mark_charge_paid
from billing_engine.services.collections.mandates import mandate_lifecycle
from billing_engine.services.common import get_or_404, money_str
from billing_engine.services.events import EventType, emit_event
from billing_engine.services.object_storage import (
    ObjectNotFoundError,
    StorageService,
    get_storage,
)

logger = logging.getLogger(__name__)

_ITEM_STATUS = {
    ResultStatus.paid: FileBatchItemStatus.paid,
    ResultStatus.rejected: FileBatchItemStatus.rejected,
    ResultStatus.error: FileBatchItemStatus.error,
    ResultStatus.unknown: FileBatchItemStatus.unknown,
}


def _new_import_summary() -> dict:
    return {
        "rows_total": 0,
        "matched": 0,
        "paid": 0,
        "rejected": 0,
        "errors": 0,
        "unknown": 0,
        "duplicates": 0,
        "unmatched": 0,
        "fiscal_issued": 0,
        "fiscal_failed": 0,
    }


def _storage_key(direction: str, business_date: date, file_name: str) -> str:
    return f"direct_debit/{direction}/{business_date:%Y/%m}/{file_name}"


class PresentmentBatches:
    @staticmethod
    def eligible_attempts(
        db: Session, business_date: date, config: BillingConfig
    ) -> list[Attempt]:
        attempts = (
            db.query(Attempt)
            .join(Charge, Attempt.charge_id == Charge.id)
            .filter(Attempt.channel == AttemptChannel.direct_debit)
            .filter(Attempt.status == AttemptStatus.pending)
            .filter(Attempt.scheduled_for <= business_date)
            .filter(Attempt.payment_method_id.isnot(None))
            .filter(Charge.status == ChargeStatus.pending)
            .order_by(Attempt.scheduled_for.asc(), Attempt.created_at.asc())
            .all()
        )
        if not config.require_active_mandate:
            return attempts
        return [
            attempt
            for attempt in attempts
            if mandate_lifecycle.active_mandate_for_method(db, attempt.payment_method_id)
        ]

    @staticmethod
    def prepare(
        db: Session,
        business_date: date | None = None,
        config: BillingConfig | None = None,
        adapter_name: str | None = None,
        storage: StorageService | None = None,
        actor: str | None = None,
    ) -> dict:
        """Build, store and register the outbound presentment file.

        Returns a ``no_op`` result when nothing is due.
        """
        config = config or get_billing_config()
        business_date = business_date or datetime.now(UTC).date()
        attempts = PresentmentBatches.eligible_attempts(db, business_date, config)
        if not attempts:
            logger.info("No direct debit attempts due on %s", business_date)
            return {"status": "no_op", "batch_id": None, "record_count": 0}

        adapter = get_adapter(adapter_name or config.pd_adapter)
        batch_id = uuid.uuid4()
        header = BatchHeader(
            batch_id=batch_id.hex,
            business_date=business_date,
            entity_id=config.pd_entity_id,
            service_id=config.pd_service_id,
        )
        rows = []
        for attempt in attempts:
            method = attempt.payment_method
            rows.append(
                PresentmentRow(
                    attempt_id=str(attempt.id),
                    charge_id=str(attempt.charge_id),
                    agency_id=str(attempt.charge.agency_id),
                    external_reference=attempt.external_reference,
                    amount=Decimal(attempt.amount_ars),
                    scheduled_for=attempt.scheduled_for,
                    holder_name=method.holder_name if method else None,
                    holder_tax_id=method.holder_tax_id if method else None,
                    account_last4=method.account_last4 if method else None,
                )
            )
        built = adapter.build_outbound_file(header, rows)
        mismatches = adapter.validate_outbound_control_totals(rows, built.control_totals)
        if mismatches:
            raise ValueError(f"Outbound control totals mismatch: {'; '.join(mismatches)}")

        storage_key = _storage_key("outbound", business_date, built.file_name)
        (storage or get_storage()).upload(storage_key, built.content, "text/plain")

        batch = FileBatch(
            id=batch_id,
            direction=FileBatchDirection.outbound,
            adapter=adapter.name,
            business_date=business_date,
            status=FileBatchStatus.ready,
            file_name=built.file_name,
            storage_key=storage_key,
            sha256=file_sha256(built.content),
            record_count=built.control_totals.record_count,
            amount_total=built.control_totals.amount_total,
            checksum=built.control_totals.checksum,
            created_by=actor,
        )
        db.add(batch)
        for seq, (attempt, row) in enumerate(zip(attempts, rows), start=1):
            db.add(
                FileBatchItem(
                    batch_id=batch.id,
                    attempt_id=attempt.id,
                    line_no=seq,
                    external_reference=row.external_reference,
                    amount=row.amount,
                    raw_hash=built.line_hashes[seq - 1],
                    status=FileBatchItemStatus.presented,
                )
            )
            attempt.status = AttemptStatus.processing
        db.flush()
        emit_event(
            db,
            EventType.pd_batch_outbound_created,
            {
                "batch_id": str(batch.id),
                "adapter": adapter.name,
                "business_date": business_date.isoformat(),
                "file_name": built.file_name,
                **built.control_totals.as_dict(),
            },
            actor=actor or "system",
        )
        db.commit()
        logger.info(
            "Prepared %s batch %s with %s attempts",
            adapter.name,
            batch.id,
            batch.record_count,
        )
        return {
            "status": "created",
            "batch_id": str(batch.id),
            "file_name": built.file_name,
            **built.control_totals.as_dict(),
        }

    @staticmethod
    def mark_exported(db: Session, batch_id) -> FileBatch:
        batch = get_or_404(db, FileBatch, batch_id, "Batch not found")
        if batch.direction != FileBatchDirection.outbound:
            raise HTTPException(status_code=400, detail="Only outbound batches can be exported")
        if batch.status == FileBatchStatus.ready:
            batch.status = FileBatchStatus.exported
            batch.exported_at = datetime.now(UTC)
            db.commit()
        return batch

    @staticmethod
    def export_ready(db: Session, adapter_name: str, business_date: date) -> dict:
        """Mark every ready outbound batch up to ``business_date`` as exported."""
        batches = (
            db.query(FileBatch)
            .filter(FileBatch.direction == FileBatchDirection.outbound)
            .filter(FileBatch.status == FileBatchStatus.ready)
            .filter(FileBatch.adapter == adapter_name)
            .filter(FileBatch.business_date <= business_date)
            .order_by(FileBatch.business_date.asc(), FileBatch.created_at.asc())
            .all()
        )
        summary = {
            "batches_considered": len(batches),
            "batches_exported": 0,
            "already_exported": 0,
            "errors": [],
            "batch_ids": [],
        }
        for batch in batches:
            batch_id = batch.id
            try:
                db.refresh(batch)
                if batch.status != FileBatchStatus.ready:
                    summary["already_exported"] += 1
                    continue
                PresentmentBatches.mark_exported(db, batch_id)
            except Exception as exc:
                db.rollback()
                logger.exception("Export failed for batch %s", batch_id)
                summary["errors"].append({"batch_id": str(batch_id), "message": str(exc)})
                continue
            summary["batches_exported"] += 1
            summary["batch_ids"].append(str(batch_id))
        return summary

    @staticmethod
    def get_file(
        db: Session, batch_id, storage: StorageService | None = None
    ) -> tuple[str, bytes]:
        batch = get_or_404(db, FileBatch, batch_id, "Batch not found")
        if not batch.storage_key:
            raise HTTPException(status_code=404, detail="Batch file not stored")
        try:
            content = (storage or get_storage()).download(batch.storage_key)
        except ObjectNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Batch file not stored") from exc
        return batch.file_name, content

    @staticmethod
    def render_sandbox_response(
        db: Session,
        batch_id,
        results: dict[str, tuple[str, str]] | None = None,
        settled_at: datetime | None = None,
    ) -> bytes:
        """Render a response file for an outbound batch using its adapter.

        ``results`` maps external references to (result code, reason code);
        references not listed are answered with the adapter's paid code.
        """
        batch = get_or_404(db, FileBatch, batch_id, "Batch not found")
        adapter = get_adapter(batch.adapter)
        paid_code = "00" if adapter.name == "galicia_pd_v1" else "PAID"
        results = results or {}
        records = []
        for item in sorted(batch.items, key=lambda i: i.line_no):
            code, reason = results.get(item.external_reference, (paid_code, ""))
            records.append(
                ResponseRecord(
                    external_reference=item.external_reference,
                    result_code=code,
                    reason_code=reason,
                    message="SANDBOX",
                    amount=Decimal(item.amount),
                    settled_at=settled_at or datetime.now(UTC).replace(microsecond=0),
                    trace_id=f"TRC-{item.line_no}",
                    operation_id=f"OP-{item.line_no}",
                )
            )
        header = BatchHeader(
            batch_id=batch.id.hex,
            business_date=batch.business_date,
            entity_id=get_billing_config().pd_entity_id,
            service_id=get_billing_config().pd_service_id,
        )
        return adapter.render_response_file(header, records)

    @staticmethod
    def import_response(
        db: Session,
        outbound_batch_id,
        content: bytes,
        file_name: str | None = None,
        config: BillingConfig | None = None,
        storage: StorageService | None = None,
        issuer: FiscalIssuer | None = None,
        actor: str | None = None,
    ) -> dict:
        """Reconcile a bank response file against its outbound batch.

        Each row is applied in its own savepoint. Re-importing a file, or a
        file that was only partly applied, skips rows already recorded.
        """
        config = config or get_billing_config()
        outbound = get_or_404(db, FileBatch, outbound_batch_id, "Batch not found")
        if outbound.direction != FileBatchDirection.outbound:
            raise HTTPException(status_code=400, detail="Responses must reference an outbound batch")
        adapter = get_adapter(outbound.adapter)
        sha = file_sha256(content)

        inbound = (
            db.query(FileBatch)
            .filter(FileBatch.direction == FileBatchDirection.inbound)
            .filter(FileBatch.sha256 == sha)
            .first()
        )
        if inbound and inbound.status == FileBatchStatus.imported:
            return {
                "status": "already_imported",
                "batch_id": str(inbound.id),
                **(inbound.summary or {}),
            }

        file_name = file_name or f"response_{outbound.file_name}"
        try:
            parsed = adapter.parse_inbound_file(content)
        except BatchFileFormatError as exc:
            logger.warning("Rejected response file %s: %s", file_name, exc)
            if inbound is None:
                inbound = FileBatch(
                    direction=FileBatchDirection.inbound,
                    adapter=adapter.name,
                    business_date=outbound.business_date,
                    parent_batch_id=outbound.id,
                    file_name=file_name,
                    sha256=sha,
                    created_by=actor,
                )
                db.add(inbound)
            inbound.status = FileBatchStatus.failed
            inbound.validation_errors = [str(exc)]
            db.commit()
            return {"status": "failed", "batch_id": str(inbound.id), "error": str(exc)}

        mismatches = adapter.validate_inbound_control_totals(parsed)
        computed = compute_control_totals(
            (row.external_reference, row.amount) for row in parsed.rows if row.amount is not None
        )
        business_date = parsed.header.get("business_date") or outbound.business_date
        if inbound is None:
            storage_key = _storage_key("inbound", business_date, file_name)
            (storage or get_storage()).upload(storage_key, content, "text/plain")
            inbound = FileBatch(
                direction=FileBatchDirection.inbound,
                adapter=adapter.name,
                business_date=business_date,
                parent_batch_id=outbound.id,
                file_name=file_name,
                storage_key=storage_key,
                sha256=sha,
                created_by=actor,
            )
            db.add(inbound)
        inbound.status = FileBatchStatus.processing
        inbound.record_count = computed.record_count
        inbound.amount_total = computed.amount_total
        inbound.checksum = parsed.control_totals.checksum if parsed.control_totals else None
        inbound.validation_errors = mismatches
        inbound.warnings = list(parsed.warnings)
        db.commit()
        if mismatches:
            logger.warning("Response file %s control totals: %s", file_name, mismatches)

        summary = _new_import_summary()
        summary["rows_total"] = len(parsed.rows)
        outbound_refs = {
            item.external_reference: item.attempt_id for item in outbound.items
        }
        paid_charge_ids = []
        for row in parsed.rows:
            try:
                with db.begin_nested():
                    outcome, charge_id = PresentmentBatches._apply_row(
                        db, inbound, row, outbound_refs, config, business_date, actor
                    )
            except Exception:
                logger.exception(
                    "Failed to apply response line %s (%s)", row.line_no, row.external_reference
                )
                summary["errors"] += 1
                continue
            db.commit()
            summary[outcome] += 1
            if outcome not in ("duplicates", "unmatched"):
                summary["matched"] += 1
            if outcome == "paid" and charge_id is not None:
                paid_charge_ids.append(charge_id)

        fiscal = fiscal_issuance.autorun_for_paid_charges(
            db, paid_charge_ids, config=config, issuer=issuer, actor=actor
        )
        summary["fiscal_issued"] = fiscal["issued"]
        summary["fiscal_failed"] = fiscal["failed"]

        inbound.status = FileBatchStatus.imported
        inbound.imported_at = datetime.now(UTC)
        inbound.summary = dict(summary)
        emit_event(
            db,
            EventType.pd_batch_inbound_imported,
            {
                "batch_id": str(inbound.id),
                "outbound_batch_id": str(outbound.id),
                "file_name": file_name,
                "validation_errors": mismatches,
                **summary,
            },
            actor=actor or "system",
        )
        db.commit()
        logger.info("Imported response %s: %s", file_name, summary)
        return {
            "status": "imported",
            "batch_id": str(inbound.id),
            "validation_errors": mismatches,
            "warnings": list(parsed.warnings),
            **summary,
        }

    @staticmethod
    def _apply_row(
        db: Session,
        inbound: FileBatch,
        row: ParsedRow,
        outbound_refs: dict,
        config: BillingConfig,
        business_date: date,
        actor: str | None,
    ) -> tuple[str, uuid.UUID | None]:
        attempt_id = outbound_refs.get(row.external_reference)
        if attempt_id is not None:
            attempt = db.get(Attempt, attempt_id)
        else:
            attempt = (
                db.query(Attempt)
                .filter(Attempt.external_reference == row.external_reference)
                .first()
            )

        item_values = {
            "batch_id": inbound.id,
            "line_no": row.line_no,
            "external_reference": row.external_reference,
            "amount": row.amount,
            "raw_hash": row.raw_hash,
            "result_code": row.result_code,
            "result_message": row.result_message,
            "detailed_reason": row.reason.value if row.reason else None,
            "settled_at": row.settled_at,
            "trace_id": row.trace_id,
            "operation_id": row.operation_id,
        }

        if attempt is None:
            seen = (
                db.query(FileBatchItem)
                .filter(FileBatchItem.batch_id == inbound.id)
                .filter(FileBatchItem.raw_hash == row.raw_hash)
                .first()
            )
            if seen:
                return "duplicates", None
            db.add(
                FileBatchItem(
                    **item_values,
                    status=FileBatchItemStatus.unmatched,
                    error_message="No attempt with this external reference",
                )
            )
            db.flush()
            return "unmatched", None

        seen = (
            db.query(FileBatchItem)
            .join(FileBatch, FileBatchItem.batch_id == FileBatch.id)
            .filter(FileBatch.direction == FileBatchDirection.inbound)
            .filter(FileBatchItem.attempt_id == attempt.id)
            .filter(
                (FileBatchItem.raw_hash == row.raw_hash)
                | (FileBatchItem.batch_id == inbound.id)
            )
            .first()
        )
        if seen:
            return "duplicates", None

        item = FileBatchItem(**item_values, attempt_id=attempt.id, status=_ITEM_STATUS[row.status])
        db.add(item)
        attempt.result_code = row.result_code
        attempt.result_message = row.result_message
        attempt.processed_at = datetime.now(UTC)
        charge = attempt.charge
        context = {
            "agency_id": charge.agency_id,
            "subscription_id": charge.subscription_id,
            "actor": actor or "system",
        }

        if row.status == ResultStatus.paid:
            expected = Decimal(attempt.amount_ars)
            if row.amount is not None and abs(row.amount - expected) > AMOUNT_TOLERANCE:
                item.status = FileBatchItemStatus.error
                item.error_message = (
                    f"Paid amount {money_str(row.amount)} differs from "
                    f"presented {money_str(expected)}"
                )
                db.flush()
                return "errors", None
            attempt.status = AttemptStatus.paid
            attempt.paid_reference = row.operation_id or row.trace_id
            attempt.detailed_reason = None
            db.flush()
            emit_event(
                db,
                EventType.attempt_paid,
                {
                    "attempt_id": str(attempt.id),
                    "charge_id": str(charge.id),
                    "external_reference": attempt.external_reference,
                    "amount": money_str(row.amount if row.amount is not None else expected),
                    "paid_reference": attempt.paid_reference,
                },
                **context,
            )
            newly_paid = mark_charge_paid(
                db,
                charge,
                channel=AttemptChannel.direct_debit,
                amount_ars=row.amount,
                reference=attempt.paid_reference,
                paid_at=row.settled_at,
                actor=actor,
            )
            return "paid", charge.id if newly_paid else None

        if row.status == ResultStatus.rejected:
            if attempt.status == AttemptStatus.paid:
                item.error_message = "Rejection received for an attempt already paid"
                item.status = FileBatchItemStatus.error
                db.flush()
                return "errors", None
            attempt.status = AttemptStatus.rejected
            attempt.detailed_reason = row.reason.value if row.reason else None
            db.flush()
            emit_event(
                db,
                EventType.attempt_rejected,
                {
                    "attempt_id": str(attempt.id),
                    "charge_id": str(charge.id),
                    "external_reference": attempt.external_reference,
                    "result_code": row.result_code,
                    "reason": attempt.detailed_reason,
                },
                **context,
            )
            dunning.handle_rejection(
                db, attempt, row.reason, config=config, today=business_date, actor=actor
            )
            return "rejected", None

        item.error_message = "Needs manual review"
        db.flush()
        if row.status == ResultStatus.error:
            return "errors", None
        return "unknown", None


presentment_batches = PresentmentBatches()
prepare_presentment_batch = presentment_batches.prepare
mark_batch_exported = presentment_batches.mark_exported
get_batch_file = presentment_batches.get_file
import_response_file = presentment_batches.import_response
