"""Human-readable CSV layout for sandbox and manual testing.

Every record starts with its type (``H``, ``D`` or ``T``). Dates are ISO
formatted and results are plain words, so files can be edited by hand to
simulate bank answers.

Outbound detail: ``D,seq,reference,amount,scheduled_for,holder,tax_id,last4``.
Inbound detail: ``D,seq,reference,result,reason,message,amount,settled_at,trace,operation``
where ``result`` is PAID, REJECTED or ERROR and ``reason`` is a detailed reason
name such as ``insufficient_funds``.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Sequence
from datetime import date, datetime
from typing import Any

from billing_engine.services.collections.direct_debit.adapter import (
    BatchFileFormatError,
    BatchHeader,
    BuiltFile,
    ControlTotals,
    DetailedReason,
    MappedStatus,
    ParsedFile,
    ParsedRow,
    PresentmentRow,
    ResponseRecord,
    ResultStatus,
    clean_field,
    compute_control_totals,
    decode_content,
    line_hash,
    parse_amount,
    validate_inbound_totals,
    validate_outbound_totals,
)
from billing_engine.services.common import money_str

OUTBOUND_TAG = "DEBUG_PD"
INBOUND_TAG = "DEBUG_PD_RESP"
LAYOUT_VERSION = "1"

_PAID_WORDS = {"PAID", "PAGADO", "OK", "APPROVED"}
_REJECTED_WORDS = {"REJECTED", "RECHAZADO", "DECLINED"}
_ERROR_WORDS = {"ERROR", "FAILED"}
_REASON_ALIASES = {
    "NSF": DetailedReason.insufficient_funds,
    "FONDOS_INSUFICIENTES": DetailedReason.insufficient_funds,
    "CUENTA_INVALIDA": DetailedReason.invalid_account,
    "CUENTA_CERRADA": DetailedReason.account_closed,
    "DUPLICADO": DetailedReason.duplicate,
}


def _render(rows: list[list[str]]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


def _split_line(line: str) -> list[str]:
    # one record per physical line
    return next(csv.reader([line], strict=True), [])


def _reason_from(value: str | None) -> DetailedReason | None:
    key = str(value or "").strip()
    if not key:
        return None
    try:
        return DetailedReason(key.lower())
    except ValueError:
        return _REASON_ALIASES.get(key.upper())


class DebugCsvAdapter:
    name = "debug_csv"
    version = LAYOUT_VERSION

    def build_outbound_file(
        self, batch: BatchHeader, rows: Sequence[PresentmentRow]
    ) -> BuiltFile:
        totals = compute_control_totals((row.external_reference, row.amount) for row in rows)
        records = [
            [
                "H",
                OUTBOUND_TAG,
                LAYOUT_VERSION,
                batch.entity_id,
                batch.service_id,
                batch.business_date.isoformat(),
                str(totals.record_count),
                money_str(totals.amount_total),
                totals.checksum or "",
            ]
        ]
        for seq, row in enumerate(rows, start=1):
            records.append(
                [
                    "D",
                    str(seq),
                    row.external_reference,
                    money_str(row.amount),
                    row.scheduled_for.isoformat(),
                    clean_field(row.holder_name, "\n"),
                    clean_field(row.holder_tax_id, "\n"),
                    clean_field(row.account_last4, "\n"),
                ]
            )
        records.append(
            ["T", str(totals.record_count), money_str(totals.amount_total), totals.checksum or ""]
        )
        content = _render(records)
        detail_lines = content.decode("utf-8").splitlines()[1:-1]
        return BuiltFile(
            file_name=(
                f"debug_pd_presentment_{batch.business_date.isoformat()}_{batch.batch_id[:8]}.csv"
            ),
            content=content,
            control_totals=totals,
            line_hashes=tuple(line_hash(line) for line in detail_lines),
        )

    def render_response_file(
        self, batch: BatchHeader, records: Sequence[ResponseRecord]
    ) -> bytes:
        totals = compute_control_totals((r.external_reference, r.amount) for r in records)
        rows = [
            [
                "H",
                INBOUND_TAG,
                LAYOUT_VERSION,
                batch.entity_id,
                batch.service_id,
                batch.business_date.isoformat(),
                str(totals.record_count),
                money_str(totals.amount_total),
                totals.checksum or "",
            ]
        ]
        for seq, record in enumerate(records, start=1):
            rows.append(
                [
                    "D",
                    str(seq),
                    record.external_reference,
                    record.result_code,
                    record.reason_code,
                    clean_field(record.message, "\n"),
                    money_str(record.amount),
                    record.settled_at.isoformat() if record.settled_at else "",
                    record.trace_id,
                    record.operation_id,
                ]
            )
        rows.append(
            ["T", str(totals.record_count), money_str(totals.amount_total), totals.checksum or ""]
        )
        return _render(rows)

    def parse_inbound_file(self, content: bytes) -> ParsedFile:
        raw_lines = [line for line in decode_content(content).splitlines() if line.strip()]
        if len(raw_lines) < 2:
            raise BatchFileFormatError("file must contain a header and a trailer")
        try:
            header = _split_line(raw_lines[0])
            trailer = _split_line(raw_lines[-1])
        except csv.Error as exc:
            raise BatchFileFormatError(f"malformed control record: {exc}") from exc

        if len(header) < 8 or header[0] != "H" or header[1] != INBOUND_TAG:
            raise BatchFileFormatError("missing or malformed header record")
        if len(trailer) < 3 or trailer[0] != "T":
            raise BatchFileFormatError("missing or malformed trailer record")
        try:
            business_date = date.fromisoformat(header[5])
            header_totals = ControlTotals(
                record_count=int(header[6]),
                amount_total=parse_amount(header[7]),
                checksum=(header[8] or None) if len(header) > 8 else None,
            )
            declared = ControlTotals(
                record_count=int(trailer[1]),
                amount_total=parse_amount(trailer[2]),
                checksum=(trailer[3] or None) if len(trailer) > 3 else None,
            )
        except ValueError as exc:
            raise BatchFileFormatError(f"malformed control record: {exc}") from exc

        parsed = ParsedFile(
            control_totals=declared,
            header={
                "tag": header[1],
                "version": header[2],
                "entity_id": header[3],
                "service_id": header[4],
                "business_date": business_date,
                "control_totals": header_totals,
            },
        )
        if (
            header_totals.record_count != declared.record_count
            or header_totals.amount_total != declared.amount_total
        ):
            parsed.warnings.append("header/trailer control totals disagree")

        for offset, raw in enumerate(raw_lines[1:-1], start=1):
            line_no = offset + 1
            try:
                fields = _split_line(raw)
            except csv.Error as exc:
                parsed.warnings.append(f"line {line_no}: {exc}")
                continue
            if not fields or fields[0] != "D":
                parsed.warnings.append(f"line {line_no}: unexpected record type")
                continue
            if len(fields) < 10:
                parsed.warnings.append(f"line {line_no}: expected 10 fields, got {len(fields)}")
                continue
            reference = fields[2].strip()
            if not reference:
                parsed.warnings.append(f"line {line_no}: missing external reference")
                continue
            try:
                amount = parse_amount(fields[6])
            except ValueError as exc:
                parsed.warnings.append(f"line {line_no}: {exc}")
                continue
            settled_at = None
            if fields[7].strip():
                try:
                    settled_at = datetime.fromisoformat(fields[7].strip())
                except ValueError:
                    parsed.warnings.append(f"line {line_no}: invalid settled_at {fields[7]!r}")
            mapped = self.map_result_code(fields[3], {"reason": fields[4]})
            parsed.rows.append(
                ParsedRow(
                    line_no=line_no,
                    external_reference=reference,
                    result_code=fields[3].strip(),
                    result_message=fields[5].strip(),
                    amount=amount,
                    settled_at=settled_at,
                    trace_id=fields[8].strip() or None,
                    operation_id=fields[9].strip() or None,
                    status=mapped.status,
                    reason=mapped.reason,
                    raw_hash=line_hash(raw),
                )
            )
        return parsed

    def map_result_code(
        self, code: str | None, context: dict[str, Any] | None = None
    ) -> MappedStatus:
        word = str(code or "").strip().upper()
        reason = _reason_from((context or {}).get("reason"))
        if word in _PAID_WORDS:
            return MappedStatus(ResultStatus.paid)
        if word in _REJECTED_WORDS:
            return MappedStatus(ResultStatus.rejected, reason)
        if word in _ERROR_WORDS:
            return MappedStatus(ResultStatus.error, reason)
        return MappedStatus(ResultStatus.unknown)

    def validate_outbound_control_totals(
        self, rows: Sequence[PresentmentRow], declared: ControlTotals
    ) -> list[str]:
        return validate_outbound_totals(rows, declared)

    def validate_inbound_control_totals(self, parsed: ParsedFile) -> list[str]:
        return validate_inbound_totals(parsed)
