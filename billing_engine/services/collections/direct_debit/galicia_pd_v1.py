"""Official bank presentment layout, version 1 (pipe-delimited).

Outbound::

    H|GALICIA_PD|v1.0|<entity>|<service>|<YYYYMMDD>|<count>|<amount>|<checksum>
    D|<seq>|<reference>|<amount>|<YYYYMMDD>|<holder>|<tax id>|<last4>
    T|<count>|<amount>|<checksum>

Inbound::

    H|GALICIA_PD_RESP|v1.0|<entity>|<service>|<YYYYMMDD>|<count>|<amount>|<checksum?>
    D|<seq>|<reference>|<code>|<message>|<amount>|<YYYYMMDDHHMMSS>|<trace>|<operation>
    T|<count>|<amount>|<checksum?>
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

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

logger = logging.getLogger(__name__)

SEP = "|"
OUTBOUND_TAG = "GALICIA_PD"
INBOUND_TAG = "GALICIA_PD_RESP"
LAYOUT_VERSION = "v1.0"
BANK_TZ = ZoneInfo("America/Argentina/Buenos_Aires")

RESULT_CODES: dict[str, MappedStatus] = {
    "00": MappedStatus(ResultStatus.paid),
    "51": MappedStatus(ResultStatus.rejected, DetailedReason.insufficient_funds),
    "14": MappedStatus(ResultStatus.rejected, DetailedReason.invalid_account),
    "MD01": MappedStatus(ResultStatus.rejected, DetailedReason.mandate_invalid),
    "MD02": MappedStatus(ResultStatus.rejected, DetailedReason.mandate_inactive),
    "15": MappedStatus(ResultStatus.rejected, DetailedReason.account_closed),
    "96": MappedStatus(ResultStatus.error, DetailedReason.format_error),
    "94": MappedStatus(ResultStatus.error, DetailedReason.duplicate),
}

INBOUND_DETAIL_FIELDS = 9


class GaliciaPdV1Adapter:
    name = "galicia_pd_v1"
    version = LAYOUT_VERSION

    def build_outbound_file(
        self, batch: BatchHeader, rows: Sequence[PresentmentRow]
    ) -> BuiltFile:
        totals = compute_control_totals((row.external_reference, row.amount) for row in rows)
        stamp = batch.business_date.strftime("%Y%m%d")
        lines = [
            SEP.join(
                [
                    "H",
                    OUTBOUND_TAG,
                    LAYOUT_VERSION,
                    batch.entity_id,
                    batch.service_id,
                    stamp,
                    str(totals.record_count),
                    money_str(totals.amount_total),
                    totals.checksum or "",
                ]
            )
        ]
        hashes = []
        for seq, row in enumerate(rows, start=1):
            line = SEP.join(
                [
                    "D",
                    str(seq),
                    row.external_reference,
                    money_str(row.amount),
                    row.scheduled_for.strftime("%Y%m%d"),
                    clean_field(row.holder_name, SEP),
                    clean_field(row.holder_tax_id, SEP),
                    clean_field(row.account_last4, SEP),
                ]
            )
            lines.append(line)
            hashes.append(line_hash(line))
        lines.append(
            SEP.join(
                [
                    "T",
                    str(totals.record_count),
                    money_str(totals.amount_total),
                    totals.checksum or "",
                ]
            )
        )
        content = ("\n".join(lines) + "\n").encode("utf-8")
        file_name = f"galicia_pd_v1_{batch.entity_id}_{stamp}_{batch.batch_id[:8]}.txt"
        return BuiltFile(
            file_name=file_name,
            content=content,
            control_totals=totals,
            line_hashes=tuple(hashes),
        )

    def render_response_file(
        self, batch: BatchHeader, records: Sequence[ResponseRecord]
    ) -> bytes:
        totals = compute_control_totals((r.external_reference, r.amount) for r in records)
        stamp = batch.business_date.strftime("%Y%m%d")
        lines = [
            SEP.join(
                [
                    "H",
                    INBOUND_TAG,
                    LAYOUT_VERSION,
                    batch.entity_id,
                    batch.service_id,
                    stamp,
                    str(totals.record_count),
                    money_str(totals.amount_total),
                    "",
                ]
            )
        ]
        for seq, record in enumerate(records, start=1):
            settled = record.settled_at.strftime("%Y%m%d%H%M%S") if record.settled_at else ""
            lines.append(
                SEP.join(
                    [
                        "D",
                        str(seq),
                        record.external_reference,
                        record.result_code,
                        clean_field(record.message, SEP),
                        money_str(record.amount),
                        settled,
                        record.trace_id,
                        record.operation_id,
                    ]
                )
            )
        lines.append(
            SEP.join(["T", str(totals.record_count), money_str(totals.amount_total), ""])
        )
        return ("\n".join(lines) + "\n").encode("utf-8")

    def parse_inbound_file(self, content: bytes) -> ParsedFile:
        lines = [line for line in decode_content(content).splitlines() if line.strip()]
        if len(lines) < 2:
            raise BatchFileFormatError("file must contain a header and a trailer")

        header = self._parse_header(lines[0])
        trailer = self._parse_trailer(lines[-1])
        parsed = ParsedFile(control_totals=trailer, header=header)

        declared_header = header["control_totals"]
        if (
            declared_header.record_count != trailer.record_count
            or declared_header.amount_total != trailer.amount_total
        ):
            parsed.warnings.append(
                "header/trailer control totals disagree: header "
                f"{declared_header.record_count}/{money_str(declared_header.amount_total)}, "
                f"trailer {trailer.record_count}/{money_str(trailer.amount_total)}"
            )

        for line_no, raw in enumerate(lines[1:-1], start=2):
            fields = raw.strip().split(SEP)
            if fields[0] != "D":
                parsed.warnings.append(f"line {line_no}: unexpected record type {fields[0]!r}")
                continue
            if len(fields) < INBOUND_DETAIL_FIELDS:
                parsed.warnings.append(
                    f"line {line_no}: expected {INBOUND_DETAIL_FIELDS} fields, got {len(fields)}"
                )
                continue
            reference = fields[2].strip()
            if not reference:
                parsed.warnings.append(f"line {line_no}: missing external reference")
                continue
            try:
                amount = parse_amount(fields[5])
            except ValueError as exc:
                parsed.warnings.append(f"line {line_no}: {exc}")
                continue
            settled_at = None
            if fields[6].strip():
                try:
                    settled_at = datetime.strptime(fields[6].strip(), "%Y%m%d%H%M%S").replace(
                        tzinfo=BANK_TZ
                    )
                except ValueError:
                    parsed.warnings.append(
                        f"line {line_no}: invalid settlement timestamp {fields[6]!r}"
                    )
            code = fields[3].strip()
            message = fields[4].strip()
            mapped = self.map_result_code(code, {"message": message})
            parsed.rows.append(
                ParsedRow(
                    line_no=line_no,
                    external_reference=reference,
                    result_code=code,
                    result_message=message,
                    amount=amount,
                    settled_at=settled_at,
                    trace_id=fields[7].strip() or None,
                    operation_id=fields[8].strip() or None,
                    status=mapped.status,
                    reason=mapped.reason,
                    raw_hash=line_hash(raw),
                )
            )
        return parsed

    def map_result_code(
        self, code: str | None, context: dict[str, Any] | None = None
    ) -> MappedStatus:
        key = str(code or "").strip().upper()
        return RESULT_CODES.get(key, MappedStatus(ResultStatus.unknown))

    def validate_outbound_control_totals(
        self, rows: Sequence[PresentmentRow], declared: ControlTotals
    ) -> list[str]:
        return validate_outbound_totals(rows, declared)

    def validate_inbound_control_totals(self, parsed: ParsedFile) -> list[str]:
        return validate_inbound_totals(parsed)

    @staticmethod
    def _parse_header(line: str) -> dict[str, Any]:
        fields = line.strip().split(SEP)
        if len(fields) < 8 or fields[0] != "H":
            raise BatchFileFormatError("missing or malformed header record")
        if fields[1] != INBOUND_TAG:
            raise BatchFileFormatError(f"unexpected file tag {fields[1]!r}")
        try:
            business_date = datetime.strptime(fields[5], "%Y%m%d").date()
            totals = ControlTotals(
                record_count=int(fields[6]),
                amount_total=parse_amount(fields[7]),
                checksum=(fields[8].strip() or None) if len(fields) > 8 else None,
            )
        except ValueError as exc:
            raise BatchFileFormatError(f"malformed header: {exc}") from exc
        return {
            "tag": fields[1],
            "version": fields[2],
            "entity_id": fields[3],
            "service_id": fields[4],
            "business_date": business_date,
            "control_totals": totals,
        }

    @staticmethod
    def _parse_trailer(line: str) -> ControlTotals:
        fields = line.strip().split(SEP)
        if len(fields) < 3 or fields[0] != "T":
            raise BatchFileFormatError("missing or malformed trailer record")
        try:
            return ControlTotals(
                record_count=int(fields[1]),
                amount_total=parse_amount(fields[2]),
                checksum=(fields[3].strip() or None) if len(fields) > 3 else None,
            )
        except ValueError as exc:
            raise BatchFileFormatError(f"malformed trailer: {exc}") from exc
