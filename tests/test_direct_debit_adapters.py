"""Tests for direct-debit bank file adapters."""

from datetime import date, datetime
from decimal import Decimal

import pytest

from billing_engine.services.collections.direct_debit import get_adapter
from billing_engine.services.collections.direct_debit.adapter import (
    BatchFileFormatError,
    BatchHeader,
    ControlTotals,
    DetailedReason,
    PresentmentRow,
    ResponseRecord,
    ResultStatus,
    compare_control_totals,
    compute_checksum,
    compute_control_totals,
    line_hash,
)

HEADER = BatchHeader(
    batch_id="0f1e2d3c4b5a69788796a5b4c3d2e1f0",
    business_date=date(2026, 3, 8),
    entity_id="0001",
    service_id="PD",
)


def _rows():
    return [
        PresentmentRow(
            attempt_id="a1",
            charge_id="c1",
            agency_id="g1",
            external_reference="AT-AAAAAAAAAAAA-01",
            amount=Decimal("28314.00"),
            scheduled_for=date(2026, 3, 8),
            holder_name="Ana Perez",
            holder_tax_id="27123456784",
            account_last4="4321",
        ),
        PresentmentRow(
            attempt_id="a2",
            charge_id="c2",
            agency_id="g2",
            external_reference="AT-BBBBBBBBBBBB-01",
            amount=Decimal("1500.50"),
            scheduled_for=date(2026, 3, 8),
            holder_name="Juan | Gomez",
        ),
    ]


class TestControlTotals:
    def test_checksum_ignores_order(self):
        pairs = [("A", Decimal("1.00")), ("B", Decimal("2.50"))]
        checksum = compute_checksum(pairs)
        assert checksum == compute_checksum(list(reversed(pairs)))
        assert len(checksum) == 16
        assert checksum == checksum.upper()

    def test_mismatches_reported(self):
        computed = compute_control_totals([("A", Decimal("10.00")), ("B", Decimal("5.00"))])
        declared = ControlTotals(record_count=3, amount_total=Decimal("15.50"), checksum="X")
        mismatches = compare_control_totals(declared, computed)
        assert len(mismatches) == 3
        assert mismatches[0].startswith("record_count declared 3")

    def test_one_cent_difference_tolerated(self):
        computed = compute_control_totals([("A", Decimal("10.00"))])
        declared = ControlTotals(record_count=1, amount_total=Decimal("10.01"))
        assert compare_control_totals(declared, computed) == []


@pytest.mark.parametrize("adapter_name", ["debug_csv", "galicia_pd_v1"])
class TestAdapterFiles:
    def test_outbound_file_validates_against_its_own_totals(self, adapter_name):
        adapter = get_adapter(adapter_name)
        rows = _rows()
        built = adapter.build_outbound_file(HEADER, rows)

        assert built.control_totals.record_count == 2
        assert built.control_totals.amount_total == Decimal("29814.50")
        assert len(built.line_hashes) == 2
        assert adapter.validate_outbound_control_totals(rows, built.control_totals) == []

    def test_outbound_totals_detect_extra_row(self, adapter_name):
        adapter = get_adapter(adapter_name)
        rows = _rows()
        declared = compute_control_totals((r.external_reference, r.amount) for r in rows[:1])
        mismatches = adapter.validate_outbound_control_totals(rows, declared)
        assert any("record_count" in message for message in mismatches)

    def test_response_file_round_trip(self, adapter_name):
        adapter = get_adapter(adapter_name)
        paid_code = "PAID" if adapter_name == "debug_csv" else "00"
        rejected_code = "REJECTED" if adapter_name == "debug_csv" else "51"
        content = adapter.render_response_file(
            HEADER,
            [
                ResponseRecord(
                    external_reference="AT-AAAAAAAAAAAA-01",
                    result_code=paid_code,
                    amount=Decimal("28314.00"),
                    settled_at=datetime(2026, 3, 9, 10, 30),
                    trace_id="TR1",
                ),
                ResponseRecord(
                    external_reference="AT-BBBBBBBBBBBB-01",
                    result_code=rejected_code,
                    amount=Decimal("1500.50"),
                    message="Fondos insuficientes",
                    reason_code="insufficient_funds",
                ),
            ],
        )

        parsed = adapter.parse_inbound_file(content)

        assert parsed.warnings == []
        assert adapter.validate_inbound_control_totals(parsed) == []
        assert [row.status for row in parsed.rows] == [ResultStatus.paid, ResultStatus.rejected]
        assert parsed.rows[1].reason == DetailedReason.insufficient_funds
        assert parsed.rows[0].trace_id == "TR1"
        assert parsed.rows[0].settled_at is not None
        assert parsed.rows[1].settled_at is None
        assert parsed.header["business_date"] == date(2026, 3, 8)

    def test_malformed_header_rejected(self, adapter_name):
        adapter = get_adapter(adapter_name)
        with pytest.raises(BatchFileFormatError):
            adapter.parse_inbound_file(b"garbage\nT|0|0.00\n")

    def test_empty_file_rejected(self, adapter_name):
        adapter = get_adapter(adapter_name)
        with pytest.raises(BatchFileFormatError):
            adapter.parse_inbound_file(b"")


class TestGaliciaCodes:
    @pytest.mark.parametrize(
        "code,status,reason",
        [
            ("00", ResultStatus.paid, None),
            ("51", ResultStatus.rejected, DetailedReason.insufficient_funds),
            ("14", ResultStatus.rejected, DetailedReason.invalid_account),
            ("md01", ResultStatus.rejected, DetailedReason.mandate_invalid),
            ("MD02", ResultStatus.rejected, DetailedReason.mandate_inactive),
            ("15", ResultStatus.rejected, DetailedReason.account_closed),
            ("96", ResultStatus.error, DetailedReason.format_error),
            ("94", ResultStatus.error, DetailedReason.duplicate),
            ("77", ResultStatus.unknown, None),
            (None, ResultStatus.unknown, None),
        ],
    )
    def test_result_code_mapping(self, code, status, reason):
        mapped = get_adapter("galicia_pd_v1").map_result_code(code)
        assert mapped.status == status
        assert mapped.reason == reason

    def test_bad_detail_lines_become_warnings(self):
        content = (
            "H|GALICIA_PD_RESP|v1.0|0001|PD|20260308|1|10.00|\n"
            "D|1|AT-1|00|ok|10.00|20260309103000|T|O\n"
            "D|2|AT-2|00\n"
            "D|3|AT-3|00|ok|abc||||\n"
            "T|1|10.00|\n"
        ).encode("utf-8")
        parsed = get_adapter("galicia_pd_v1").parse_inbound_file(content)

        assert [row.external_reference for row in parsed.rows] == ["AT-1"]
        assert len(parsed.warnings) == 2
        assert parsed.rows[0].settled_at.utcoffset().total_seconds() == -3 * 3600

    def test_wrong_tag_rejected(self):
        with pytest.raises(BatchFileFormatError, match="unexpected file tag"):
            get_adapter("galicia_pd_v1").parse_inbound_file(
                b"H|GALICIA_PD|v1.0|0001|PD|20260308|0|0.00|\nT|0|0.00|\n"
            )


class TestDebugCsvCodes:
    def test_reason_aliases(self):
        adapter = get_adapter("debug_csv")
        assert adapter.map_result_code("rechazado", {"reason": "NSF"}).reason == (
            DetailedReason.insufficient_funds
        )
        assert adapter.map_result_code("ERROR", {"reason": "duplicate"}).status == ResultStatus.error
        assert adapter.map_result_code("MAYBE").status == ResultStatus.unknown

    def test_unterminated_quote_only_skips_its_line(self):
        good_line = "D,2,AT-2,PAID,,ok,10.00,,,"
        content = (
            "H,DEBUG_PD_RESP,1,0001,PD,2026-03-08,2,20.00,\n"
            'D,1,AT-1,PAID,,"ok,10.00,,,\n'
            f"{good_line}\n"
            "T,2,20.00,\n"
        ).encode("utf-8")

        parsed = get_adapter("debug_csv").parse_inbound_file(content)

        assert [row.external_reference for row in parsed.rows] == ["AT-2"]
        assert len(parsed.warnings) == 1
        assert parsed.warnings[0].startswith("line 2:")
        assert parsed.rows[0].line_no == 3
        assert parsed.rows[0].raw_hash == line_hash(good_line)


def test_unknown_adapter_name():
    with pytest.raises(ValueError, match="Unknown direct debit adapter"):
        get_adapter("santander")
