"""Direct-debit bank file adapter interface and shared helpers.

An adapter renders presentment files for one bank layout and parses that
bank's response files. Adapters are plain classes satisfying
``DirectDebitAdapter``; they are picked by name from configuration through
the registry. Building and parsing are pure: nothing here touches the
database.
"""

from __future__ import annotations

import enum
import hashlib
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from billing_engine.services.common import money_str, round_money

AMOUNT_TOLERANCE = Decimal("0.01")


class BatchFileFormatError(ValueError):
    """Raised when a file's header or trailer cannot be understood."""


class ResultStatus(enum.Enum):
    paid = "paid"
    rejected = "rejected"
    error = "error"
    unknown = "unknown"


class DetailedReason(enum.Enum):
    insufficient_funds = "insufficient_funds"
    invalid_account = "invalid_account"
    mandate_invalid = "mandate_invalid"
    mandate_inactive = "mandate_inactive"
    account_closed = "account_closed"
    format_error = "format_error"
    duplicate = "duplicate"


# Reasons that make further direct-debit retries pointless.
HARD_DECLINE_REASONS = frozenset(
    {
        DetailedReason.invalid_account,
        DetailedReason.mandate_invalid,
        DetailedReason.mandate_inactive,
        DetailedReason.account_closed,
    }
)


@dataclass(frozen=True)
class MappedStatus:
    status: ResultStatus
    reason: DetailedReason | None = None


@dataclass(frozen=True)
class BatchHeader:
    batch_id: str
    business_date: date
    entity_id: str
    service_id: str


@dataclass(frozen=True)
class PresentmentRow:
    attempt_id: str
    charge_id: str
    agency_id: str
    external_reference: str
    amount: Decimal
    scheduled_for: date
    holder_name: str | None = None
    holder_tax_id: str | None = None
    account_last4: str | None = None


@dataclass(frozen=True)
class ControlTotals:
    record_count: int
    amount_total: Decimal
    checksum: str | None = None

    def as_dict(self) -> dict:
        return {
            "record_count": self.record_count,
            "amount_total": money_str(self.amount_total),
            "checksum": self.checksum,
        }


@dataclass(frozen=True)
class BuiltFile:
    file_name: str
    content: bytes
    control_totals: ControlTotals
    line_hashes: tuple[str, ...] = ()


@dataclass(frozen=True)
class ResponseRecord:
    """One simulated bank answer, used to render sandbox response files."""

    external_reference: str
    result_code: str
    amount: Decimal
    message: str = ""
    reason_code: str = ""
    settled_at: datetime | None = None
    trace_id: str = ""
    operation_id: str = ""


@dataclass(frozen=True)
class ParsedRow:
    line_no: int
    external_reference: str
    result_code: str
    result_message: str
    amount: Decimal | None
    settled_at: datetime | None
    trace_id: str | None
    operation_id: str | None
    status: ResultStatus
    reason: DetailedReason | None
    raw_hash: str


@dataclass
class ParsedFile:
    rows: list[ParsedRow] = field(default_factory=list)
    control_totals: ControlTotals | None = None
    warnings: list[str] = field(default_factory=list)
    header: dict[str, Any] = field(default_factory=dict)


class DirectDebitAdapter(Protocol):
    name: str
    version: str

    def build_outbound_file(
        self, batch: BatchHeader, rows: Sequence[PresentmentRow]
    ) -> BuiltFile: ...

    def parse_inbound_file(self, content: bytes) -> ParsedFile: ...

    def map_result_code(
        self, code: str | None, context: dict[str, Any] | None = None
    ) -> MappedStatus: ...

    def validate_outbound_control_totals(
        self, rows: Sequence[PresentmentRow], declared: ControlTotals
    ) -> list[str]: ...

    def validate_inbound_control_totals(self, parsed: ParsedFile) -> list[str]: ...

    def render_response_file(
        self, batch: BatchHeader, records: Sequence[ResponseRecord]
    ) -> bytes: ...


def line_hash(raw_line: str) -> str:
    """Content hash of a raw file line, used to dedupe reprocessing."""
    return hashlib.sha256(raw_line.strip().encode("utf-8")).hexdigest()


def file_sha256(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def compute_checksum(pairs: Iterable[tuple[str, Decimal]]) -> str:
    """Checksum over (external_reference, amount) pairs.

    Pairs are sorted first, so the result does not depend on input order.
    """
    canonical = sorted(f"{ref}:{money_str(amount)}" for ref, amount in pairs)
    digest = hashlib.sha256("\n".join(canonical).encode("utf-8")).hexdigest()
    return digest[:16].upper()


def compute_control_totals(pairs: Iterable[tuple[str, Decimal]]) -> ControlTotals:
    pairs = list(pairs)
    total = sum((round_money(amount) for _, amount in pairs), Decimal("0.00"))
    return ControlTotals(
        record_count=len(pairs),
        amount_total=round_money(total),
        checksum=compute_checksum(pairs),
    )


def compare_control_totals(declared: ControlTotals, computed: ControlTotals) -> list[str]:
    """Human-readable differences between declared and computed totals."""
    mismatches = []
    if declared.record_count != computed.record_count:
        mismatches.append(
            f"record_count declared {declared.record_count} "
            f"but computed {computed.record_count}"
        )
    difference = abs(Decimal(declared.amount_total) - Decimal(computed.amount_total))
    if difference > AMOUNT_TOLERANCE:
        mismatches.append(
            f"amount_total declared {money_str(declared.amount_total)} "
            f"but computed {money_str(computed.amount_total)}"
        )
    if declared.checksum and computed.checksum and declared.checksum != computed.checksum:
        mismatches.append(
            f"checksum declared {declared.checksum} but computed {computed.checksum}"
        )
    return mismatches


def validate_outbound_totals(
    rows: Sequence[PresentmentRow], declared: ControlTotals
) -> list[str]:
    computed = compute_control_totals((row.external_reference, row.amount) for row in rows)
    return compare_control_totals(declared, computed)


def validate_inbound_totals(parsed: ParsedFile) -> list[str]:
    if parsed.control_totals is None:
        return ["control totals missing"]
    computed = compute_control_totals(
        (row.external_reference, row.amount)
        for row in parsed.rows
        if row.amount is not None
    )
    return compare_control_totals(parsed.control_totals, computed)


def parse_amount(raw: str) -> Decimal:
    try:
        value = Decimal(raw.strip().replace(",", "."))
    except (InvalidOperation, AttributeError) as exc:
        raise ValueError(f"invalid amount {raw!r}") from exc
    if not value.is_finite():
        raise ValueError(f"invalid amount {raw!r}")
    return round_money(value)


def decode_content(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def clean_field(value: str | None, separator: str) -> str:
    """Strip separators and line breaks from free-text values."""
    if not value:
        return ""
    return " ".join(str(value).replace(separator, " ").split())
