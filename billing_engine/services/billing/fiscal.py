"""Fiscal document issuance for paid charges.

Issuance is idempotent per (charge, document type). Issuer failures are
persisted on the document and reported as a structured result; they never
propagate to the caller.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Protocol

import httpx
from sqlalchemy.orm import Session

from billing_engine.config import BillingConfig, get_billing_config
from billing_engine.models.billing import Charge, ChargeStatus
from billing_engine.models.fiscal import (
    FiscalDocument,
    FiscalDocumentStatus,
    FiscalDocumentType,
)
from billing_engine.services.common import find_or_create, get_or_404, money_str, validate_enum
from billing_engine.services.events import EventType, emit_event

logger = logging.getLogger(__name__)


class FiscalIssuerError(Exception):
    """Raised by issuers when a document cannot be authorized."""


@dataclass(frozen=True)
class FiscalIssueRequest:
    charge_id: str
    document_type: str
    amount: Decimal
    currency: str
    business_date: date
    point_of_sale: int
    voucher_type: int
    attempt: int


@dataclass(frozen=True)
class IssuedDocument:
    document_number: str
    external_reference: str
    cae: str | None = None
    cae_due_date: date | None = None
    raw: dict = field(default_factory=dict)


class FiscalIssuer(Protocol):
    name: str

    def issue(self, request: FiscalIssueRequest) -> IssuedDocument: ...


class MockFiscalIssuer:
    """Deterministic issuer for non-production environments."""

    name = "mock"

    def issue(self, request: FiscalIssueRequest) -> IssuedDocument:
        digest = hashlib.sha256(
            f"{request.charge_id}:{request.document_type}:{request.attempt}".encode()
        ).hexdigest()
        number = int(digest[:8], 16) % 100_000_000
        document_number = f"{request.point_of_sale:05d}-{number:08d}"
        stamp = request.business_date.strftime("%Y%m%d")
        return IssuedDocument(
            document_number=document_number,
            external_reference=f"MOCK-{request.charge_id}-{stamp}",
            cae=f"{int(digest[8:22], 16) % 10**14:014d}",
            cae_due_date=request.business_date + timedelta(days=10),
            raw={"mode": "mock", "digest": digest},
        )


class HttpFiscalIssuer:
    """Issuer backed by an HTTP invoicing gateway."""

    name = "http"

    def __init__(self, base_url: str, token: str | None = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def issue(self, request: FiscalIssueRequest) -> IssuedDocument:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = {
            "reference": request.charge_id,
            "document_type": request.document_type,
            "amount": money_str(request.amount),
            "currency": request.currency,
            "date": request.business_date.isoformat(),
            "point_of_sale": request.point_of_sale,
            "voucher_type": request.voucher_type,
        }
        try:
            response = httpx.post(
                f"{self.base_url}/documents",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise FiscalIssuerError(f"Fiscal issuer request failed: {exc}") from exc
        if not data.get("document_number"):
            raise FiscalIssuerError(data.get("error") or "Issuer returned no document number")
        due = data.get("cae_due_date")
        return IssuedDocument(
            document_number=str(data["document_number"]),
            external_reference=str(data.get("external_reference") or data["document_number"]),
            cae=data.get("cae"),
            cae_due_date=date.fromisoformat(due) if due else None,
            raw=data,
        )


def get_fiscal_issuer(config: BillingConfig) -> FiscalIssuer:
    if config.fiscal_issuer_mode == "mock":
        return MockFiscalIssuer()
    if config.fiscal_issuer_mode == "http":
        if not config.fiscal_issuer_url:
            raise ValueError("BILLING_FISCAL_ISSUER_URL is not configured")
        return HttpFiscalIssuer(
            config.fiscal_issuer_url,
            token=config.fiscal_issuer_token,
            timeout=config.fiscal_issuer_timeout,
        )
    raise ValueError(f"Unknown fiscal issuer mode: {config.fiscal_issuer_mode}")


@dataclass(frozen=True)
class FiscalIssueResult:
    ok: bool
    status: str
    document_id: str | None = None
    document_number: str | None = None
    message: str | None = None
    already_issued: bool = False


def _result(document: FiscalDocument, ok: bool, message: str | None = None, already: bool = False):
    return FiscalIssueResult(
        ok=ok,
        status=document.status.value,
        document_id=str(document.id),
        document_number=document.document_number,
        message=message,
        already_issued=already,
    )


class FiscalIssuance:
    @staticmethod
    def issue_for_charge(
        db: Session,
        charge_id,
        document_type: FiscalDocumentType | str | None = None,
        force_retry: bool = False,
        config: BillingConfig | None = None,
        issuer: FiscalIssuer | None = None,
        actor: str | None = None,
    ) -> FiscalIssueResult:
        """Issue (or re-issue) the fiscal document for a charge.

        Raises:
            HTTPException: 404 if the charge does not exist
        """
        config = config or get_billing_config()
        charge = get_or_404(db, Charge, charge_id, "Charge not found")
        doc_type = validate_enum(
            document_type or config.fiscal_document_type,
            FiscalDocumentType,
            "document_type",
        )

        document, created = find_or_create(
            db,
            FiscalDocument,
            {"charge_id": charge.id, "document_type": doc_type},
            {
                "agency_id": charge.agency_id,
                "status": FiscalDocumentStatus.pending,
                "amount": charge.amount_ars_paid or charge.amount_ars_due,
                "currency": "ARS",
                "point_of_sale": config.fiscal_point_of_sale,
                "voucher_type": config.fiscal_voucher_type,
                "retry_count": 0,
            },
        )
        if document.status == FiscalDocumentStatus.issued and not force_retry:
            return _result(document, ok=True, already=True)
        if not created:
            document.retry_count = (document.retry_count or 0) + 1
            document.status = FiscalDocumentStatus.pending
        document.error_message = None

        business_date = (charge.paid_at or datetime.now(UTC)).date()
        request = FiscalIssueRequest(
            charge_id=str(charge.id),
            document_type=doc_type.value,
            amount=document.amount,
            currency=document.currency,
            business_date=business_date,
            point_of_sale=document.point_of_sale or config.fiscal_point_of_sale,
            voucher_type=document.voucher_type or config.fiscal_voucher_type,
            attempt=document.retry_count or 0,
        )
        document.request_payload = {
            "amount": money_str(request.amount),
            "currency": request.currency,
            "business_date": business_date.isoformat(),
            "point_of_sale": request.point_of_sale,
            "voucher_type": request.voucher_type,
        }
        db.flush()

        context = {
            "agency_id": charge.agency_id,
            "subscription_id": charge.subscription_id,
            "actor": actor or "system",
        }
        try:
            active_issuer = issuer or get_fiscal_issuer(config)
            issued = active_issuer.issue(request)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.warning("Fiscal issuance failed for charge %s: %s", charge.id, message)
            document.status = FiscalDocumentStatus.failed
            document.error_message = message
            db.flush()
            emit_event(
                db,
                EventType.fiscal_document_failed,
                {
                    "charge_id": str(charge.id),
                    "fiscal_document_id": str(document.id),
                    "document_type": doc_type.value,
                    "retry_count": document.retry_count,
                    "error": message,
                },
                **context,
            )
            return _result(document, ok=False, message=message)

        document.status = FiscalDocumentStatus.issued
        document.document_number = issued.document_number
        document.external_reference = issued.external_reference
        document.cae = issued.cae
        document.cae_due_date = issued.cae_due_date
        document.response_payload = issued.raw
        document.issued_at = datetime.now(UTC)
        db.flush()
        emit_event(
            db,
            EventType.fiscal_document_issued,
            {
                "charge_id": str(charge.id),
                "fiscal_document_id": str(document.id),
                "document_type": doc_type.value,
                "document_number": issued.document_number,
                "external_reference": issued.external_reference,
                "cae": issued.cae,
            },
            **context,
        )
        return _result(document, ok=True)

    @staticmethod
    def autorun_for_paid_charges(
        db: Session,
        charge_ids,
        config: BillingConfig | None = None,
        issuer: FiscalIssuer | None = None,
        actor: str | None = None,
    ) -> dict:
        """Issue fiscal documents for freshly paid charges when autorun is on.

        Individual failures are counted, never raised.
        """
        config = config or get_billing_config()
        summary = {"enabled": config.fiscal_autorun, "issued": 0, "failed": 0, "skipped": 0}
        if not config.fiscal_autorun:
            summary["skipped"] = len(list(charge_ids))
            return summary
        for charge_id in charge_ids:
            charge = db.get(Charge, charge_id)
            if charge is None or charge.status != ChargeStatus.paid:
                summary["skipped"] += 1
                continue
            try:
                with db.begin_nested():
                    result = FiscalIssuance.issue_for_charge(
                        db, charge.id, config=config, issuer=issuer, actor=actor
                    )
            except Exception:
                logger.exception("Fiscal autorun crashed for charge %s", charge_id)
                summary["failed"] += 1
                continue
            if result.ok:
                summary["issued"] += 1
            else:
                summary["failed"] += 1
        return summary


fiscal_issuance = FiscalIssuance()
