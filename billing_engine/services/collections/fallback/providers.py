"""Fallback payment-intent providers (QR and hosted checkout).

Providers only talk to the outside world; persistence of intents lives in
``fallback.service``. Statuses are reported with ``FallbackIntentStatus``
values so callers never have to interpret provider vocabularies.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Protocol
from urllib.parse import quote

import httpx

from billing_engine.config import BillingConfig
from billing_engine.models.collections import FallbackIntentStatus
from billing_engine.services.common import money_str

logger = logging.getLogger(__name__)


class FallbackProviderError(Exception):
    """Raised when a provider call fails or answers something unusable."""


@dataclass(frozen=True)
class IntentRequest:
    charge_id: str
    amount: Decimal
    currency: str
    external_reference: str
    idempotency_key: str
    expires_at: datetime | None = None


@dataclass(frozen=True)
class IntentSnapshot:
    """What a provider needs to know about an existing intent."""

    external_reference: str
    status: FallbackIntentStatus
    provider_status: str | None = None
    provider_payment_id: str | None = None
    expires_at: datetime | None = None
    paid_at: datetime | None = None


@dataclass(frozen=True)
class CreatedIntent:
    provider_payment_id: str
    status: FallbackIntentStatus
    provider_status: str
    payment_url: str | None = None
    qr_payload: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class IntentStatus:
    status: FallbackIntentStatus
    provider_status: str
    paid_at: datetime | None = None
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CancelResult:
    success: bool
    final_status: FallbackIntentStatus
    raw: dict = field(default_factory=dict)


class FallbackProvider(Protocol):
    name: str
    version: str

    def create_payment_intent(self, request: IntentRequest) -> CreatedIntent: ...
    def get_payment_status(self, intent: IntentSnapshot) -> IntentStatus: ...
    def cancel_payment_intent(self, intent: IntentSnapshot) -> CancelResult: ...


def _is_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    if expires_at is None:
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return expires_at <= (now or datetime.now(UTC))


def map_provider_status(
    raw_status: str | None, expires_at: datetime | None, now: datetime | None = None
) -> FallbackIntentStatus:
    """Map a provider status word onto pending/paid/expired.

    Provider-side FAILED or CANCELED close the intent like an expiry; the raw
    word is kept in ``provider_status`` by the caller.
    """
    word = str(raw_status or "").strip().upper()
    if word in {"PAID", "APPROVED", "ACCREDITED"}:
        return FallbackIntentStatus.paid
    if word in {"EXPIRED", "FAILED", "REJECTED", "CANCELED", "CANCELLED"}:
        return FallbackIntentStatus.expired
    if _is_expired(expires_at, now):
        return FallbackIntentStatus.expired
    return FallbackIntentStatus.pending


def _cancel_outcome(intent: IntentSnapshot, provider: str) -> CancelResult:
    already_paid = intent.status == FallbackIntentStatus.paid or (
        str(intent.provider_status or "").upper() == "PAID"
    )
    return CancelResult(
        success=True,
        final_status=FallbackIntentStatus.paid if already_paid else FallbackIntentStatus.canceled,
        raw={"provider": provider, "canceled_at": datetime.now(UTC).isoformat()},
    )


def _observed_status(intent: IntentSnapshot, provider: str) -> IntentStatus:
    source = intent.provider_status or intent.status.value
    mapped = map_provider_status(source, intent.expires_at)
    paid_at = (intent.paid_at or datetime.now(UTC)) if mapped == FallbackIntentStatus.paid else None
    provider_status = str(source).upper()
    if mapped == FallbackIntentStatus.expired and provider_status == "PENDING":
        provider_status = "EXPIRED"
    return IntentStatus(
        status=mapped,
        provider_status=provider_status,
        paid_at=paid_at,
        raw={"provider": provider, "observed_at": datetime.now(UTC).isoformat()},
    )


class CigQrProvider:
    """Stub QR provider; the QR payload embeds the external reference."""

    name = "cig_qr"
    version = "cig_qr_v1_stub"

    def create_payment_intent(self, request: IntentRequest) -> CreatedIntent:
        payment_url = f"https://stub.cig.local/pay/{quote(request.external_reference, safe='')}"
        qr_payload = json.dumps(
            {
                "provider": self.name,
                "external_reference": request.external_reference,
                "amount": money_str(request.amount),
                "currency": request.currency,
                "expires_at": request.expires_at.isoformat() if request.expires_at else None,
            }
        )
        return CreatedIntent(
            provider_payment_id=f"cig_{request.external_reference}",
            status=FallbackIntentStatus.pending,
            provider_status="PENDING",
            payment_url=payment_url,
            qr_payload=qr_payload,
            raw={"created_at": datetime.now(UTC).isoformat(), "payment_url": payment_url},
        )

    def get_payment_status(self, intent: IntentSnapshot) -> IntentStatus:
        return _observed_status(intent, self.name)

    def cancel_payment_intent(self, intent: IntentSnapshot) -> CancelResult:
        return _cancel_outcome(intent, self.name)


class MpCheckoutProvider:
    """Stub hosted-checkout provider."""

    name = "mp"
    version = "mp_stub_v1"

    def create_payment_intent(self, request: IntentRequest) -> CreatedIntent:
        return CreatedIntent(
            provider_payment_id=f"mp_{request.external_reference}",
            status=FallbackIntentStatus.pending,
            provider_status="PENDING",
            payment_url=(
                f"https://stub.mp.local/checkout/{quote(request.external_reference, safe='')}"
            ),
            raw={"provider": "mp_stub", "external_reference": request.external_reference},
        )

    def get_payment_status(self, intent: IntentSnapshot) -> IntentStatus:
        return _observed_status(intent, self.name)

    def cancel_payment_intent(self, intent: IntentSnapshot) -> CancelResult:
        return _cancel_outcome(intent, self.name)


class HttpFallbackProvider:
    """Provider backed by a payment-intent HTTP API."""

    version = "http_v1"

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 15.0,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self, idempotency_key: str | None = None) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = httpx.request(
                method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as exc:
            raise FallbackProviderError(f"Fallback provider request failed: {exc}") from exc
        except ValueError as exc:
            raise FallbackProviderError("Fallback provider returned invalid JSON") from exc

    def create_payment_intent(self, request: IntentRequest) -> CreatedIntent:
        data = self._request(
            "POST",
            "/intents",
            json={
                "external_reference": request.external_reference,
                "amount": money_str(request.amount),
                "currency": request.currency,
                "expires_at": request.expires_at.isoformat() if request.expires_at else None,
            },
            headers=self._headers(request.idempotency_key),
        )
        payment_id = data.get("id") or data.get("payment_id")
        if not payment_id:
            raise FallbackProviderError("Fallback provider returned no payment id")
        provider_status = str(data.get("status") or "PENDING").upper()
        return CreatedIntent(
            provider_payment_id=str(payment_id),
            status=map_provider_status(provider_status, request.expires_at),
            provider_status=provider_status,
            payment_url=data.get("payment_url"),
            qr_payload=data.get("qr_payload"),
            raw=data,
        )

    def get_payment_status(self, intent: IntentSnapshot) -> IntentStatus:
        data = self._request(
            "GET",
            f"/intents/{quote(intent.provider_payment_id or intent.external_reference, safe='')}",
            headers=self._headers(),
        )
        provider_status = str(data.get("status") or "PENDING").upper()
        mapped = map_provider_status(provider_status, intent.expires_at)
        paid_at = None
        if mapped == FallbackIntentStatus.paid:
            raw_paid = data.get("paid_at")
            paid_at = datetime.fromisoformat(raw_paid) if raw_paid else datetime.now(UTC)
        return IntentStatus(
            status=mapped, provider_status=provider_status, paid_at=paid_at, raw=data
        )

    def cancel_payment_intent(self, intent: IntentSnapshot) -> CancelResult:
        if intent.status == FallbackIntentStatus.paid:
            return CancelResult(success=True, final_status=FallbackIntentStatus.paid)
        data = self._request(
            "POST",
            f"/intents/{quote(intent.provider_payment_id or intent.external_reference, safe='')}/cancel",
            headers=self._headers(),
        )
        if str(data.get("status") or "").upper() == "PAID":
            return CancelResult(success=True, final_status=FallbackIntentStatus.paid, raw=data)
        return CancelResult(success=True, final_status=FallbackIntentStatus.canceled, raw=data)


STUB_PROVIDERS: dict[str, type] = {
    CigQrProvider.name: CigQrProvider,
    MpCheckoutProvider.name: MpCheckoutProvider,
}


def get_provider(name: str, config: BillingConfig | None = None) -> FallbackProvider:
    """Resolve a provider by name.

    With ``BILLING_FALLBACK_API_URL`` set, every provider goes through the
    HTTP client; otherwise the stubs answer locally.

    Raises:
        ValueError: if the name is unknown
    """
    key = (name or "").strip().lower()
    if key not in STUB_PROVIDERS:
        raise ValueError(
            f"Unknown fallback provider {name!r}. Available: {', '.join(sorted(STUB_PROVIDERS))}"
        )
    if config is not None and config.fallback_api_url:
        return HttpFallbackProvider(
            key,
            config.fallback_api_url,
            api_key=config.fallback_api_key,
            timeout=config.fallback_api_timeout,
        )
    return STUB_PROVIDERS[key]()
