"""FX rate storage and lookup (ARS per USD)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy.orm import Session

from billing_engine.models.billing import FxRate
from billing_engine.services.common import find_or_create

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FxQuote:
    rate: Decimal
    rate_date: date
    fx_type: str
    stale: bool = False


class FxRates:
    @staticmethod
    def upsert(
        db: Session,
        rate_date: date,
        ars_per_usd: Decimal | str,
        fx_type: str = "oficial",
        source: str | None = None,
    ) -> FxRate:
        rate = Decimal(str(ars_per_usd))
        if rate <= 0:
            raise HTTPException(status_code=400, detail="FX rate must be positive")
        record, created = find_or_create(
            db,
            FxRate,
            {"fx_type": fx_type, "rate_date": rate_date},
            {"ars_per_usd": rate, "source": source},
        )
        if not created:
            record.ars_per_usd = rate
            if source:
                record.source = source
            db.flush()
        return record

    @staticmethod
    def resolve(
        db: Session,
        on_date: date,
        fx_type: str = "oficial",
        allow_stale: bool = False,
        fallback_rate: Decimal | None = None,
    ) -> FxQuote:
        """Rate effective on or before ``on_date``.

        Raises:
            HTTPException: 409 when no rate exists and stale fallback is not
                allowed
        """
        record = (
            db.query(FxRate)
            .filter(FxRate.fx_type == fx_type)
            .filter(FxRate.rate_date <= on_date)
            .order_by(FxRate.rate_date.desc())
            .first()
        )
        if record:
            return FxQuote(
                rate=Decimal(record.ars_per_usd),
                rate_date=record.rate_date,
                fx_type=fx_type,
            )
        if allow_stale:
            latest = (
                db.query(FxRate)
                .filter(FxRate.fx_type == fx_type)
                .order_by(FxRate.rate_date.desc())
                .first()
            )
            if latest:
                logger.warning(
                    "Using stale FX rate %s from %s for %s",
                    latest.ars_per_usd,
                    latest.rate_date,
                    on_date,
                )
                return FxQuote(
                    rate=Decimal(latest.ars_per_usd),
                    rate_date=latest.rate_date,
                    fx_type=fx_type,
                    stale=True,
                )
            if fallback_rate is not None:
                logger.warning("Using configured fallback FX rate %s", fallback_rate)
                return FxQuote(
                    rate=Decimal(fallback_rate),
                    rate_date=on_date,
                    fx_type=fx_type,
                    stale=True,
                )
        raise HTTPException(
            status_code=409,
            detail=f"No {fx_type} FX rate on or before {on_date.isoformat()}",
        )


fx_rates = FxRates()
