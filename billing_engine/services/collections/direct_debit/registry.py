from __future__ import annotations

from billing_engine.config import BillingConfig
from billing_engine.services.collections.direct_debit.adapter import DirectDebitAdapter
from billing_engine.services.collections.direct_debit.debug_csv import DebugCsvAdapter
from billing_engine.services.collections.direct_debit.galicia_pd_v1 import GaliciaPdV1Adapter

ADAPTERS: dict[str, type] = {
    DebugCsvAdapter.name: DebugCsvAdapter,
    GaliciaPdV1Adapter.name: GaliciaPdV1Adapter,
}


def get_adapter(name: str) -> DirectDebitAdapter:
    """Instantiate the adapter registered under ``name``.

    Raises:
        ValueError: if no adapter is registered under that name
    """
    key = (name or "").strip().lower()
    try:
        return ADAPTERS[key]()
    except KeyError as exc:
        raise ValueError(
            f"Unknown direct debit adapter {name!r}. Available: {', '.join(sorted(ADAPTERS))}"
        ) from exc


def adapter_for_config(config: BillingConfig) -> DirectDebitAdapter:
    return get_adapter(config.pd_adapter)
