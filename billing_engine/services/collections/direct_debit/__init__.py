"""Direct-debit bank file adapters and batch processing."""

from billing_engine.services.collections.direct_debit.registry import (
    ADAPTERS,
    adapter_for_config,
    get_adapter,
)

__all__ = ["ADAPTERS", "adapter_for_config", "get_adapter"]
