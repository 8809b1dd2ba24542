from billing_engine.tasks.billing import (
    cron_tick,
    dunning_retry,
    export_pd_batch,
    fallback_create,
    fallback_status_sync,
    prepare_pd_batch,
    reconcile_pd_batch,
    run_anchor_daily,
)

__all__ = [
    "cron_tick",
    "dunning_retry",
    "export_pd_batch",
    "fallback_create",
    "fallback_status_sync",
    "prepare_pd_batch",
    "reconcile_pd_batch",
    "run_anchor_daily",
]
