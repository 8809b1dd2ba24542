import logging
import os
from datetime import timedelta

logger = logging.getLogger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_value(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = _env_value(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def get_celery_config() -> dict:
    broker = (
        _env_value("CELERY_BROKER_URL")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/0"
    )
    backend = (
        _env_value("CELERY_RESULT_BACKEND")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/1"
    )
    timezone = _env_value("CELERY_TIMEZONE") or "UTC"
    config: dict[str, object] = {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": timezone,
    }
    config["beat_max_loop_interval"] = _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL", 5)
    return config


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    if _env_bool("BILLING_CRON_ENABLED", True):
        interval_seconds = max(_env_int("BILLING_CRON_INTERVAL_SECONDS", 3600), 300)
        schedule["billing_cron_tick"] = {
            "task": "billing_engine.tasks.billing.cron_tick",
            "schedule": timedelta(seconds=interval_seconds),
        }
    if _env_bool("BILLING_FALLBACK_SYNC_ENABLED", True):
        interval_minutes = max(_env_int("BILLING_FALLBACK_SYNC_INTERVAL_MINUTES", 15), 1)
        schedule["billing_fallback_status_sync"] = {
            "task": "billing_engine.tasks.billing.fallback_status_sync",
            "schedule": timedelta(minutes=interval_minutes),
        }
    return schedule
