import logging
import os
from datetime import timedelta

from celery.schedules import crontab

from app.config import settings

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
        logger.warning(f"Ignoring non-integer {name}={raw!r}; using {default}")
        return default


def get_celery_config() -> dict:
    broker = (
        settings.celery_broker_url
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/0"
    )
    backend = (
        settings.celery_result_backend
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/1"
    )
    config: dict[str, object] = {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": settings.celery_timezone or "UTC",
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
    }
    config["beat_max_loop_interval"] = _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL", 5)
    return config


def build_beat_schedule() -> dict:
    """Periodic jobs for the billing engine.

    The billing cycle runs daily; the processor's due check and the invoice
    unique constraint make repeated runs within a period harmless.
    """
    schedule: dict[str, dict] = {}

    if _env_bool("BILLING_ENABLED", True):
        hour = min(max(_env_int("BILLING_RUN_HOUR", 2), 0), 23)
        schedule["billing_cycle"] = {
            "task": "app.tasks.billing.run_billing_cycle",
            "schedule": crontab(hour=hour, minute=0),
        }

    if _env_bool("JOB_RETRY_ENABLED", True):
        interval_minutes = _env_int("JOB_RETRY_INTERVAL_MINUTES", 15)
        schedule["failed_job_retry"] = {
            "task": "app.tasks.billing.retry_failed_jobs",
            "schedule": timedelta(minutes=max(interval_minutes, 1)),
        }

    if _env_bool("PAYMENT_REMINDERS_ENABLED", True):
        hour = min(max(_env_int("PAYMENT_REMINDER_HOUR", 8), 0), 23)
        schedule["payment_reminders"] = {
            "task": "app.tasks.billing.send_payment_reminders",
            "schedule": crontab(hour=hour, minute=0),
        }

    logger.info(f"Beat schedule: {', '.join(sorted(schedule)) or 'empty'}")
    return schedule
