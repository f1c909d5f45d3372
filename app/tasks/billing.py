import logging
import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.models.billing import BillingCycle
from app.schemas.billing import BillingRunRequest
from app.services.billing import PaymentReminderService
from app.services.billing_cycle import JOB_TYPES, BillingCycleProcessor, billing_periods
from app.services.common import utcnow
from app.services.job_retry import FailedJobLedger, RetryWorker
from app.services.retry_handlers import build_retry_handlers

logger = logging.getLogger(__name__)


def _record_task_failure(session, job_type: str, exc: Exception, metadata: dict) -> None:
    try:
        FailedJobLedger(session).record_failure(job_type, exc, metadata=metadata)
    except Exception:
        session.rollback()
        logger.exception(f"Could not record {job_type} failure in the ledger")


@celery_app.task(name="app.tasks.billing.run_billing_cycle")
def run_billing_cycle(
    billing_month: str | None = None,
    cycle: str | None = None,
    dry_run: bool = False,
):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    billing_cycle = BillingCycle(cycle) if cycle else None
    try:
        result = BillingCycleProcessor(session).run_billing_cycle(
            BillingRunRequest(
                billing_month=billing_month,
                cycle=billing_cycle,
                dry_run=dry_run,
            )
        )
        return result.model_dump(mode="json")
    except Exception as exc:
        status = "error"
        session.rollback()
        logger.exception("Billing cycle task failed.")
        if not dry_run:
            period = billing_periods(utcnow(), billing_month)
            job_cycle = billing_cycle or BillingCycle.monthly
            _record_task_failure(
                session,
                JOB_TYPES[job_cycle],
                exc,
                {"billing_period": period[job_cycle], "cycle": cycle},
            )
        raise
    finally:
        session.close()
        observe_job("billing_cycle", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.billing.retry_failed_jobs")
def retry_failed_jobs():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        worker = RetryWorker(session, build_retry_handlers(session))
        return worker.retry_due_jobs().model_dump()
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Failed job retry task failed.")
        raise
    finally:
        session.close()
        observe_job("failed_job_retry", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.billing.send_payment_reminders")
def send_payment_reminders():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        service = PaymentReminderService(session, ledger=FailedJobLedger(session))
        summary = service.send_due_reminders()
        if summary.failed:
            status = "partial"
            _record_task_failure(
                session,
                "payment_reminder",
                f"{summary.failed} of {summary.total} payment reminders failed",
                summary.model_dump(),
            )
        return summary.model_dump()
    except Exception as exc:
        status = "error"
        session.rollback()
        logger.exception("Payment reminder task failed.")
        _record_task_failure(session, "payment_reminder", exc, {})
        raise
    finally:
        session.close()
        observe_job("payment_reminders", status, time.monotonic() - start)
