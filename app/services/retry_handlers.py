"""Built-in retry handlers for the failed-job worker.

Handlers receive the claimed ``FailedJob`` and report a ``RetryOutcome``.
Raising is treated the same as reporting failure.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.config import Settings, settings as default_settings
from app.models.billing import BillingCycle
from app.models.failed_job import FailedJob
from app.schemas.billing import BillingRunRequest
from app.services.billing.reminders import SMS_JOB_TYPE, PaymentReminderService
from app.services.billing_cycle import JOB_TYPES, BillingCycleProcessor
from app.services.common import utcnow
from app.services.job_retry import RetryHandlerRegistry, RetryOutcome
from app.services.sms import SmsSender

logger = logging.getLogger(__name__)


def _billing_month(period: str | None) -> str | None:
    """Billing-month override that reproduces a recorded period key."""
    if not period:
        return None
    if len(period) == 4:
        return f"{period}-01"
    return period


class BillingRetryHandler:
    """Re-bills one account, or re-runs a whole cycle when no account is recorded."""

    def __init__(self, db: Session, cycle: BillingCycle, processor: BillingCycleProcessor | None = None):
        self.db = db
        self.cycle = cycle
        self.processor = processor or BillingCycleProcessor(db)

    def _cycle_for(self, metadata: dict) -> BillingCycle | None:
        # A recorded cycle of None means the failed run covered every cycle.
        if "cycle" not in metadata:
            return self.cycle
        recorded = metadata["cycle"]
        return BillingCycle(recorded) if recorded else None

    def __call__(self, job: FailedJob) -> RetryOutcome:
        metadata = job.metadata_ or {}
        billing_month = _billing_month(metadata.get("billing_period"))
        account_id = metadata.get("account_id")
        cycle = self._cycle_for(metadata)

        if account_id:
            result = self.processor.bill_account(
                account_id,
                run_at=utcnow(),
                cycle=cycle,
                billing_month=billing_month,
            )
            if result.billed:
                ref = result.invoices[0]
                return RetryOutcome(
                    success=True,
                    message=f"Invoice {ref.invoice_number} created for account {account_id}",
                    details={"invoice_id": str(ref.invoice_id)},
                )
            return RetryOutcome(
                success=True,
                message=f"Nothing to bill for account {account_id}: {result.message}",
            )

        result = self.processor.run_billing_cycle(
            BillingRunRequest(run_at=utcnow(), billing_month=billing_month, cycle=cycle)
        )
        return RetryOutcome(
            success=True,
            message=(
                f"Billing cycle re-run: billed={result.billed} skipped={result.skipped} "
                f"failed={result.failed}"
            ),
            details={"billing_run_id": str(result.run_id) if result.run_id else None},
        )


def payment_reminder_handler(db: Session, sms: SmsSender):
    def handle(job: FailedJob) -> RetryOutcome:
        summary = PaymentReminderService(db, sms=sms).send_due_reminders()
        if summary.failed:
            return RetryOutcome(
                success=False,
                message=f"{summary.failed} of {summary.total} reminders failed",
            )
        return RetryOutcome(success=True, message=f"{summary.sent} reminders sent")

    return handle


def sms_notification_handler(sms: SmsSender):
    def handle(job: FailedJob) -> RetryOutcome:
        metadata = job.metadata_ or {}
        phone = metadata.get("phone")
        message = metadata.get("message")
        if not phone or not message:
            return RetryOutcome(success=False, message="Job has no phone or message to resend")
        result = sms.send(phone, message, metadata.get("reference"))
        if result.success:
            return RetryOutcome(
                success=True,
                message=f"SMS resent to {phone}",
                details={"message_id": result.message_id},
            )
        return RetryOutcome(success=False, message=result.error or "SMS delivery failed")

    return handle


def build_retry_handlers(
    db: Session,
    sms: SmsSender | None = None,
    config: Settings | None = None,
) -> RetryHandlerRegistry:
    config = config or default_settings
    sms = sms or SmsSender(config)
    processor = BillingCycleProcessor(db, sms=sms, config=config)
    registry = RetryHandlerRegistry()
    for cycle, job_type in JOB_TYPES.items():
        registry.register(job_type, BillingRetryHandler(db, cycle, processor))
    registry.register("payment_reminder", payment_reminder_handler(db, sms))
    registry.register(SMS_JOB_TYPE, sms_notification_handler(sms))
    logger.debug(f"Retry handlers registered: {', '.join(registry.job_types)}")
    return registry
