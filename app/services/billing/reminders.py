"""Payment reminders for pending recurring invoices.

A first reminder goes out once an invoice is within
``reminder_first_days`` of its due date, a second one within
``reminder_second_days``. ``reminder_count`` makes the job re-runnable.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from app.config import Settings, settings as default_settings
from app.models.billing import Invoice
from app.models.notification import NotificationSeverity
from app.schemas.billing import PaymentReminderSummary
from app.services import pricing
from app.services.accounts import AccountStore
from app.services.billing.invoices import InvoiceStore
from app.services.common import as_utc, utcnow
from app.services.notification import InAppNotifier
from app.services.sms import SmsResult, SmsSender

if TYPE_CHECKING:
    from app.services.job_retry import FailedJobLedger

logger = logging.getLogger(__name__)

SMS_JOB_TYPE = "sms_notification"


class PaymentReminderService:
    def __init__(
        self,
        db: Session,
        invoices: InvoiceStore | None = None,
        accounts: AccountStore | None = None,
        notifier: InAppNotifier | None = None,
        sms: SmsSender | None = None,
        ledger: FailedJobLedger | None = None,
        config: Settings | None = None,
    ):
        self.db = db
        self.invoices = invoices or InvoiceStore(db)
        self.accounts = accounts or AccountStore(db)
        self.notifier = notifier or InAppNotifier(db)
        self.sms = sms or SmsSender()
        self.ledger = ledger
        self.config = config or default_settings

    def _reminder_stage(self, invoice: Invoice, now: datetime) -> int | None:
        due_at = as_utc(invoice.due_at)
        days_left = (due_at - now).total_seconds() / 86400
        sent = invoice.reminder_count or 0
        if days_left <= self.config.reminder_second_days and sent < 2:
            return 2
        if days_left <= self.config.reminder_first_days and sent < 1:
            return 1
        return None

    def send_due_reminders(self, now: datetime | None = None) -> PaymentReminderSummary:
        now = as_utc(now) or utcnow()
        summary = PaymentReminderSummary()
        candidates = self.invoices.list_reminder_candidates(
            now, self.config.reminder_first_days
        )
        for invoice in candidates:
            stage = self._reminder_stage(invoice, now)
            if stage is None:
                continue
            invoice_id = invoice.id
            amount = invoice.amount
            summary.total += 1
            try:
                undelivered = self._send_reminder(invoice, stage, now)
            except Exception as exc:
                self.db.rollback()
                summary.failed += 1
                logger.warning(f"Payment reminder failed for invoice {invoice_id}: {exc}")
                continue
            self.db.commit()
            summary.sent += 1
            summary.total_amount += amount
            if undelivered is not None:
                self._record_sms_failure(invoice_id, *undelivered, now=now)

        logger.info(
            f"Payment reminders: {summary.sent}/{summary.total} sent, "
            f"{summary.failed} failed"
        )
        return summary

    def _send_reminder(
        self, invoice: Invoice, stage: int, now: datetime
    ) -> tuple[str, str, SmsResult] | None:
        """Send one reminder; returns (phone, text, result) for an undelivered SMS."""
        account = self.accounts.get(invoice.account_id)
        due_at = as_utc(invoice.due_at)
        amount = pricing.format_amount(invoice.amount, invoice.currency)
        title = "Payment Reminder" if stage == 1 else "Final Payment Reminder"
        message = (
            f"Invoice {invoice.invoice_number} for {amount} is due on "
            f"{due_at.date().isoformat()}. Please pay to avoid service interruption."
        )
        self.notifier.notify(
            account.id,
            title,
            message,
            NotificationSeverity.warning,
            f"/invoices/{invoice.id}",
        )
        invoice.reminder_count = stage
        invoice.last_reminder_at = now

        if not account.phone_number:
            return None
        text = f"Hello {account.display_name}! {message} {self.config.payment_instructions}"
        result = self.sms.send(account.phone_number, text, "payment_reminder")
        if result.success:
            return None
        logger.warning(f"Reminder SMS failed for invoice {invoice.id}: {result.error}")
        return account.phone_number, text, result

    def _record_sms_failure(self, invoice_id, phone, text, result: SmsResult, now) -> None:
        # Disabled or unconfigured gateways are not worth retrying.
        if self.ledger is None or result.error in ("sms_disabled", "missing_phone"):
            return
        self.ledger.record_failure(
            SMS_JOB_TYPE,
            result.error or "SMS delivery failed",
            metadata={
                "phone": phone,
                "message": text,
                "reference": "payment_reminder",
                "invoice_id": str(invoice_id),
            },
            now=now,
        )
