"""Billing services package.

Stores and services that sit beneath the billing cycle processor:
invoices, billing run bookkeeping, and payment reminders.

    from app.services.billing import InvoiceStore
    InvoiceStore(db).find_existing(account_id, invoice_type, "2024-03")
"""

from app.services.billing.invoices import InvoiceStore
from app.services.billing.reminders import PaymentReminderService
from app.services.billing.runs import BillingRunNotFoundError, BillingRuns

__all__ = [
    "InvoiceStore",
    "BillingRuns",
    "BillingRunNotFoundError",
    "PaymentReminderService",
]
