from app.tasks.billing import (
    retry_failed_jobs,
    run_billing_cycle,
    send_payment_reminders,
)

__all__ = [
    "run_billing_cycle",
    "retry_failed_jobs",
    "send_payment_reminders",
]
