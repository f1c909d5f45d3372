from prometheus_client import Counter, Histogram

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)

INVOICES_CREATED = Counter(
    "billing_invoices_created_total",
    "Recurring invoices created by the billing cycle",
    ["cycle", "package"],
)
BILLING_ACCOUNT_FAILURES = Counter(
    "billing_account_failures_total",
    "Accounts whose billing failed and were sent to the failed-job ledger",
    ["cycle"],
)
BILLING_NOTIFICATION_FAILURES = Counter(
    "billing_notification_failures_total",
    "Billing notifications that could not be delivered",
    ["channel"],
)
FAILED_JOBS_RECORDED = Counter(
    "failed_jobs_recorded_total",
    "Failed jobs written to the ledger",
    ["job_type"],
)
JOB_RETRY_OUTCOMES = Counter(
    "failed_job_retry_outcomes_total",
    "Outcome of failed-job retry attempts",
    ["job_type", "outcome"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
