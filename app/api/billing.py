from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas.billing import (
    AccountReclassifyRequest,
    AccountStatusRead,
    BillingRunRead,
    BillingRunRequest,
    BillingRunResult,
    InvoiceRead,
    PaymentReminderSummary,
)
from app.schemas.common import ListResponse
from app.schemas.failed_job import (
    FailedJobRead,
    FailedJobResolveRequest,
    FailedJobSummary,
    RetrySummary,
)
from app.services.account_status import AccountStatusService
from app.services.billing import BillingRuns, InvoiceStore, PaymentReminderService
from app.services.billing_cycle import BillingCycleProcessor
from app.services.job_retry import FailedJobLedger, RetryWorker
from app.services.retry_handlers import build_retry_handlers

router = APIRouter(prefix="/billing")


# --- Billing runs ---


@router.post("/runs", response_model=BillingRunResult, tags=["billing-runs"])
def trigger_billing_run(payload: BillingRunRequest, db: Session = Depends(get_db)):
    return BillingCycleProcessor(db).run_billing_cycle(payload)


@router.get(
    "/runs",
    response_model=ListResponse[BillingRunRead],
    tags=["billing-runs"],
)
def list_billing_runs(
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return BillingRuns(db).list_response(status, order_by, order_dir, limit, offset)


@router.get("/runs/{run_id}", response_model=BillingRunRead, tags=["billing-runs"])
def get_billing_run(run_id: str, db: Session = Depends(get_db)):
    return BillingRuns(db).get(run_id)


# --- Invoices and reminders ---


@router.get(
    "/invoices",
    response_model=ListResponse[InvoiceRead],
    tags=["invoices"],
)
def list_invoices(
    account_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return InvoiceStore(db).list_response(
        account_id, status, order_by, order_dir, limit, offset
    )


@router.post("/reminders", response_model=PaymentReminderSummary, tags=["invoices"])
def send_payment_reminders(db: Session = Depends(get_db)):
    return PaymentReminderService(db, ledger=FailedJobLedger(db)).send_due_reminders()


# --- Account status ---


@router.post(
    "/accounts/{account_id}/reclassify",
    response_model=AccountStatusRead,
    tags=["accounts"],
)
def reclassify_account(
    account_id: str,
    payload: AccountReclassifyRequest,
    db: Session = Depends(get_db),
):
    account_status, payment_status = AccountStatusService(db).reclassify(
        account_id, payload.total_paid, dry_run=payload.dry_run
    )
    return AccountStatusRead(
        account_id=account_id,
        account_status=account_status,
        payment_status=payment_status,
    )


# --- Failed jobs ---


@router.get(
    "/failed-jobs",
    response_model=ListResponse[FailedJobRead],
    tags=["failed-jobs"],
)
def list_failed_jobs(
    status: str | None = None,
    job_type: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return FailedJobLedger(db).list_response(
        status, job_type, order_by, order_dir, limit, offset
    )


@router.get(
    "/failed-jobs/summary",
    response_model=FailedJobSummary,
    tags=["failed-jobs"],
)
def failed_job_summary(db: Session = Depends(get_db)):
    return FailedJobLedger(db).summary()


@router.post("/failed-jobs/retry", response_model=RetrySummary, tags=["failed-jobs"])
def retry_failed_jobs(db: Session = Depends(get_db)):
    return RetryWorker(db, build_retry_handlers(db)).retry_due_jobs()


@router.get(
    "/failed-jobs/{job_id}",
    response_model=FailedJobRead,
    tags=["failed-jobs"],
)
def get_failed_job(job_id: str, db: Session = Depends(get_db)):
    return FailedJobLedger(db).get(job_id)


@router.post(
    "/failed-jobs/{job_id}/resolve",
    response_model=FailedJobRead,
    tags=["failed-jobs"],
)
def resolve_failed_job(
    job_id: str,
    payload: FailedJobResolveRequest,
    db: Session = Depends(get_db),
):
    return FailedJobLedger(db).resolve_manually(
        job_id, payload.resolved_by, payload.resolution
    )
