"""Billing run bookkeeping."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from app.models.billing import BillingRun, BillingRunStatus
from app.services.billing_errors import BillingError
from app.services.common import (
    apply_ordering,
    apply_pagination,
    get_by_id,
    utcnow,
    validate_enum,
)
from app.services.response import ListResponseMixin


class BillingRunNotFoundError(BillingError):
    code = "billing_run_not_found"


class BillingRuns(ListResponseMixin):
    def __init__(self, db: Session):
        self.db = db

    def start(self, run_at: datetime, billing_period: str, billing_cycle: str | None) -> BillingRun:
        run = BillingRun(
            run_at=run_at,
            billing_period=billing_period,
            billing_cycle=billing_cycle,
            status=BillingRunStatus.running,
            started_at=utcnow(),
        )
        self.db.add(run)
        self.db.commit()
        self.db.refresh(run)
        return run

    def finish(self, run: BillingRun, result) -> BillingRun:
        run.status = BillingRunStatus.success
        run.finished_at = utcnow()
        run.accounts_checked = result.checked
        run.accounts_billed = result.billed
        run.skipped = result.skipped
        run.failed = result.failed
        run.total_amount = result.total_amount
        self.db.commit()
        return run

    def fail(self, run: BillingRun, error: str) -> BillingRun:
        run.status = BillingRunStatus.failed
        run.finished_at = utcnow()
        run.error = error
        self.db.commit()
        return run

    def get(self, run_id: str) -> BillingRun:
        run = get_by_id(self.db, BillingRun, run_id)
        if not run:
            raise BillingRunNotFoundError("Billing run not found")
        return run

    def list(
        self,
        status: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ):
        query = self.db.query(BillingRun)
        if status:
            query = query.filter(
                BillingRun.status
                == validate_enum(status, BillingRunStatus, "status")
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": BillingRun.created_at, "run_at": BillingRun.run_at},
        )
        return apply_pagination(query, limit, offset).all()
