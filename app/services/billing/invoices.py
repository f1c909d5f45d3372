"""Invoice store for recurring billing."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.billing import BillingCycle, Invoice, InvoiceStatus, InvoiceType
from app.schemas.billing import InvoiceCreate
from app.services import numbering
from app.services.common import (
    apply_ordering,
    apply_pagination,
    as_utc,
    coerce_uuid,
    validate_enum,
    validate_uuid,
)
from app.services.response import ListResponseMixin


class InvoiceStore(ListResponseMixin):
    def __init__(self, db: Session):
        self.db = db

    def find_existing(
        self, account_id, invoice_type: InvoiceType, billing_period: str
    ) -> Invoice | None:
        return (
            self.db.query(Invoice)
            .filter(Invoice.account_id == coerce_uuid(account_id))
            .filter(Invoice.invoice_type == invoice_type)
            .filter(Invoice.billing_period == billing_period)
            .first()
        )

    def create(self, payload: InvoiceCreate) -> Invoice:
        """Insert an invoice in the caller's transaction.

        Raises sqlalchemy.exc.IntegrityError when an invoice for the same
        (account, type, period) already exists.
        """
        data = payload.model_dump()
        invoice = Invoice(**data)
        invoice.status = InvoiceStatus.pending
        invoice.invoice_number = numbering.next_invoice_number(self.db)
        self.db.add(invoice)
        self.db.flush()
        return invoice

    def latest_issued_at(self, account_id, cycle: BillingCycle) -> datetime | None:
        value = (
            self.db.query(func.max(Invoice.issued_at))
            .filter(Invoice.account_id == coerce_uuid(account_id))
            .filter(Invoice.billing_cycle == cycle)
            .filter(Invoice.status != InvoiceStatus.cancelled)
            .scalar()
        )
        return as_utc(value)

    def list_reminder_candidates(self, now: datetime, window_days: int) -> list[Invoice]:
        return (
            self.db.query(Invoice)
            .filter(Invoice.status == InvoiceStatus.pending)
            .filter(Invoice.due_at.is_not(None))
            .filter(Invoice.due_at > now)
            .filter(Invoice.due_at <= now + timedelta(days=window_days))
            .order_by(Invoice.due_at.asc())
            .all()
        )

    def list(
        self,
        account_id: str | None,
        status: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ):
        query = self.db.query(Invoice)
        if account_id:
            query = query.filter(
                Invoice.account_id == validate_uuid(account_id, "account_id")
            )
        if status:
            query = query.filter(
                Invoice.status == validate_enum(status, InvoiceStatus, "status")
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": Invoice.created_at, "due_at": Invoice.due_at},
        )
        return apply_pagination(query, limit, offset).all()
