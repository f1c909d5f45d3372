"""Account store used by the billing engine.

Billing never edits identity or package columns; it only reads them and
writes the status and billing-date fields listed in BILLING_FIELDS.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.models.account import Account, AccountRole, AccountStatus, PaymentStatus
from app.services.billing_errors import AccountNotFoundError
from app.services.common import get_by_id

logger = logging.getLogger(__name__)

BILLING_FIELDS = frozenset(
    {"last_monthly_invoice_at", "last_annual_invoice_at", "next_billing_at"}
)


@dataclass(frozen=True)
class BillingSelectionCriteria:
    as_of: datetime
    grace_days: int
    package_types: list[str] = field(default_factory=list)
    batch_size: int | None = None


class AccountStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, account_id) -> Account:
        account = get_by_id(self.db, Account, account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def find_due_for_billing(self, criteria: BillingSelectionCriteria) -> list[Account]:
        """Active accounts on a recurring package older than the grace window."""
        cutoff = criteria.as_of - timedelta(days=criteria.grace_days)
        query = (
            self.db.query(Account)
            .filter(Account.is_active.is_(True))
            .filter(Account.account_status == AccountStatus.active)
            .filter(Account.package_type.in_(criteria.package_types))
            .filter(Account.created_at < cutoff)
            .order_by(Account.created_at.asc(), Account.id.asc())
        )
        if criteria.batch_size:
            query = query.limit(criteria.batch_size)
        return query.all()

    def update_billing_fields(self, account_id, fields: dict) -> Account:
        unknown = set(fields) - BILLING_FIELDS
        if unknown:
            raise ValueError(f"Not a billing field: {', '.join(sorted(unknown))}")
        account = self.get(account_id)
        for key, value in fields.items():
            setattr(account, key, value)
        self.db.flush()
        return account

    def update_status(
        self,
        account_id,
        account_status: AccountStatus,
        payment_status: PaymentStatus,
    ) -> Account:
        account = self.get(account_id)
        account.account_status = account_status
        account.payment_status = payment_status
        self.db.flush()
        return account

    def list_operators(self) -> list[Account]:
        return (
            self.db.query(Account)
            .filter(Account.role == AccountRole.super_admin)
            .filter(Account.is_active.is_(True))
            .all()
        )
