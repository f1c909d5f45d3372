"""Account / payment status classification.

Account status (platform access) and payment status (billing standing) are
two orthogonal machines. Only account status has a transition graph; the
payment status is always recomputed from amounts.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from app.models.account import Account, AccountRole, AccountStatus, PaymentStatus
from app.services import pricing
from app.services.accounts import AccountStore
from app.services.billing_errors import InvalidTransition
from app.services.common import as_utc, utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[AccountStatus, frozenset[AccountStatus]] = {
    AccountStatus.inactive: frozenset({AccountStatus.active, AccountStatus.suspended}),
    AccountStatus.active: frozenset({AccountStatus.inactive, AccountStatus.suspended}),
    AccountStatus.suspended: frozenset({AccountStatus.active, AccountStatus.inactive}),
}


def _coerce_status(value) -> AccountStatus | None:
    if isinstance(value, AccountStatus):
        return value
    try:
        return AccountStatus(value)
    except ValueError:
        return None


def classify(
    role,
    total_paid: int,
    required_amount: int,
    due_date: datetime | None,
    now: datetime | None = None,
) -> tuple[AccountStatus, PaymentStatus]:
    """Map payment facts to (account status, payment status)."""
    now = as_utc(now) or utcnow()
    try:
        role = AccountRole(role)
    except ValueError:
        role = None
    if role not in pricing.PAYMENT_REQUIRED_ROLES:
        return AccountStatus.active, PaymentStatus.no_payment

    if total_paid <= 0:
        due = as_utc(due_date)
        if due is not None and now > due:
            return AccountStatus.suspended, PaymentStatus.overdue
        return AccountStatus.inactive, PaymentStatus.no_payment
    if total_paid < required_amount:
        # Partial payment is enough to activate.
        return AccountStatus.active, PaymentStatus.partial_paid
    return AccountStatus.active, PaymentStatus.paid


def is_valid_transition(from_status, to_status) -> bool:
    source = _coerce_status(from_status)
    target = _coerce_status(to_status)
    if source is None or target is None:
        return False
    return target in ALLOWED_TRANSITIONS[source]


def validate_transition(from_status, to_status) -> None:
    if not is_valid_transition(from_status, to_status):
        raise InvalidTransition(from_status, to_status)


class AccountStatusService:
    """Applies classifier results through the account store."""

    def __init__(self, db: Session, accounts: AccountStore | None = None):
        self.db = db
        self.accounts = accounts or AccountStore(db)

    def reclassify(
        self,
        account_id,
        total_paid: int,
        now: datetime | None = None,
        dry_run: bool = False,
    ) -> tuple[AccountStatus, PaymentStatus]:
        account = self.accounts.get(account_id)
        required = pricing.required_total(
            account.role, account.package_type, account.institution_type
        )
        account_status, payment_status = classify(
            account.role, total_paid, required, account.payment_due_at, now
        )
        self._check_transition(account, account_status)
        if dry_run:
            return account_status, payment_status
        if (
            account.account_status != account_status
            or account.payment_status != payment_status
        ):
            logger.info(
                f"Account {account.id} status {account.account_status.value}/"
                f"{account.payment_status.value} -> "
                f"{account_status.value}/{payment_status.value}"
            )
            self.accounts.update_status(account.id, account_status, payment_status)
            self.db.commit()
        return account_status, payment_status

    def transition(self, account_id, to_status: AccountStatus) -> Account:
        """Move an account along one allowed edge, keeping its payment status."""
        account = self.accounts.get(account_id)
        validate_transition(account.account_status, to_status)
        self.accounts.update_status(account.id, to_status, account.payment_status)
        self.db.commit()
        return account

    @staticmethod
    def _check_transition(account: Account, target: AccountStatus) -> None:
        # An unchanged account status is not a transition.
        if account.account_status == target:
            return
        validate_transition(account.account_status, target)
