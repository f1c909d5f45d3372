"""In-app notification sender and operator escalation channel."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.models.notification import (
    Notification,
    NotificationChannel,
    NotificationSeverity,
    NotificationStatus,
)
from app.services.accounts import AccountStore
from app.services.common import coerce_uuid

logger = logging.getLogger(__name__)


def _coerce_severity(severity) -> NotificationSeverity:
    if isinstance(severity, NotificationSeverity):
        return severity
    try:
        return NotificationSeverity(severity)
    except ValueError:
        return NotificationSeverity.info


class InAppNotifier:
    """Writes in-app notifications.

    Each write runs in its own savepoint so a failure here never discards
    the caller's pending work. Commit is left to the caller.
    """

    def __init__(self, db: Session):
        self.db = db

    def notify(
        self,
        account_id,
        title: str,
        message: str,
        severity=NotificationSeverity.info,
        action_ref: str | None = None,
    ) -> Notification:
        with self.db.begin_nested():
            notification = Notification(
                account_id=coerce_uuid(account_id),
                channel=NotificationChannel.in_app,
                title=title[:200],
                body=message,
                severity=_coerce_severity(severity),
                action_ref=action_ref,
                status=NotificationStatus.delivered,
            )
            self.db.add(notification)
            self.db.flush()
        return notification


class OperatorChannel:
    """Escalates to every active super admin through in-app notifications."""

    def __init__(
        self,
        db: Session,
        notifier: InAppNotifier | None = None,
        accounts: AccountStore | None = None,
    ):
        self.db = db
        self.notifier = notifier or InAppNotifier(db)
        self.accounts = accounts or AccountStore(db)

    def notify_operators(
        self,
        subject: str,
        message: str,
        reference: str | None = None,
        severity=NotificationSeverity.error,
    ) -> int:
        operators = self.accounts.list_operators()
        for operator in operators:
            self.notifier.notify(operator.id, subject, message, severity, reference)
        if not operators:
            logger.warning(f"No active operators to notify: {subject}")
        else:
            logger.info(f"Notified {len(operators)} operators: {subject}")
        return len(operators)
