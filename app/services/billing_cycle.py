"""Recurring billing cycle.

Selects active accounts on a recurring package, decides whether each one is
due, and creates at most one invoice per (account, invoice type, billing
period). The unique constraint on ``invoices`` is what makes overlapping
runs safe; the ``find_existing`` check only keeps the common path quiet.

Each account is an independent unit: its invoice and billing-date update
commit together, and any failure is written to the failed-job ledger
before the run moves on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import Settings, settings as default_settings
from app.metrics import BILLING_ACCOUNT_FAILURES, BILLING_NOTIFICATION_FAILURES, INVOICES_CREATED
from app.models.account import Account
from app.models.billing import BillingCycle
from app.models.notification import NotificationSeverity
from app.schemas.billing import (
    AccountError,
    AmountBreakdown,
    BillingRunRequest,
    BillingRunResult,
    InvoiceCreate,
    InvoiceRef,
)
from app.services import pricing
from app.services.accounts import AccountStore, BillingSelectionCriteria
from app.services.billing.invoices import InvoiceStore
from app.services.billing.runs import BillingRuns
from app.services.billing_errors import BillingSelectionError
from app.services.common import add_months, as_utc, utcnow
from app.services.job_retry import FailedJobLedger
from app.services.notification import InAppNotifier
from app.services.sms import SmsResult, SmsSender

logger = logging.getLogger(__name__)

JOB_TYPES = {
    BillingCycle.monthly: "monthly_billing",
    BillingCycle.annual: "annual_billing",
}

SKIP_NOT_DUE = "not_due"
SKIP_ALREADY_BILLED = "already_billed"
SKIP_CONCURRENT = "billed_by_concurrent_run"
SKIP_NO_PLAN = "no_recurring_plan"


def billing_periods(run_at: datetime, billing_month: str | None = None) -> dict[BillingCycle, str]:
    """Period keys for a run: ``YYYY-MM`` for monthly, ``YYYY`` for annual."""
    month = billing_month or run_at.strftime("%Y-%m")
    return {BillingCycle.monthly: month, BillingCycle.annual: month[:4]}


@dataclass(frozen=True)
class _AccountSnapshot:
    """Plain values read once so rollbacks never force a reload."""

    id: object
    role: object
    package_type: str | None
    institution_type: object
    created_at: datetime
    phone_number: str | None
    display_name: str

    @classmethod
    def of(cls, account: Account) -> _AccountSnapshot:
        return cls(
            id=account.id,
            role=account.role,
            package_type=account.package_type,
            institution_type=account.institution_type,
            created_at=as_utc(account.created_at),
            phone_number=account.phone_number,
            display_name=account.display_name,
        )


@dataclass
class _AccountOutcome:
    billed: bool
    skip_reason: str | None = None
    ref: InvoiceRef | None = None


class BillingCycleProcessor:
    def __init__(
        self,
        db: Session,
        accounts: AccountStore | None = None,
        invoices: InvoiceStore | None = None,
        notifier: InAppNotifier | None = None,
        sms: SmsSender | None = None,
        ledger: FailedJobLedger | None = None,
        runs: BillingRuns | None = None,
        config: Settings | None = None,
    ):
        self.db = db
        self.config = config or default_settings
        self.accounts = accounts or AccountStore(db)
        self.invoices = invoices or InvoiceStore(db)
        self.notifier = notifier or InAppNotifier(db)
        self.sms = sms or SmsSender()
        self.ledger = ledger or FailedJobLedger(db, config=self.config)
        self.runs = runs or BillingRuns(db)

    def run_billing_cycle(self, request: BillingRunRequest | None = None) -> BillingRunResult:
        """Run one billing cycle.

        Args:
            request: run options; ``dry_run`` decides without writing anything.

        Raises:
            BillingSelectionError: eligible accounts could not be queried.
        """
        request = request or BillingRunRequest()
        run_at = as_utc(request.run_at) or utcnow()
        periods = billing_periods(run_at, request.billing_month)
        result = BillingRunResult(
            run_at=run_at,
            billing_month=periods[BillingCycle.monthly],
            billing_year=periods[BillingCycle.annual],
            dry_run=request.dry_run,
        )
        cycles = [request.cycle] if request.cycle else list(BillingCycle)
        package_types = [
            package
            for package in pricing.recurring_package_types()
            if pricing.billing_cycle_for(package) in cycles
        ]

        run = None
        if not request.dry_run:
            run = self.runs.start(
                run_at,
                periods[BillingCycle.monthly],
                request.cycle.value if request.cycle else None,
            )
            result.run_id = run.id

        try:
            accounts = self.accounts.find_due_for_billing(
                BillingSelectionCriteria(
                    as_of=run_at,
                    grace_days=self.config.billing_grace_days,
                    package_types=package_types,
                )
            )
            snapshots = [_AccountSnapshot.of(account) for account in accounts]
        except Exception as exc:
            self.db.rollback()
            logger.exception(f"Billing selection failed: {exc}")
            if run is not None:
                self.runs.fail(run, f"Selection failed: {exc}")
            raise BillingSelectionError(f"Could not select accounts for billing: {exc}") from exc

        result.checked = len(snapshots)
        logger.info(
            f"Billing run {periods[BillingCycle.monthly]}: {result.checked} accounts "
            f"selected (dry_run={request.dry_run})"
        )
        for snapshot in snapshots:
            self._process(snapshot, run_at, periods, request, result)

        if result.billed == 0:
            result.message = self._nothing_billed_message(result)
            logger.info(f"Billing run billed nothing: {result.message}")
        if run is not None:
            self.runs.finish(run, result)
        logger.info(
            f"Billing run complete: checked={result.checked} billed={result.billed} "
            f"skipped={result.skipped} failed={result.failed} "
            f"total={pricing.format_amount(result.total_amount, self.config.billing_currency)}"
        )
        return result

    def bill_account(
        self,
        account_id,
        run_at: datetime | None = None,
        cycle: BillingCycle | None = None,
        billing_month: str | None = None,
        send_notifications: bool = True,
    ) -> BillingRunResult:
        """Bill a single account through the same steps as a full run.

        Failures propagate to the caller instead of going to the ledger; the
        retry worker owns the ledger row that triggered this call.
        """
        run_at = as_utc(run_at) or utcnow()
        periods = billing_periods(run_at, billing_month)
        request = BillingRunRequest(
            run_at=run_at,
            billing_month=billing_month,
            cycle=cycle,
            send_notifications=send_notifications,
        )
        result = BillingRunResult(
            run_at=run_at,
            billing_month=periods[BillingCycle.monthly],
            billing_year=periods[BillingCycle.annual],
            dry_run=False,
            checked=1,
        )
        snapshot = _AccountSnapshot.of(self.accounts.get(account_id))
        self._process(snapshot, run_at, periods, request, result, record_failures=False)
        if result.billed == 0:
            result.message = self._nothing_billed_message(result)
        return result

    def _process(
        self,
        account: _AccountSnapshot,
        run_at: datetime,
        periods: dict[BillingCycle, str],
        request: BillingRunRequest,
        result: BillingRunResult,
        record_failures: bool = True,
    ) -> None:
        plan = pricing.resolve_billing_plan(
            account.role, account.package_type, account.institution_type
        )
        if plan is None or (request.cycle and plan.cycle != request.cycle):
            self._skip(result, SKIP_NO_PLAN)
            return
        period = periods[plan.cycle]

        try:
            outcome = self._bill(account, plan, period, run_at, request.dry_run)
        except Exception as exc:
            self.db.rollback()
            if not record_failures:
                raise
            self._record_account_failure(account, plan, period, run_at, exc, result)
            return

        if not outcome.billed:
            self._skip(result, outcome.skip_reason)
            return

        result.billed += 1
        result.total_amount += plan.amount
        result.invoices.append(outcome.ref)
        role = getattr(account.role, "value", str(account.role))
        for bucket, key in ((result.by_package, plan.package_type), (result.by_role, role)):
            breakdown = bucket.setdefault(key, AmountBreakdown())
            breakdown.count += 1
            breakdown.total_amount += plan.amount

        if not request.dry_run and request.send_notifications:
            self._send_notifications(account, plan, outcome.ref, result)

    def _is_due(self, account: _AccountSnapshot, plan: pricing.BillingPlan, run_at: datetime) -> bool:
        last_invoice_at = self.invoices.latest_issued_at(account.id, plan.cycle)
        since = last_invoice_at or account.created_at
        if plan.cycle == BillingCycle.annual:
            return add_months(since, 12) <= run_at
        return run_at - since >= timedelta(days=self.config.monthly_cycle_days)

    def _bill(
        self,
        account: _AccountSnapshot,
        plan: pricing.BillingPlan,
        period: str,
        run_at: datetime,
        dry_run: bool,
    ) -> _AccountOutcome:
        if not self._is_due(account, plan, run_at):
            return _AccountOutcome(billed=False, skip_reason=SKIP_NOT_DUE)
        if self.invoices.find_existing(account.id, plan.invoice_type, period):
            logger.debug(f"Skipping account {account.id}: already billed for {period}")
            return _AccountOutcome(billed=False, skip_reason=SKIP_ALREADY_BILLED)

        if plan.cycle == BillingCycle.annual:
            due_at = run_at + timedelta(days=self.config.annual_due_days)
            next_billing_at = add_months(run_at, 12)
            last_field = "last_annual_invoice_at"
        else:
            due_at = run_at + timedelta(days=self.config.monthly_due_days)
            next_billing_at = run_at + timedelta(days=self.config.monthly_cycle_days)
            last_field = "last_monthly_invoice_at"

        ref = InvoiceRef(
            account_id=account.id,
            package_type=plan.package_type,
            billing_period=period,
            amount=plan.amount,
            due_at=due_at,
        )
        if dry_run:
            return _AccountOutcome(billed=True, ref=ref)

        try:
            with self.db.begin_nested():
                invoice = self.invoices.create(
                    InvoiceCreate(
                        account_id=account.id,
                        invoice_type=plan.invoice_type,
                        billing_cycle=plan.cycle,
                        billing_period=period,
                        amount=plan.amount,
                        currency=self.config.billing_currency,
                        description=plan.description,
                        issued_at=run_at,
                        due_at=due_at,
                        metadata_={"package_type": plan.package_type, "source": "billing_cycle"},
                    )
                )
                self.accounts.update_billing_fields(
                    account.id, {last_field: run_at, "next_billing_at": next_billing_at}
                )
        except IntegrityError:
            # Only the invoice unique constraint means another run won.
            if not self.invoices.find_existing(account.id, plan.invoice_type, period):
                raise
            logger.info(
                f"Invoice for account {account.id} period {period} created by a "
                "concurrent run; skipping"
            )
            return _AccountOutcome(billed=False, skip_reason=SKIP_CONCURRENT)
        self.db.commit()

        INVOICES_CREATED.labels(cycle=plan.cycle.value, package=plan.package_type).inc()
        ref.invoice_id = invoice.id
        ref.invoice_number = invoice.invoice_number
        logger.info(
            f"Created invoice {invoice.invoice_number} for account {account.id}: "
            f"{pricing.format_amount(plan.amount, self.config.billing_currency)}"
        )
        return _AccountOutcome(billed=True, ref=ref)

    def _send_notifications(
        self,
        account: _AccountSnapshot,
        plan: pricing.BillingPlan,
        ref: InvoiceRef,
        result: BillingRunResult,
    ) -> None:
        amount = pricing.format_amount(plan.amount, self.config.billing_currency)
        due = ref.due_at.date().isoformat()
        message = (
            f"Your {plan.description} invoice {ref.invoice_number} for {amount} "
            f"is due on {due}."
        )
        try:
            self.notifier.notify(
                account.id,
                "New Invoice",
                message,
                NotificationSeverity.info,
                f"/invoices/{ref.invoice_id}",
            )
            self.db.commit()
            result.notifications_sent += 1
        except Exception as exc:
            self.db.rollback()
            result.notifications_failed += 1
            BILLING_NOTIFICATION_FAILURES.labels(channel="in_app").inc()
            logger.warning(f"In-app billing notification failed for account {account.id}: {exc}")

        if not account.phone_number:
            return
        try:
            sms_result = self.sms.send(
                account.phone_number,
                f"Hello {account.display_name}! {message} {self.config.payment_instructions}",
                f"invoice:{ref.invoice_number}",
            )
        except Exception as exc:
            sms_result = SmsResult(success=False, error=str(exc))
        if sms_result.success:
            result.sms_sent += 1
        else:
            result.notifications_failed += 1
            BILLING_NOTIFICATION_FAILURES.labels(channel="sms").inc()
            logger.warning(f"Billing SMS failed for account {account.id}: {sms_result.error}")

    def _record_account_failure(
        self,
        account: _AccountSnapshot,
        plan: pricing.BillingPlan,
        period: str,
        run_at: datetime,
        exc: Exception,
        result: BillingRunResult,
    ) -> None:
        result.failed += 1
        BILLING_ACCOUNT_FAILURES.labels(cycle=plan.cycle.value).inc()
        logger.error(f"Billing failed for account {account.id}: {exc}")
        failed_job_id = None
        if not result.dry_run:
            try:
                job = self.ledger.record_failure(
                    JOB_TYPES[plan.cycle],
                    exc,
                    metadata={
                        "account_id": str(account.id),
                        "billing_period": period,
                        "cycle": plan.cycle.value,
                    },
                    affected_entities=[
                        {"entity_id": str(account.id), "status": "failed", "error": str(exc)}
                    ],
                    scheduled_time=run_at,
                )
                failed_job_id = job.id
            except Exception as ledger_exc:
                self.db.rollback()
                logger.exception(
                    f"Could not record billing failure for account {account.id}: {ledger_exc}"
                )
        result.errors.append(
            AccountError(
                account_id=account.id,
                stage="billing",
                error=str(exc),
                failed_job_id=failed_job_id,
            )
        )

    @staticmethod
    def _skip(result: BillingRunResult, reason: str) -> None:
        result.skipped += 1
        result.skip_reasons[reason] = result.skip_reasons.get(reason, 0) + 1

    @staticmethod
    def _nothing_billed_message(result: BillingRunResult) -> str:
        if result.checked == 0:
            return "No accounts eligible: none active on a recurring package past the grace window"
        parts = [f"{count} {reason}" for reason, count in sorted(result.skip_reasons.items())]
        if result.failed:
            parts.append(f"{result.failed} failed")
        return f"No accounts billed out of {result.checked} checked: " + ", ".join(parts)
