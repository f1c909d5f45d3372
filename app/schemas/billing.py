from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.account import AccountStatus, PaymentStatus
from app.models.billing import BillingCycle, BillingRunStatus, InvoiceStatus, InvoiceType


class InvoiceCreate(BaseModel):
    account_id: UUID
    invoice_type: InvoiceType
    billing_cycle: BillingCycle | None = None
    billing_period: str = Field(min_length=4, max_length=16)
    amount: int = Field(gt=0)
    currency: str = Field(default="TZS", min_length=3, max_length=3)
    description: str | None = None
    issued_at: datetime | None = None
    due_at: datetime | None = None
    metadata_: dict | None = None


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID
    invoice_number: str | None = None
    invoice_type: InvoiceType
    billing_cycle: BillingCycle | None = None
    billing_period: str
    status: InvoiceStatus
    amount: int
    currency: str
    description: str | None = None
    issued_at: datetime | None = None
    due_at: datetime | None = None
    created_at: datetime


class InvoiceRef(BaseModel):
    invoice_id: UUID | None = None
    invoice_number: str | None = None
    account_id: UUID
    package_type: str
    billing_period: str
    amount: int
    due_at: datetime


class BillingRunRequest(BaseModel):
    run_at: datetime | None = None
    billing_month: str | None = Field(
        default=None, description="Override billing month, YYYY-MM"
    )
    cycle: BillingCycle | None = None
    dry_run: bool = False
    send_notifications: bool = True

    @field_validator("billing_month")
    @classmethod
    def _validate_billing_month(cls, value: str | None) -> str | None:
        if value is None:
            return value
        try:
            datetime.strptime(value, "%Y-%m")
        except ValueError as exc:
            raise ValueError("billing_month must be formatted YYYY-MM") from exc
        return value


class AmountBreakdown(BaseModel):
    count: int = 0
    total_amount: int = 0


class AccountError(BaseModel):
    account_id: UUID
    stage: str
    error: str
    failed_job_id: UUID | None = None


class BillingRunResult(BaseModel):
    run_id: UUID | None = None
    run_at: datetime
    billing_month: str
    billing_year: str
    dry_run: bool
    checked: int = 0
    billed: int = 0
    skipped: int = 0
    failed: int = 0
    total_amount: int = 0
    invoices: list[InvoiceRef] = Field(default_factory=list)
    by_package: dict[str, AmountBreakdown] = Field(default_factory=dict)
    by_role: dict[str, AmountBreakdown] = Field(default_factory=dict)
    skip_reasons: dict[str, int] = Field(default_factory=dict)
    notifications_sent: int = 0
    sms_sent: int = 0
    notifications_failed: int = 0
    errors: list[AccountError] = Field(default_factory=list)
    message: str | None = None


class BillingRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    run_at: datetime
    billing_period: str | None = None
    billing_cycle: str | None = None
    status: BillingRunStatus
    started_at: datetime | None = None
    finished_at: datetime | None = None
    accounts_checked: int
    accounts_billed: int
    skipped: int
    failed: int
    total_amount: int
    error: str | None = None


class PaymentReminderSummary(BaseModel):
    total: int = 0
    sent: int = 0
    failed: int = 0
    total_amount: int = 0


class AccountReclassifyRequest(BaseModel):
    total_paid: int = Field(ge=0)
    dry_run: bool = False


class AccountStatusRead(BaseModel):
    account_id: UUID
    account_status: AccountStatus
    payment_status: PaymentStatus
