import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Enum, Index, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class AccountRole(enum.Enum):
    student = "student"
    entrepreneur = "entrepreneur"
    nonstudent = "nonstudent"
    teacher = "teacher"
    headmaster = "headmaster"
    staff = "staff"
    super_admin = "super_admin"


class InstitutionType(enum.Enum):
    government = "government"
    private = "private"


class AccountStatus(enum.Enum):
    active = "active"
    inactive = "inactive"
    suspended = "suspended"


class PaymentStatus(enum.Enum):
    paid = "paid"
    partial_paid = "partial_paid"
    no_payment = "no_payment"
    overdue = "overdue"


class Account(Base):
    """Platform account as seen by the billing engine.

    Identity and package fields are owned by account management; billing
    only writes the status and billing-date columns.
    """

    __tablename__ = "accounts"
    __table_args__ = (
        Index("ix_accounts_billing_selection", "account_status", "package_type", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    first_name: Mapped[str | None] = mapped_column(String(80))
    last_name: Mapped[str | None] = mapped_column(String(80))
    username: Mapped[str | None] = mapped_column(String(120))
    email: Mapped[str | None] = mapped_column(String(255))
    phone_number: Mapped[str | None] = mapped_column(String(40))
    role: Mapped[AccountRole] = mapped_column(Enum(AccountRole), nullable=False)
    package_type: Mapped[str | None] = mapped_column(String(60))
    institution_type: Mapped[InstitutionType] = mapped_column(
        Enum(InstitutionType), default=InstitutionType.government
    )
    account_status: Mapped[AccountStatus] = mapped_column(
        Enum(AccountStatus), default=AccountStatus.inactive
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), default=PaymentStatus.no_payment
    )
    payment_due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_monthly_invoice_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_annual_invoice_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_billing_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    invoices = relationship("Invoice", back_populates="account")

    @property
    def display_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or self.username or str(self.id)
