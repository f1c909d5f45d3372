"""Initial billing engine schema.

Revision ID: a1c4e2f7b9d0
Revises:
Create Date: 2026-02-02

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "a1c4e2f7b9d0"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("first_name", sa.String(80)),
        sa.Column("last_name", sa.String(80)),
        sa.Column("username", sa.String(120)),
        sa.Column("email", sa.String(255)),
        sa.Column("phone_number", sa.String(40)),
        sa.Column(
            "role",
            sa.Enum(
                "student",
                "entrepreneur",
                "nonstudent",
                "teacher",
                "headmaster",
                "staff",
                "super_admin",
                name="accountrole",
            ),
            nullable=False,
        ),
        sa.Column("package_type", sa.String(60)),
        sa.Column(
            "institution_type",
            sa.Enum("government", "private", name="institutiontype"),
        ),
        sa.Column(
            "account_status",
            sa.Enum("active", "inactive", "suspended", name="accountstatus"),
        ),
        sa.Column(
            "payment_status",
            sa.Enum("paid", "partial_paid", "no_payment", "overdue", name="paymentstatus"),
        ),
        _timestamp("payment_due_at"),
        _timestamp("last_monthly_invoice_at"),
        _timestamp("last_annual_invoice_at"),
        _timestamp("next_billing_at"),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "ix_accounts_billing_selection",
        "accounts",
        ["account_status", "package_type", "created_at"],
    )

    op.create_table(
        "invoices",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounts.id"),
            nullable=False,
        ),
        sa.Column("invoice_number", sa.String(80)),
        sa.Column(
            "invoice_type",
            sa.Enum("membership", "subscription", "fee", name="invoicetype"),
            nullable=False,
        ),
        sa.Column("billing_cycle", sa.Enum("monthly", "annual", name="billingcycle")),
        sa.Column("billing_period", sa.String(16), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "paid", "overdue", "cancelled", name="invoicestatus"),
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3)),
        sa.Column("description", sa.Text()),
        _timestamp("issued_at"),
        _timestamp("due_at"),
        _timestamp("paid_at"),
        sa.Column("reminder_count", sa.Integer(), server_default="0"),
        _timestamp("last_reminder_at"),
        sa.Column("metadata", sa.JSON()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint(
            "account_id",
            "invoice_type",
            "billing_period",
            name="uq_invoices_account_type_period",
        ),
    )
    op.create_index("ix_invoices_account_id", "invoices", ["account_id"])

    op.create_table(
        "billing_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _timestamp("run_at", nullable=False),
        sa.Column("billing_period", sa.String(16)),
        sa.Column("billing_cycle", sa.String(20)),
        sa.Column(
            "status",
            sa.Enum("running", "success", "failed", name="billingrunstatus"),
        ),
        _timestamp("started_at"),
        _timestamp("finished_at"),
        sa.Column("accounts_checked", sa.Integer(), server_default="0"),
        sa.Column("accounts_billed", sa.Integer(), server_default="0"),
        sa.Column("skipped", sa.Integer(), server_default="0"),
        sa.Column("failed", sa.Integer(), server_default="0"),
        sa.Column("total_amount", sa.Integer(), server_default="0"),
        sa.Column("error", sa.Text()),
        _timestamp("created_at"),
    )

    op.create_table(
        "failed_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_type", sa.String(80), nullable=False),
        _timestamp("scheduled_time", nullable=False),
        sa.Column("attempt_count", sa.Integer(), server_default="0"),
        sa.Column("max_attempts", sa.Integer(), server_default="3"),
        _timestamp("last_attempt_at"),
        _timestamp("next_retry_at"),
        sa.Column(
            "status",
            sa.Enum("pending", "retrying", "failed", "resolved", name="failedjobstatus"),
        ),
        sa.Column("error_message", sa.Text()),
        sa.Column("error_stack", sa.Text()),
        sa.Column("affected_entities", sa.JSON()),
        sa.Column("metadata", sa.JSON()),
        sa.Column("resolved_by", sa.String(120)),
        _timestamp("resolved_at"),
        sa.Column("resolution", sa.Text()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_failed_jobs_job_type", "failed_jobs", ["job_type"])
    op.create_index("ix_failed_jobs_scheduled_time", "failed_jobs", ["scheduled_time"])
    op.create_index(
        "ix_failed_jobs_status_next_retry", "failed_jobs", ["status", "next_retry_at"]
    )
    op.create_index("ix_failed_jobs_type_status", "failed_jobs", ["job_type", "status"])

    op.create_table(
        "notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounts.id"),
            nullable=False,
        ),
        sa.Column("channel", sa.Enum("in_app", "sms", name="notificationchannel")),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("body", sa.Text()),
        sa.Column(
            "severity",
            sa.Enum("info", "warning", "error", "critical", name="notificationseverity"),
        ),
        sa.Column("action_ref", sa.String(255)),
        sa.Column(
            "status",
            sa.Enum("queued", "delivered", "failed", name="notificationstatus"),
        ),
        sa.Column("last_error", sa.Text()),
        _timestamp("read_at"),
        _timestamp("created_at"),
    )
    op.create_index("ix_notifications_account_id", "notifications", ["account_id"])

    op.create_table(
        "number_sequences",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("key", sa.String(80), nullable=False),
        sa.Column("next_value", sa.Integer(), nullable=False, server_default="1"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("key", name="uq_number_sequences_key"),
    )


def downgrade() -> None:
    op.drop_table("number_sequences")
    op.drop_index("ix_notifications_account_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_failed_jobs_type_status", table_name="failed_jobs")
    op.drop_index("ix_failed_jobs_status_next_retry", table_name="failed_jobs")
    op.drop_index("ix_failed_jobs_scheduled_time", table_name="failed_jobs")
    op.drop_index("ix_failed_jobs_job_type", table_name="failed_jobs")
    op.drop_table("failed_jobs")
    op.drop_table("billing_runs")
    op.drop_index("ix_invoices_account_id", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_accounts_billing_selection", table_name="accounts")
    op.drop_table("accounts")
    for enum_name in (
        "notificationstatus",
        "notificationseverity",
        "notificationchannel",
        "failedjobstatus",
        "billingrunstatus",
        "invoicestatus",
        "billingcycle",
        "invoicetype",
        "paymentstatus",
        "accountstatus",
        "institutiontype",
        "accountrole",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
