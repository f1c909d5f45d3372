"""Failed-job ledger model.

A row is written whenever a scheduled job (or one unit of work inside a
batch job) fails. The retry worker owns every mutation after creation.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, Index, Integer, JSON, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class FailedJobStatus(enum.Enum):
    pending = "pending"
    retrying = "retrying"
    failed = "failed"
    resolved = "resolved"


class FailedJob(Base):
    __tablename__ = "failed_jobs"
    __table_args__ = (
        Index("ix_failed_jobs_status_next_retry", "status", "next_retry_at"),
        Index("ix_failed_jobs_type_status", "job_type", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    # Plain string so new job types need no migration
    job_type: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    scheduled_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[FailedJobStatus] = mapped_column(
        Enum(FailedJobStatus), default=FailedJobStatus.pending
    )
    error_message: Mapped[str | None] = mapped_column(Text)
    error_stack: Mapped[str | None] = mapped_column(Text)
    affected_entities: Mapped[list | None] = mapped_column(JSON)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    resolved_by: Mapped[str | None] = mapped_column(String(120))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolution: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
