from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.failed_job import FailedJobStatus


class AffectedEntity(BaseModel):
    entity_id: str
    status: str = Field(pattern="^(pending|sent|failed)$")
    error: str | None = None


class FailedJobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_type: str
    scheduled_time: datetime
    attempt_count: int
    max_attempts: int
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    status: FailedJobStatus
    error_message: str | None = None
    affected_entities: list | None = None
    metadata_: dict | None = Field(default=None, serialization_alias="metadata")
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution: str | None = None
    created_at: datetime


class FailedJobResolveRequest(BaseModel):
    resolved_by: str = Field(min_length=1, max_length=120)
    resolution: str = Field(min_length=1)


class FailedJobSummary(BaseModel):
    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]


class RetrySummary(BaseModel):
    retried: int = 0
    succeeded: int = 0
    failed: int = 0
    max_attempts_reached: int = 0
    skipped: int = 0
