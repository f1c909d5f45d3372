"""Failed-job ledger and retry worker.

Every scheduled job that fails (or a single unit of work inside a batch job)
is written to ``failed_jobs``. The retry worker picks up due rows, claims
them with a compare-and-set update, and dispatches to the handler
registered for the job type. Delays double from a 30 minute base; a job
that hits ``max_attempts`` is terminal until an operator resolves it.
"""

from __future__ import annotations

import logging
import traceback
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import Settings, settings as default_settings
from app.metrics import FAILED_JOBS_RECORDED, JOB_RETRY_OUTCOMES
from app.models.failed_job import FailedJob, FailedJobStatus
from app.models.notification import NotificationSeverity
from app.schemas.failed_job import FailedJobSummary, RetrySummary
from app.services.billing_errors import FailedJobNotFoundError, FailedJobStateError
from app.services.common import (
    apply_ordering,
    apply_pagination,
    as_utc,
    get_by_id,
    utcnow,
    validate_enum,
)
from app.services.notification import OperatorChannel
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (FailedJobStatus.pending, FailedJobStatus.retrying)
MAX_ERROR_LENGTH = 2000


def compute_backoff(attempt_count: int, base_minutes: int = 30) -> timedelta:
    """Delay before the next attempt: ``base * 2^attempt_count`` minutes."""
    return timedelta(minutes=base_minutes * (2 ** max(attempt_count, 0)))


@dataclass(frozen=True)
class RetryPolicy:
    initial_delay_minutes: int = 30
    base_delay_minutes: int = 30
    max_attempts: int = 3
    batch_size: int = 100
    claim_lease_minutes: int = 15

    @classmethod
    def from_settings(cls, config: Settings) -> RetryPolicy:
        return cls(
            initial_delay_minutes=config.retry_initial_delay_minutes,
            base_delay_minutes=config.retry_base_delay_minutes,
            max_attempts=config.retry_max_attempts,
            batch_size=config.retry_batch_size,
            claim_lease_minutes=config.retry_claim_lease_minutes,
        )

    def first_retry_at(self, now: datetime) -> datetime:
        return now + timedelta(minutes=self.initial_delay_minutes)

    def next_retry_at(self, attempt_count: int, now: datetime) -> datetime:
        return now + compute_backoff(attempt_count, self.base_delay_minutes)

    def lease_until(self, now: datetime) -> datetime:
        return now + timedelta(minutes=self.claim_lease_minutes)


@dataclass
class RetryOutcome:
    """What a retry handler reports back to the worker."""

    success: bool
    message: str | None = None
    details: dict = field(default_factory=dict)


RetryHandler = Callable[[FailedJob], RetryOutcome]


class RetryHandlerRegistry:
    def __init__(self, handlers: dict[str, RetryHandler] | None = None):
        self._handlers: dict[str, RetryHandler] = dict(handlers or {})

    def register(self, job_type: str, handler: RetryHandler) -> None:
        if job_type in self._handlers:
            logger.warning(f"Replacing retry handler for job type {job_type}")
        self._handlers[job_type] = handler

    def get(self, job_type: str) -> RetryHandler | None:
        return self._handlers.get(job_type)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    @property
    def job_types(self) -> list[str]:
        return sorted(self._handlers)


def _error_text(error) -> tuple[str, str | None]:
    if isinstance(error, BaseException):
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return (str(error) or type(error).__name__)[:MAX_ERROR_LENGTH], stack
    return str(error)[:MAX_ERROR_LENGTH], None


class FailedJobLedger(ListResponseMixin):
    def __init__(
        self,
        db: Session,
        operators: OperatorChannel | None = None,
        config: Settings | None = None,
    ):
        self.db = db
        self.operators = operators or OperatorChannel(db)
        self.policy = RetryPolicy.from_settings(config or default_settings)

    def record_failure(
        self,
        job_type: str,
        error,
        metadata: dict | None = None,
        affected_entities: list[dict] | None = None,
        scheduled_time: datetime | None = None,
        now: datetime | None = None,
    ) -> FailedJob:
        """Write a pending ledger row and alert operators.

        Commits the row before notifying; operator notification problems are
        logged and never raised to the caller.
        """
        now = as_utc(now) or utcnow()
        message, stack = _error_text(error)
        job = FailedJob(
            job_type=job_type,
            scheduled_time=as_utc(scheduled_time) or now,
            attempt_count=1,
            max_attempts=self.policy.max_attempts,
            last_attempt_at=now,
            next_retry_at=self.policy.first_retry_at(now),
            status=FailedJobStatus.pending,
            error_message=message,
            error_stack=stack,
            affected_entities=affected_entities,
            metadata_=dict(metadata or {}),
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        FAILED_JOBS_RECORDED.labels(job_type=job_type).inc()
        logger.warning(f"Recorded failed job {job.id} ({job_type}): {message}")

        self._notify_operators(
            f"Job failed: {job_type}",
            f"{job_type} failed and will be retried at "
            f"{job.next_retry_at.isoformat()}. Error: {message}",
            job,
            NotificationSeverity.error,
        )
        return job

    def _notify_operators(self, subject, message, job, severity) -> None:
        try:
            self.operators.notify_operators(
                subject, message, f"/failed-jobs/{job.id}", severity
            )
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            logger.error(f"Operator notification failed for job {job.id}: {exc}")

    def get(self, job_id) -> FailedJob:
        job = get_by_id(self.db, FailedJob, job_id)
        if not job:
            raise FailedJobNotFoundError(f"Failed job {job_id} not found")
        return job

    def list(
        self,
        status: str | None,
        job_type: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ):
        query = self.db.query(FailedJob)
        if status:
            query = query.filter(
                FailedJob.status == validate_enum(status, FailedJobStatus, "status")
            )
        if job_type:
            query = query.filter(FailedJob.job_type == job_type)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": FailedJob.created_at,
                "scheduled_time": FailedJob.scheduled_time,
                "next_retry_at": FailedJob.next_retry_at,
            },
        )
        return apply_pagination(query, limit, offset).all()

    def summary(self) -> FailedJobSummary:
        by_status = {
            status.value: count
            for status, count in self.db.query(FailedJob.status, func.count(FailedJob.id))
            .group_by(FailedJob.status)
            .all()
        }
        by_type = dict(
            self.db.query(FailedJob.job_type, func.count(FailedJob.id))
            .group_by(FailedJob.job_type)
            .all()
        )
        return FailedJobSummary(
            total=sum(by_status.values()), by_status=by_status, by_type=by_type
        )

    def resolve_manually(
        self,
        job_id,
        resolved_by: str,
        resolution: str,
        now: datetime | None = None,
    ) -> FailedJob:
        job = self.get(job_id)
        if job.status == FailedJobStatus.resolved:
            raise FailedJobStateError(f"Failed job {job.id} is already resolved")
        job.status = FailedJobStatus.resolved
        job.resolved_by = resolved_by
        job.resolved_at = as_utc(now) or utcnow()
        job.resolution = resolution
        job.next_retry_at = None
        self.db.commit()
        self.db.refresh(job)
        logger.info(f"Failed job {job.id} resolved manually by {resolved_by}")
        return job


class RetryWorker:
    def __init__(
        self,
        db: Session,
        handlers: RetryHandlerRegistry,
        operators: OperatorChannel | None = None,
        config: Settings | None = None,
    ):
        self.db = db
        self.handlers = handlers
        self.operators = operators or OperatorChannel(db)
        self.policy = RetryPolicy.from_settings(config or default_settings)

    def find_due(self, now: datetime) -> list[FailedJob]:
        return (
            self.db.query(FailedJob)
            .filter(FailedJob.status.in_(RETRYABLE_STATUSES))
            .filter(FailedJob.next_retry_at.is_not(None))
            .filter(FailedJob.next_retry_at <= now)
            .filter(FailedJob.attempt_count < FailedJob.max_attempts)
            .order_by(FailedJob.scheduled_time.asc(), FailedJob.id.asc())
            .limit(self.policy.batch_size)
            .all()
        )

    def find_abandoned(self, now: datetime) -> list[FailedJob]:
        """Final-attempt claims whose lease ran out without an outcome."""
        return (
            self.db.query(FailedJob)
            .filter(FailedJob.status == FailedJobStatus.retrying)
            .filter(FailedJob.next_retry_at.is_not(None))
            .filter(FailedJob.next_retry_at <= now)
            .filter(FailedJob.attempt_count >= FailedJob.max_attempts)
            .order_by(FailedJob.scheduled_time.asc(), FailedJob.id.asc())
            .limit(self.policy.batch_size)
            .all()
        )

    def expire_abandoned(self, now: datetime, summary: RetrySummary) -> None:
        for job in self.find_abandoned(now):
            job_id = job.id
            released = (
                self.db.query(FailedJob)
                .filter(FailedJob.id == job_id)
                .filter(FailedJob.status == FailedJobStatus.retrying)
                .filter(FailedJob.attempt_count == job.attempt_count)
                .filter(FailedJob.next_retry_at <= now)
                .update({FailedJob.next_retry_at: None}, synchronize_session=False)
            )
            self.db.commit()
            if released != 1:
                continue
            job = self.db.get(FailedJob, job_id)
            logger.error(f"Failed job {job_id} lost its worker during the final attempt")
            outcome = RetryOutcome(
                success=False,
                message="Worker stopped during the final attempt; claim lease expired",
            )
            self._mark_failed_attempt(job, outcome, now)
            summary.max_attempts_reached += 1

    def retry_due_jobs(self, now: datetime | None = None) -> RetrySummary:
        now = as_utc(now) or utcnow()
        summary = RetrySummary()
        self.expire_abandoned(now, summary)
        due_jobs = self.find_due(now)
        if not due_jobs:
            return summary

        for job in due_jobs:
            job_id = job.id
            handler = self.handlers.get(job.job_type)
            if handler is None:
                logger.warning(
                    f"No retry handler for job type {job.job_type}; skipping {job_id}"
                )
                JOB_RETRY_OUTCOMES.labels(job_type=job.job_type, outcome="skipped").inc()
                summary.skipped += 1
                continue
            if not self._claim(job, now):
                logger.info(f"Failed job {job_id} claimed by another worker")
                summary.skipped += 1
                continue

            summary.retried += 1
            outcome = self._run_handler(handler, job)
            job = self.db.get(FailedJob, job_id)
            if outcome.success:
                self._mark_resolved(job, outcome, now)
                summary.succeeded += 1
            elif self._mark_failed_attempt(job, outcome, now):
                summary.max_attempts_reached += 1
            else:
                summary.failed += 1

        logger.info(f"Failed job retry completed: {summary.model_dump()}")
        return summary

    def _claim(self, job: FailedJob, now: datetime) -> bool:
        """Compare-and-set on (id, attempt_count, status); True when won."""
        claimed = (
            self.db.query(FailedJob)
            .filter(FailedJob.id == job.id)
            .filter(FailedJob.attempt_count == job.attempt_count)
            .filter(FailedJob.status.in_(RETRYABLE_STATUSES))
            .update(
                {
                    FailedJob.status: FailedJobStatus.retrying,
                    FailedJob.attempt_count: FailedJob.attempt_count + 1,
                    FailedJob.last_attempt_at: now,
                    FailedJob.next_retry_at: self.policy.lease_until(now),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        if claimed != 1:
            return False
        self.db.refresh(job)
        return True

    def _run_handler(self, handler: RetryHandler, job: FailedJob) -> RetryOutcome:
        try:
            outcome = handler(job)
        except Exception as exc:
            self.db.rollback()
            logger.exception(f"Retry handler for {job.job_type} raised: {exc}")
            message, stack = _error_text(exc)
            return RetryOutcome(success=False, message=message, details={"stack": stack})
        if outcome is None:
            return RetryOutcome(success=False, message="Handler returned no outcome")
        return outcome

    def _merge_metadata(self, job: FailedJob, outcome: RetryOutcome, now: datetime) -> None:
        metadata = dict(job.metadata_ or {})
        history = list(metadata.get("retry_history", []))
        history.append(
            {
                "attempt": job.attempt_count,
                "at": now.isoformat(),
                "success": outcome.success,
                "message": outcome.message,
            }
        )
        metadata["retry_history"] = history
        for key, value in outcome.details.items():
            if key != "stack":
                metadata[key] = value
        job.metadata_ = metadata

    def _mark_resolved(self, job: FailedJob, outcome: RetryOutcome, now: datetime) -> None:
        self._merge_metadata(job, outcome, now)
        job.status = FailedJobStatus.resolved
        job.resolved_at = now
        job.resolved_by = "retry_worker"
        job.resolution = outcome.message or f"Retry succeeded on attempt {job.attempt_count}"
        job.next_retry_at = None
        self.db.commit()
        JOB_RETRY_OUTCOMES.labels(job_type=job.job_type, outcome="succeeded").inc()
        logger.info(f"Failed job {job.id} resolved on attempt {job.attempt_count}")

    def _mark_failed_attempt(
        self, job: FailedJob, outcome: RetryOutcome, now: datetime
    ) -> bool:
        """Record a failed attempt; returns True when the job became terminal."""
        self._merge_metadata(job, outcome, now)
        job.error_message = (outcome.message or "Retry failed")[:MAX_ERROR_LENGTH]
        stack = outcome.details.get("stack")
        if stack:
            job.error_stack = stack

        if job.attempt_count >= job.max_attempts:
            job.status = FailedJobStatus.failed
            job.next_retry_at = None
            self.db.commit()
            JOB_RETRY_OUTCOMES.labels(job_type=job.job_type, outcome="exhausted").inc()
            logger.error(
                f"Failed job {job.id} ({job.job_type}) gave up after "
                f"{job.attempt_count} attempts: {job.error_message}"
            )
            self._escalate(job)
            return True

        job.status = FailedJobStatus.pending
        job.next_retry_at = self.policy.next_retry_at(job.attempt_count, now)
        self.db.commit()
        JOB_RETRY_OUTCOMES.labels(job_type=job.job_type, outcome="failed").inc()
        logger.warning(
            f"Failed job {job.id} attempt {job.attempt_count}/{job.max_attempts} "
            f"failed; next retry at {job.next_retry_at.isoformat()}"
        )
        return False

    def _escalate(self, job: FailedJob) -> None:
        try:
            self.operators.notify_operators(
                f"Job permanently failed: {job.job_type}",
                f"{job.job_type} failed {job.attempt_count} times and needs manual "
                f"resolution. Last error: {job.error_message}",
                f"/failed-jobs/{job.id}",
                NotificationSeverity.critical,
            )
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            logger.error(f"Escalation failed for job {job.id}: {exc}")
