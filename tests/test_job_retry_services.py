"""Tests for the failed-job ledger and retry worker."""

import uuid
from datetime import timedelta
from types import SimpleNamespace

import pytest

from app.config import Settings
from app.models.failed_job import FailedJob, FailedJobStatus
from app.models.notification import NotificationSeverity
from app.services.billing_errors import FailedJobNotFoundError, FailedJobStateError
from app.services.common import as_utc
from app.services.job_retry import (
    FailedJobLedger,
    RetryHandlerRegistry,
    RetryOutcome,
    RetryPolicy,
    RetryWorker,
    compute_backoff,
)
from tests.mocks import FakeOperatorChannel


@pytest.fixture()
def operators():
    return FakeOperatorChannel()


@pytest.fixture()
def ledger(db_session, operators, test_settings):
    return FailedJobLedger(db_session, operators=operators, config=test_settings)


class WorkerKilled(BaseException):
    """Stands in for a worker process dying mid-handler."""


class ScriptedHandler:
    """Returns the queued outcomes in order, then keeps returning the last."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def __call__(self, job):
        self.calls.append(job.id)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _worker(db_session, operators, test_settings, **handlers):
    return RetryWorker(
        db_session,
        RetryHandlerRegistry(handlers),
        operators=operators,
        config=test_settings,
    )


FAIL = RetryOutcome(success=False, message="gateway still down")
OK = RetryOutcome(success=True, message="done")


# =============================================================================
# Backoff
# =============================================================================


class TestBackoff:
    def test_doubles_from_base(self):
        assert compute_backoff(0) == timedelta(minutes=30)
        assert compute_backoff(1) == timedelta(minutes=60)
        assert compute_backoff(2) == timedelta(minutes=120)
        assert compute_backoff(3) == timedelta(minutes=240)

    def test_monotonic(self):
        delays = [compute_backoff(attempt) for attempt in range(10)]
        assert delays == sorted(delays)
        assert len(set(delays)) == len(delays)

    def test_custom_base(self):
        assert compute_backoff(2, base_minutes=5) == timedelta(minutes=20)

    def test_policy_from_settings(self):
        policy = RetryPolicy.from_settings(
            Settings(retry_max_attempts=5, retry_claim_lease_minutes=2)
        )
        assert policy.max_attempts == 5
        assert policy.claim_lease_minutes == 2


# =============================================================================
# Ledger
# =============================================================================


class TestRecordFailure:
    def test_creates_pending_job(self, db_session, ledger, operators, now):
        job = ledger.record_failure(
            "monthly_billing",
            RuntimeError("boom"),
            metadata={"account_id": "abc"},
            now=now,
        )

        assert job.status == FailedJobStatus.pending
        assert job.attempt_count == 1
        assert job.max_attempts == 3
        assert as_utc(job.next_retry_at) == now + timedelta(minutes=30)
        assert as_utc(job.scheduled_time) == now
        assert job.error_message == "boom"
        assert "RuntimeError" in job.error_stack
        assert job.metadata_ == {"account_id": "abc"}
        assert len(operators.alerts) == 1
        assert operators.alerts[0]["severity"] == NotificationSeverity.error
        assert operators.alerts[0]["reference"] == f"/failed-jobs/{job.id}"

    def test_string_error(self, ledger, now):
        job = ledger.record_failure("payment_reminder", "2 of 5 reminders failed", now=now)

        assert job.error_message == "2 of 5 reminders failed"
        assert job.error_stack is None

    def test_operator_failure_is_not_raised(self, db_session, test_settings, now):
        ledger = FailedJobLedger(
            db_session, operators=FakeOperatorChannel(fail=True), config=test_settings
        )

        job = ledger.record_failure("sms_notification", "timeout", now=now)

        assert db_session.get(FailedJob, job.id) is not None

    def test_affected_entities_stored(self, ledger, now):
        entities = [{"entity_id": "a1", "status": "failed", "error": "x"}]

        job = ledger.record_failure("monthly_billing", "x", affected_entities=entities, now=now)

        assert job.affected_entities == entities


class TestLedgerQueries:
    def test_summary(self, ledger, now):
        ledger.record_failure("monthly_billing", "a", now=now)
        ledger.record_failure("monthly_billing", "b", now=now)
        job = ledger.record_failure("sms_notification", "c", now=now)
        ledger.resolve_manually(job.id, "ops", "resent by hand", now=now)

        summary = ledger.summary()

        assert summary.total == 3
        assert summary.by_status == {"pending": 2, "resolved": 1}
        assert summary.by_type == {"monthly_billing": 2, "sms_notification": 1}

    def test_list_filters(self, ledger, now):
        ledger.record_failure("monthly_billing", "a", now=now)
        ledger.record_failure("sms_notification", "b", now=now)

        items = ledger.list(None, "sms_notification", "created_at", "desc", 10, 0)

        assert [job.job_type for job in items] == ["sms_notification"]

    def test_list_response(self, ledger, now):
        ledger.record_failure("monthly_billing", "a", now=now)

        response = ledger.list_response("pending", None, "created_at", "asc", 5, 0)

        assert response["count"] == 1
        assert response["limit"] == 5

    def test_get_missing(self, ledger):
        with pytest.raises(FailedJobNotFoundError):
            ledger.get(uuid.uuid4())

    def test_get_malformed_id(self, ledger):
        with pytest.raises(FailedJobNotFoundError):
            ledger.get("not-a-uuid")


class TestResolveManually:
    def test_resolves_failed_job(self, db_session, ledger, now):
        job = ledger.record_failure("monthly_billing", "a", now=now)
        job.status = FailedJobStatus.failed
        job.next_retry_at = None
        db_session.commit()

        resolved = ledger.resolve_manually(job.id, "ops@example.com", "Invoice created by hand")

        assert resolved.status == FailedJobStatus.resolved
        assert resolved.resolved_by == "ops@example.com"
        assert resolved.resolution == "Invoice created by hand"
        assert resolved.resolved_at is not None

    def test_already_resolved(self, ledger, now):
        job = ledger.record_failure("monthly_billing", "a", now=now)
        ledger.resolve_manually(job.id, "ops", "fixed")

        with pytest.raises(FailedJobStateError):
            ledger.resolve_manually(job.id, "ops", "again")


# =============================================================================
# Retry worker
# =============================================================================


class TestRetryWorker:
    def test_fail_fail_succeed_ends_resolved(self, db_session, ledger, operators, test_settings, now):
        job = ledger.record_failure("monthly_billing", "first failure", now=now)
        handler = ScriptedHandler(FAIL, OK)
        worker = _worker(db_session, operators, test_settings, monthly_billing=handler)

        first_retry = now + timedelta(minutes=31)
        summary = worker.retry_due_jobs(first_retry)

        assert summary.retried == 1
        assert summary.failed == 1
        db_session.refresh(job)
        assert job.status == FailedJobStatus.pending
        assert job.attempt_count == 2
        assert job.error_message == "gateway still down"
        assert as_utc(job.next_retry_at) == first_retry + timedelta(minutes=120)

        second_retry = first_retry + timedelta(minutes=121)
        summary = worker.retry_due_jobs(second_retry)

        assert summary.succeeded == 1
        db_session.refresh(job)
        assert job.status == FailedJobStatus.resolved
        assert job.attempt_count == 3
        assert job.resolution == "done"
        assert as_utc(job.resolved_at) == second_retry
        assert job.next_retry_at is None
        assert len(job.metadata_["retry_history"]) == 2
        assert len(handler.calls) == 2

    def test_permanent_failure_escalates(self, db_session, ledger, operators, test_settings, now):
        job = ledger.record_failure("monthly_billing", "first failure", now=now)
        worker = _worker(db_session, operators, test_settings, monthly_billing=ScriptedHandler(FAIL))

        worker.retry_due_jobs(now + timedelta(minutes=31))
        summary = worker.retry_due_jobs(now + timedelta(days=1))

        assert summary.max_attempts_reached == 1
        db_session.refresh(job)
        assert job.status == FailedJobStatus.failed
        assert job.attempt_count == 3
        assert job.next_retry_at is None
        assert operators.alerts[-1]["severity"] == NotificationSeverity.critical

        # Never retried past the cap.
        later = worker.retry_due_jobs(now + timedelta(days=30))
        assert later.retried == 0
        db_session.refresh(job)
        assert job.attempt_count == 3

    def test_worker_lost_on_final_attempt_ends_failed(
        self, db_session, ledger, operators, test_settings, now
    ):
        job = ledger.record_failure("monthly_billing", "x", now=now)
        job.attempt_count = 2
        db_session.commit()
        crashed = _worker(
            db_session, operators, test_settings, monthly_billing=ScriptedHandler(WorkerKilled())
        )
        with pytest.raises(WorkerKilled):
            crashed.retry_due_jobs(now + timedelta(hours=1))
        db_session.refresh(job)
        assert job.status == FailedJobStatus.retrying
        assert job.attempt_count == 3

        handler = ScriptedHandler(OK)
        worker = _worker(db_session, operators, test_settings, monthly_billing=handler)
        summary = worker.retry_due_jobs(now + timedelta(days=30))

        assert summary.max_attempts_reached == 1
        assert summary.retried == 0
        assert handler.calls == []
        db_session.refresh(job)
        assert job.status == FailedJobStatus.failed
        assert job.next_retry_at is None
        assert "lease expired" in job.error_message
        assert operators.alerts[-1]["severity"] == NotificationSeverity.critical

    def test_final_attempt_within_lease_is_left_alone(
        self, db_session, ledger, operators, test_settings, now
    ):
        job = ledger.record_failure("monthly_billing", "x", now=now)
        job.status = FailedJobStatus.retrying
        job.attempt_count = 3
        job.next_retry_at = now + timedelta(minutes=15)
        db_session.commit()
        worker = _worker(db_session, operators, test_settings, monthly_billing=ScriptedHandler(OK))

        summary = worker.retry_due_jobs(now + timedelta(minutes=5))

        assert summary.max_attempts_reached == 0
        db_session.refresh(job)
        assert job.status == FailedJobStatus.retrying

    def test_job_not_yet_due_is_left_alone(self, db_session, ledger, operators, test_settings, now):
        ledger.record_failure("monthly_billing", "x", now=now)
        handler = ScriptedHandler(OK)
        worker = _worker(db_session, operators, test_settings, monthly_billing=handler)

        summary = worker.retry_due_jobs(now + timedelta(minutes=10))

        assert summary.retried == 0
        assert handler.calls == []

    def test_unknown_job_type_is_skipped(self, db_session, ledger, operators, test_settings, now):
        job = ledger.record_failure("mystery_job", "x", now=now)
        worker = _worker(db_session, operators, test_settings)

        summary = worker.retry_due_jobs(now + timedelta(hours=1))

        assert summary.skipped == 1
        assert summary.retried == 0
        db_session.refresh(job)
        assert job.status == FailedJobStatus.pending
        assert job.attempt_count == 1

    def test_handler_exception_counts_as_failure(self, db_session, ledger, operators, test_settings, now):
        job = ledger.record_failure("sms_notification", "x", now=now)
        worker = _worker(
            db_session,
            operators,
            test_settings,
            sms_notification=ScriptedHandler(RuntimeError("handler crashed")),
        )

        summary = worker.retry_due_jobs(now + timedelta(hours=1))

        assert summary.failed == 1
        db_session.refresh(job)
        assert job.status == FailedJobStatus.pending
        assert job.attempt_count == 2
        assert job.error_message == "handler crashed"
        assert "RuntimeError" in job.error_stack

    def test_claim_lost_to_another_worker(self, db_session, ledger, operators, test_settings, now, monkeypatch):
        job = ledger.record_failure("monthly_billing", "x", now=now)
        handler = ScriptedHandler(OK)
        worker = _worker(db_session, operators, test_settings, monthly_billing=handler)
        # A stale read: another worker already bumped attempt_count.
        stale = SimpleNamespace(id=job.id, job_type="monthly_billing", attempt_count=0)
        monkeypatch.setattr(worker, "find_due", lambda _now: [stale])

        summary = worker.retry_due_jobs(now + timedelta(hours=1))

        assert summary.skipped == 1
        assert handler.calls == []
        db_session.refresh(job)
        assert job.attempt_count == 1

    def test_claim_leases_job(self, db_session, ledger, operators, test_settings, now):
        job = ledger.record_failure("monthly_billing", "x", now=now)
        observed = {}

        def _handler(claimed):
            observed["status"] = claimed.status
            observed["attempt_count"] = claimed.attempt_count
            observed["next_retry_at"] = as_utc(claimed.next_retry_at)
            return OK

        worker = _worker(db_session, operators, test_settings, monthly_billing=_handler)
        retry_at = now + timedelta(hours=1)

        worker.retry_due_jobs(retry_at)

        assert observed["status"] == FailedJobStatus.retrying
        assert observed["attempt_count"] == 2
        assert observed["next_retry_at"] == retry_at + timedelta(minutes=15)
        db_session.refresh(job)
        assert as_utc(job.last_attempt_at) == retry_at

    def test_oldest_scheduled_first(self, db_session, operators, now):
        config = Settings(sms_enabled=False, retry_batch_size=1)
        ledger = FailedJobLedger(db_session, operators=operators, config=config)
        newer = ledger.record_failure("monthly_billing", "n", scheduled_time=now, now=now)
        older = ledger.record_failure(
            "monthly_billing", "o", scheduled_time=now - timedelta(days=1), now=now
        )
        handler = ScriptedHandler(OK)
        worker = RetryWorker(
            db_session,
            RetryHandlerRegistry({"monthly_billing": handler}),
            operators=operators,
            config=config,
        )

        worker.retry_due_jobs(now + timedelta(hours=1))

        assert handler.calls == [older.id]
        db_session.refresh(newer)
        assert newer.status == FailedJobStatus.pending


class TestRetryHandlerRegistry:
    def test_register_and_lookup(self):
        registry = RetryHandlerRegistry()
        registry.register("monthly_billing", lambda job: OK)

        assert "monthly_billing" in registry
        assert "annual_billing" not in registry
        assert registry.get("annual_billing") is None
        assert registry.job_types == ["monthly_billing"]
