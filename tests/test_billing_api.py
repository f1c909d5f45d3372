from __future__ import annotations

import uuid

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.billing import router as billing_router
from app.db import get_db
from app.errors import register_error_handlers
from app.models.account import AccountStatus, PaymentStatus
from app.services.job_retry import FailedJobLedger
from tests.mocks import FakeOperatorChannel


@pytest.fixture()
def client(db_session):
    app = FastAPI()
    register_error_handlers(app)
    app.include_router(billing_router, prefix="/api/v1")

    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture()
def failed_job(db_session, test_settings, now):
    ledger = FailedJobLedger(db_session, operators=FakeOperatorChannel(), config=test_settings)
    return ledger.record_failure(
        "monthly_billing", "connection reset", metadata={"billing_period": "2024-03"}, now=now
    )


def test_trigger_run_and_read_it_back(client, account):
    response = client.post(
        "/api/v1/billing/runs", json={"run_at": "2024-03-15T09:00:00Z"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["billed"] == 1
    assert body["billing_month"] == "2024-03"
    assert body["invoices"][0]["account_id"] == str(account.id)

    runs = client.get("/api/v1/billing/runs").json()
    assert runs["count"] == 1
    assert runs["items"][0]["accounts_billed"] == 1

    run = client.get(f"/api/v1/billing/runs/{body['run_id']}")
    assert run.status_code == 200
    assert run.json()["status"] == "success"


def test_dry_run_writes_nothing(client, account):
    response = client.post(
        "/api/v1/billing/runs",
        json={"run_at": "2024-03-15T09:00:00Z", "dry_run": True},
    )

    assert response.status_code == 200
    assert response.json()["run_id"] is None
    assert client.get("/api/v1/billing/invoices").json()["count"] == 0


def test_invalid_billing_month_is_rejected(client):
    response = client.post("/api/v1/billing/runs", json={"billing_month": "March"})

    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


def test_unknown_run_is_404(client):
    response = client.get(f"/api/v1/billing/runs/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["code"] == "billing_run_not_found"


def test_list_invoices_for_account(client, account, make_account, make_invoice):
    make_invoice(account)
    make_invoice(make_account())

    response = client.get("/api/v1/billing/invoices", params={"account_id": str(account.id)})

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 1
    assert body["items"][0]["account_id"] == str(account.id)


def test_send_reminders_with_nothing_due(client):
    response = client.post("/api/v1/billing/reminders")

    assert response.status_code == 200
    assert response.json() == {"total": 0, "sent": 0, "failed": 0, "total_amount": 0}


def test_reclassify_account(client, make_account):
    account = make_account(
        account_status=AccountStatus.inactive,
        payment_status=PaymentStatus.no_payment,
    )

    response = client.post(
        f"/api/v1/billing/accounts/{account.id}/reclassify", json={"total_paid": 10000}
    )

    assert response.status_code == 200
    assert response.json() == {
        "account_id": str(account.id),
        "account_status": "active",
        "payment_status": "partial_paid",
    }


def test_reclassify_unknown_account_is_404(client):
    response = client.post(
        f"/api/v1/billing/accounts/{uuid.uuid4()}/reclassify", json={"total_paid": 0}
    )

    assert response.status_code == 404
    assert response.json()["code"] == "account_not_found"


def test_failed_job_listing_and_summary(client, failed_job):
    listing = client.get("/api/v1/billing/failed-jobs", params={"status": "pending"})
    summary = client.get("/api/v1/billing/failed-jobs/summary")

    assert listing.status_code == 200
    item = listing.json()["items"][0]
    assert item["id"] == str(failed_job.id)
    assert item["metadata"] == {"billing_period": "2024-03"}
    assert summary.json() == {
        "total": 1,
        "by_status": {"pending": 1},
        "by_type": {"monthly_billing": 1},
    }


def test_resolve_failed_job(client, failed_job):
    payload = {"resolved_by": "ops@example.com", "resolution": "Billed by hand"}

    first = client.post(f"/api/v1/billing/failed-jobs/{failed_job.id}/resolve", json=payload)
    second = client.post(f"/api/v1/billing/failed-jobs/{failed_job.id}/resolve", json=payload)

    assert first.status_code == 200
    assert first.json()["status"] == "resolved"
    assert first.json()["resolved_by"] == "ops@example.com"
    assert second.status_code == 409
    assert second.json()["code"] == "failed_job_state"


def test_unknown_failed_job_is_404(client):
    response = client.get(f"/api/v1/billing/failed-jobs/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["code"] == "failed_job_not_found"


def test_retry_endpoint_reruns_due_job(client, failed_job):
    response = client.post("/api/v1/billing/failed-jobs/retry")

    assert response.status_code == 200
    assert response.json()["retried"] == 1
    assert response.json()["succeeded"] == 1
    job = client.get(f"/api/v1/billing/failed-jobs/{failed_job.id}").json()
    assert job["status"] == "resolved"
    assert job["attempt_count"] == 2


def test_request_id_is_echoed(client):
    response = client.get(
        f"/api/v1/billing/runs/{uuid.uuid4()}", headers={"X-Request-ID": "req-123"}
    )

    assert response.headers["X-Request-ID"] == "req-123"
    assert response.json()["request_id"] == "req-123"


@pytest.mark.parametrize(
    "path, code",
    [
        ("/api/v1/billing/runs/not-a-uuid", "billing_run_not_found"),
        ("/api/v1/billing/failed-jobs/not-a-uuid", "failed_job_not_found"),
    ],
)
def test_malformed_ids_are_404(client, path, code):
    response = client.get(path)

    assert response.status_code == 404
    assert response.json()["code"] == code


def test_reclassify_malformed_account_id_is_404(client):
    response = client.post(
        "/api/v1/billing/accounts/12345/reclassify", json={"total_paid": 0}
    )

    assert response.status_code == 404
    assert response.json()["code"] == "account_not_found"


def test_resolve_malformed_failed_job_id_is_404(client):
    response = client.post(
        "/api/v1/billing/failed-jobs/bogus/resolve",
        json={"resolved_by": "ops@example.com", "resolution": "n/a"},
    )

    assert response.status_code == 404
    assert response.json()["code"] == "failed_job_not_found"


def test_invoice_filter_with_malformed_account_id_is_400(client):
    response = client.get("/api/v1/billing/invoices", params={"account_id": "abc"})

    assert response.status_code == 400
    assert response.json()["code"] == "http_400"
    assert response.json()["message"] == "Invalid account_id"
