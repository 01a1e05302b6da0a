from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

from ledger_api.main import app
from ledger_api.services.repository import (
    MANUAL_REQUEUE_ACTION,
    JobInvalidStateError,
    JobNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)


def _job(job_id: int, status: str, *, failure_type: str | None = None) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    return {
        "id": job_id,
        "status": status,
        "event_ledger_id": job_id * 10,
        "event_type": "subscription.paid",
        "external_event_id": f"evt_{job_id}",
        "created_at": now - timedelta(minutes=5),
        "attempts": 3 if status == "failed" else 1,
        "max_attempts": 3,
        "failure_type": failure_type,
        "last_error": "boom" if failure_type else None,
        "available_at": now - timedelta(minutes=1),
    }


class FakeAdminRepository:
    def __init__(self) -> None:
        self.jobs: dict[int, dict[str, Any]] = {
            1: _job(1, "failed", failure_type="retryable"),
            2: _job(2, "done"),
            3: _job(3, "in_progress"),
        }
        self.audit: list[dict[str, Any]] = []
        self.effects: list[dict[str, Any]] = []
        self.list_calls: list[dict[str, Any]] = []

    async def list_jobs(self, **filters: Any) -> list[dict[str, Any]]:
        self.list_calls.append(filters)
        rows = sorted(self.jobs.values(), key=lambda row: row["id"], reverse=True)
        if filters.get("status"):
            rows = [row for row in rows if row["status"] == filters["status"]]
        if filters.get("failure_type"):
            rows = [row for row in rows if row["failure_type"] == filters["failure_type"]]
        return rows[: filters["limit"]]

    async def requeue_failed_job(self, *, job_id: int, actor: str, reason: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job["status"] != "failed":
            raise JobInvalidStateError(job_id, job["status"], "failed")
        job["status"] = "queued"
        job["available_at"] = datetime.now(timezone.utc)
        audit = {
            "id": len(self.audit) + 1,
            "job_id": job_id,
            "action": MANUAL_REQUEUE_ACTION,
            "actor": actor,
            "reason": reason,
            "created_at": datetime.now(timezone.utc),
        }
        self.audit.append(audit)
        return {"job": dict(job), "audit": audit}

    async def list_interventions(self, *, job_id: int | None, action: str | None, limit: int) -> list[dict[str, Any]]:
        rows = [row for row in reversed(self.audit) if job_id is None or row["job_id"] == job_id]
        return [{"audit": row, "job": self.jobs[row["job_id"]]} for row in rows[:limit]]

    async def list_effects(self, *, limit: int) -> list[dict[str, Any]]:
        return self.effects[:limit]

    async def get_server_now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def close(self) -> None:
        return None


@pytest.fixture
def fake_repository() -> FakeAdminRepository:
    fake = FakeAdminRepository()
    app.dependency_overrides[get_repository] = lambda: fake
    yield fake
    app.dependency_overrides.clear()


def test_list_jobs_returns_newest_first_with_server_now(fake_repository: FakeAdminRepository) -> None:
    with TestClient(app) as client:
        response = client.get("/admin/jobs")

    assert response.status_code == 200
    data = response.json()
    assert [item["id"] for item in data["items"]] == [3, 2, 1]
    assert data["limit"] == 50
    assert data["server_now"]


def test_list_jobs_passes_filters(fake_repository: FakeAdminRepository) -> None:
    with TestClient(app) as client:
        response = client.get("/admin/jobs", params={"status": "failed", "failure_type": "retryable", "limit": 10})

    assert response.status_code == 200
    assert [item["id"] for item in response.json()["items"]] == [1]
    assert fake_repository.list_calls[-1] == {
        "status": "failed",
        "event_type": None,
        "external_event_id": None,
        "failure_type": "retryable",
        "limit": 10,
    }


@pytest.mark.parametrize(
    "params",
    [
        {"limit": 0},
        {"limit": 201},
        {"status": "claimed"},
        {"failure_type": "fatal"},
    ],
)
def test_list_jobs_rejects_invalid_query(fake_repository: FakeAdminRepository, params: dict[str, Any]) -> None:
    with TestClient(app) as client:
        response = client.get("/admin/jobs", params=params)

    assert response.status_code == 422
    assert fake_repository.list_calls == []


def test_requeue_failed_job_records_audit(fake_repository: FakeAdminRepository) -> None:
    with TestClient(app) as client:
        response = client.post(
            "/admin/jobs/1/requeue",
            json={"actor": "ops@example.com", "reason": "upstream fixed"},
        )

    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["id"] == 1
    assert data["status"] == "queued"
    assert data["available_at"]
    assert data["audit"]["action"] == "manual_requeue"
    assert data["audit"]["actor"] == "ops@example.com"
    assert data["audit"]["reason"] == "upstream fixed"
    assert fake_repository.jobs[1]["attempts"] == 3


def test_requeue_missing_job_returns_404(fake_repository: FakeAdminRepository) -> None:
    with TestClient(app) as client:
        response = client.post("/admin/jobs/999/requeue", json={"actor": "ops", "reason": "retry"})

    assert response.status_code == 404
    assert fake_repository.audit == []


@pytest.mark.parametrize("job_id", [2, 3])
def test_requeue_non_failed_job_returns_409(fake_repository: FakeAdminRepository, job_id: int) -> None:
    with TestClient(app) as client:
        response = client.post(f"/admin/jobs/{job_id}/requeue", json={"actor": "ops", "reason": "retry"})

    assert response.status_code == 409
    assert response.json()["detail"].endswith("Only failed jobs can be requeued.")
    assert fake_repository.audit == []


def test_second_requeue_of_same_job_conflicts(fake_repository: FakeAdminRepository) -> None:
    with TestClient(app) as client:
        first = client.post("/admin/jobs/1/requeue", json={"actor": "ops", "reason": "retry"})
        second = client.post("/admin/jobs/1/requeue", json={"actor": "ops", "reason": "retry"})

    assert first.status_code == 200
    assert second.status_code == 409
    assert len(fake_repository.audit) == 1


@pytest.mark.parametrize(
    ("path", "body"),
    [
        ("/admin/jobs/1/requeue", {"actor": "", "reason": "retry"}),
        ("/admin/jobs/1/requeue", {"actor": "ops", "reason": "   "}),
        ("/admin/jobs/1/requeue", {"actor": "ops"}),
        ("/admin/jobs/0/requeue", {"actor": "ops", "reason": "retry"}),
        ("/admin/jobs/abc/requeue", {"actor": "ops", "reason": "retry"}),
    ],
)
def test_requeue_rejects_invalid_input(
    fake_repository: FakeAdminRepository,
    path: str,
    body: dict[str, Any],
) -> None:
    with TestClient(app) as client:
        response = client.post(path, json=body)

    assert response.status_code == 422
    assert fake_repository.jobs[1]["status"] == "failed"


def test_list_interventions_pairs_audit_with_job(fake_repository: FakeAdminRepository) -> None:
    with TestClient(app) as client:
        client.post("/admin/jobs/1/requeue", json={"actor": "ops", "reason": "retry"})
        response = client.get("/admin/interventions", params={"job_id": 1})

    assert response.status_code == 200
    items = response.json()["items"]
    assert len(items) == 1
    assert items[0]["audit"]["job_id"] == 1
    assert items[0]["job"]["status"] == "queued"


def test_list_effects(fake_repository: FakeAdminRepository) -> None:
    now = datetime.now(timezone.utc)
    fake_repository.effects.append(
        {
            "id": 1,
            "idempotency_key": "activate_subscription:sub_1",
            "subscription_id": "sub_1",
            "status": "succeeded",
            "error_message": None,
            "created_at": now,
            "updated_at": now,
        }
    )

    with TestClient(app) as client:
        response = client.get("/admin/effects", params={"limit": 5})

    assert response.status_code == 200
    assert response.json()["limit"] == 5
    assert response.json()["items"][0]["idempotency_key"] == "activate_subscription:sub_1"


def test_admin_routes_return_503_when_database_unavailable(fake_repository: FakeAdminRepository) -> None:
    async def unavailable(**_: Any) -> Any:
        raise RepositoryUnavailableError("database unavailable")

    fake_repository.list_jobs = unavailable  # type: ignore[method-assign]
    fake_repository.requeue_failed_job = unavailable  # type: ignore[method-assign]

    with TestClient(app) as client:
        jobs_response = client.get("/admin/jobs")
        requeue_response = client.post("/admin/jobs/1/requeue", json={"actor": "ops", "reason": "retry"})

    assert jobs_response.status_code == 503
    assert requeue_response.status_code == 503
