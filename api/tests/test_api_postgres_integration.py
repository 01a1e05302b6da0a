from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest
from fastapi.testclient import TestClient

from ledger_api.core.config import get_settings
from ledger_api.main import app
from ledger_api.services.repository import (
    JobInvalidStateError,
    JobNotFoundError,
    PostgresRepository,
    RepositoryUnavailableError,
    get_repository,
)

SCHEMA_PATH = Path(__file__).resolve().parents[2] / "db" / "migrations" / "0001_init.sql"

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("LEDGER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require LEDGER_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_reset_schema(database_url))


@pytest.fixture
def api_client(database_url: str, monkeypatch) -> TestClient:
    monkeypatch.setenv("LEDGER_DATABASE_URL", database_url)
    get_settings.cache_clear()
    get_repository.cache_clear()

    with TestClient(app) as client:
        yield client

    get_repository.cache_clear()
    get_settings.cache_clear()


def test_ingest_writes_ledger_entry_and_queued_job(api_client: TestClient, database_url: str) -> None:
    body = {"event_id": "evt_1", "event_type": "subscription.paid", "payload": {"subscription_id": "sub_1"}}

    response = api_client.post("/events/ingest", json=body)
    assert response.status_code == 202

    ledger_rows, job_rows = _run(_fetch_ledger_and_jobs(database_url))
    assert len(ledger_rows) == 1
    assert json.loads(ledger_rows[0]["raw_payload"]) == body
    assert len(job_rows) == 1
    job = job_rows[0]
    assert job["status"] == "queued"
    assert job["event_ledger_id"] == ledger_rows[0]["id"]
    assert job["external_event_id"] == "evt_1"
    assert job["attempts"] == 0
    assert job["max_attempts"] == 3

    jobs_response = api_client.get("/admin/jobs", params={"status": "queued"})
    assert jobs_response.status_code == 200
    assert [item["id"] for item in jobs_response.json()["items"]] == [job["id"]]


def test_ingest_rolls_back_ledger_entry_when_job_insert_fails(database_url: str) -> None:
    async def scenario() -> None:
        repository = _repository(database_url)
        # violates the max_attempts check constraint on jobs
        repository.job_max_attempts = 0
        try:
            with pytest.raises(RepositoryUnavailableError):
                await repository.ingest_event(
                    event_id="evt_rollback",
                    event_type="subscription.paid",
                    raw_payload={"event_id": "evt_rollback"},
                )
        finally:
            await repository.close()

    _run(scenario())
    ledger_rows, job_rows = _run(_fetch_ledger_and_jobs(database_url))
    assert ledger_rows == []
    assert job_rows == []


def test_requeue_failed_job_over_http(api_client: TestClient, database_url: str) -> None:
    job_id = _run(_insert_job(database_url, status="failed", failure_type="retryable"))

    response = api_client.post(
        f"/admin/jobs/{job_id}/requeue",
        json={"actor": "ops@example.com", "reason": "dependency recovered"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "queued"

    again = api_client.post(
        f"/admin/jobs/{job_id}/requeue",
        json={"actor": "ops@example.com", "reason": "dependency recovered"},
    )
    assert again.status_code == 409

    missing = api_client.post("/admin/jobs/999999/requeue", json={"actor": "ops", "reason": "retry"})
    assert missing.status_code == 404

    interventions = api_client.get("/admin/interventions", params={"job_id": job_id})
    assert interventions.status_code == 200
    items = interventions.json()["items"]
    assert len(items) == 1
    assert items[0]["audit"]["actor"] == "ops@example.com"
    assert items[0]["job"]["status"] == "queued"
    # attempts are preserved on manual requeue
    assert items[0]["job"]["attempts"] == 3


def test_concurrent_requeues_produce_one_success_and_one_audit_row(database_url: str) -> None:
    job_id = _run(_insert_job(database_url, status="failed", failure_type="retryable"))

    async def scenario() -> list[Any]:
        repository = _repository(database_url)
        try:
            return await asyncio.gather(
                *(
                    repository.requeue_failed_job(job_id=job_id, actor=f"operator-{i}", reason="retry")
                    for i in range(2)
                ),
                return_exceptions=True,
            )
        finally:
            await repository.close()

    results = _run(scenario())
    successes = [result for result in results if isinstance(result, dict)]
    conflicts = [result for result in results if isinstance(result, JobInvalidStateError)]
    assert len(successes) == 1
    assert len(conflicts) == 1
    assert conflicts[0].current_status == "queued"
    assert _run(_count_audit_rows(database_url, job_id)) == 1


def test_requeue_rejections_write_no_audit(database_url: str) -> None:
    done_id = _run(_insert_job(database_url, status="done"))

    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            with pytest.raises(JobInvalidStateError):
                await repository.requeue_failed_job(job_id=done_id, actor="ops", reason="retry")
            with pytest.raises(JobNotFoundError):
                await repository.requeue_failed_job(job_id=done_id + 1000, actor="ops", reason="retry")
        finally:
            await repository.close()

    _run(scenario())
    assert _run(_count_audit_rows(database_url, done_id)) == 0


def _repository(database_url: str) -> PostgresRepository:
    return PostgresRepository(database_url=database_url, min_pool_size=1, max_pool_size=2, job_max_attempts=3)


async def _insert_job(database_url: str, *, status: str, failure_type: str | None = None) -> int:
    conn = await asyncpg.connect(database_url)
    try:
        event_ledger_id = await conn.fetchval(
            """
            insert into event_ledger (event_type, external_event_id, raw_payload)
            values ('subscription.paid', 'evt_seed', '{"payload": {"subscription_id": "sub_seed"}}'::jsonb)
            returning id
            """
        )
        return await conn.fetchval(
            """
            insert into jobs (status, event_ledger_id, event_type, external_event_id, attempts, max_attempts, failure_type, last_error)
            values ($1, $2, 'subscription.paid', 'evt_seed', 3, 3, $3, case when $3::text is null then null else 'boom' end)
            returning id
            """,
            status,
            event_ledger_id,
            failure_type,
        )
    finally:
        await conn.close()


async def _fetch_ledger_and_jobs(database_url: str) -> tuple[list[asyncpg.Record], list[asyncpg.Record]]:
    conn = await asyncpg.connect(database_url)
    try:
        ledger_rows = await conn.fetch("select id, raw_payload from event_ledger order by id")
        job_rows = await conn.fetch(
            "select id, status, event_ledger_id, external_event_id, attempts, max_attempts from jobs order by id"
        )
        return list(ledger_rows), list(job_rows)
    finally:
        await conn.close()


async def _count_audit_rows(database_url: str, job_id: int) -> int:
    conn = await asyncpg.connect(database_url)
    try:
        return await conn.fetchval("select count(*) from job_intervention_audit where job_id = $1", job_id)
    finally:
        await conn.close()


async def _reset_schema(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(SCHEMA_PATH.read_text())
        await conn.execute(
            """
            truncate table
              job_intervention_audit,
              subscription_activations,
              jobs,
              event_ledger
            restart identity cascade
            """
        )
    finally:
        await conn.close()


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)
