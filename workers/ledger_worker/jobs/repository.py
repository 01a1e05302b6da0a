from __future__ import annotations

import json
from typing import Any

from ledger_worker.jobs.errors import JobNotFoundError
from ledger_worker.jobs.models import FailureType, Job, JobRetryState
from ledger_worker.services.database import Database

_JOB_COLUMNS = """
  id,
  status,
  event_ledger_id,
  event_type,
  external_event_id,
  attempts,
  max_attempts,
  created_at,
  available_at
"""


class JobRepository:
    """
    Job lifecycle transitions for the worker side of the queue.

    Every mutation is a conditional update keyed on the job's current status,
    so a transition that lost a race affects zero rows instead of clobbering
    a newer state. Callers get ``False`` back in that case.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    async def claim_job(self) -> Job | None:
        pool = await self.database.get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                candidate = await conn.fetchrow(
                    """
                    select id
                    from jobs
                    where status = 'queued' and available_at <= now()
                    order by id asc
                    limit 1
                    for update skip locked
                    """
                )
                if candidate is None:
                    return None

                row = await conn.fetchrow(
                    f"""
                    update jobs
                    set
                      status = 'in_progress',
                      attempts = attempts + 1,
                      claimed_at = now()
                    where id = $1 and status = 'queued'
                    returning {_JOB_COLUMNS}
                    """,
                    candidate["id"],
                )
                if row is None:
                    return None
                return Job.from_row(row)

    async def mark_done(self, job_id: int) -> bool:
        pool = await self.database.get_pool()
        row = await pool.fetchrow(
            """
            update jobs
            set status = 'done', claimed_at = null
            where id = $1 and status = 'in_progress'
            returning id
            """,
            job_id,
        )
        return row is not None

    async def mark_failed(self, job_id: int, failure_type: FailureType, last_error: str) -> bool:
        pool = await self.database.get_pool()
        row = await pool.fetchrow(
            """
            update jobs
            set
              status = 'failed',
              failure_type = $2,
              last_error = $3,
              claimed_at = null
            where id = $1 and status = 'in_progress'
            returning id
            """,
            job_id,
            FailureType(failure_type).value,
            last_error,
        )
        return row is not None

    async def requeue(self, job_id: int, last_error: str, delay_seconds: float) -> bool:
        pool = await self.database.get_pool()
        row = await pool.fetchrow(
            """
            update jobs
            set
              status = 'queued',
              failure_type = 'retryable',
              last_error = $2,
              available_at = now() + ($3::double precision * interval '1 second'),
              claimed_at = null
            where id = $1 and status = 'in_progress'
            returning id
            """,
            job_id,
            last_error,
            float(delay_seconds),
        )
        return row is not None

    async def get_retry_state(self, job_id: int) -> JobRetryState:
        pool = await self.database.get_pool()
        row = await pool.fetchrow(
            "select attempts, max_attempts from jobs where id = $1",
            job_id,
        )
        if row is None:
            raise JobNotFoundError(job_id)
        return JobRetryState(attempts=int(row["attempts"]), max_attempts=int(row["max_attempts"]))

    async def fetch_event_payload(self, event_ledger_id: int) -> dict[str, Any] | None:
        """Return the raw payload of a ledger entry, or ``None`` if the entry is gone."""
        pool = await self.database.get_pool()
        row = await pool.fetchrow(
            "select raw_payload from event_ledger where id = $1",
            event_ledger_id,
        )
        if row is None:
            return None
        raw_payload = row["raw_payload"]
        if isinstance(raw_payload, str):
            try:
                raw_payload = json.loads(raw_payload)
            except json.JSONDecodeError:
                return {}
        if isinstance(raw_payload, dict):
            return raw_payload
        return {}

    async def reap_stale_claims(self, *, timeout_seconds: float, limit: int) -> dict[str, int]:
        """
        Release ``in_progress`` jobs whose claim is older than ``timeout_seconds``.

        Jobs with attempts left go back to ``queued``; jobs that used their
        whole budget become ``failed``. Attempts are left untouched since the
        abandoned claim already consumed one.
        """
        pool = await self.database.get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with stale as (
                      select id
                      from jobs
                      where status = 'in_progress'
                        and claimed_at is not null
                        and claimed_at <= now() - ($1::double precision * interval '1 second')
                      order by claimed_at asc
                      limit $2
                      for update skip locked
                    )
                    update jobs j
                    set
                      status = case when j.attempts < j.max_attempts then 'queued' else 'failed' end,
                      failure_type = 'retryable',
                      last_error = 'claim expired',
                      available_at = case when j.attempts < j.max_attempts then now() else j.available_at end,
                      claimed_at = null
                    from stale s
                    where j.id = s.id
                    returning j.id, j.status
                    """,
                    float(timeout_seconds),
                    bounded_limit,
                )

        counts = {"requeued": 0, "failed": 0}
        for row in rows:
            if row["status"] == "queued":
                counts["requeued"] += 1
            else:
                counts["failed"] += 1
        return counts
