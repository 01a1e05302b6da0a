from __future__ import annotations

import json
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from ledger_api.core.config import get_settings


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class EventLedgerInsertFailedError(RepositoryUnavailableError):
    def __init__(self) -> None:
        super().__init__("event ledger insert did not return an id")


class AuditInsertFailedError(RepositoryUnavailableError):
    def __init__(self, job_id: int) -> None:
        self.job_id = job_id
        super().__init__(f"audit insert did not return a result for job {job_id}")


class JobNotFoundError(RepositoryNotFoundError):
    def __init__(self, job_id: int) -> None:
        self.job_id = job_id
        super().__init__(f"Job with id {job_id} not found")


class JobInvalidStateError(RepositoryConflictError):
    def __init__(self, job_id: int, current_status: str, expected_status: str) -> None:
        self.job_id = job_id
        self.current_status = current_status
        self.expected_status = expected_status
        super().__init__(
            f"Job with id {job_id} is not in {expected_status} status (current status: {current_status})"
        )


JOB_STATUSES = ("queued", "in_progress", "done", "failed")
FAILURE_TYPES = ("retryable", "permanent")
MANUAL_REQUEUE_ACTION = "manual_requeue"
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200

_JOB_COLUMNS = """
  id,
  status,
  event_ledger_id,
  event_type,
  external_event_id,
  created_at,
  attempts,
  max_attempts,
  failure_type,
  last_error,
  available_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        job_max_attempts: int,
        command_timeout_seconds: float = 15.0,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.job_max_attempts = max(1, job_max_attempts)
        self.command_timeout_seconds = command_timeout_seconds
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ingest_event(
        self,
        *,
        event_id: str,
        event_type: str,
        raw_payload: dict[str, Any],
    ) -> dict[str, int]:
        """
        Append an event to the ledger and enqueue its job in one transaction.

        Either both rows commit or neither does. Any persistence failure is
        reported as ``RepositoryUnavailableError``; retrying is the
        producer's responsibility.
        """
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    event_ledger_id = await conn.fetchval(
                        """
                        insert into event_ledger (event_type, external_event_id, raw_payload)
                        values ($1, $2, $3::jsonb)
                        returning id
                        """,
                        event_type,
                        event_id,
                        json.dumps(raw_payload),
                    )
                    if not event_ledger_id:
                        raise EventLedgerInsertFailedError()

                    job_id = await conn.fetchval(
                        """
                        insert into jobs (
                          status,
                          event_ledger_id,
                          event_type,
                          external_event_id,
                          attempts,
                          max_attempts,
                          available_at
                        )
                        values ('queued', $1, $2, $3, 0, $4, now())
                        returning id
                        """,
                        event_ledger_id,
                        event_type,
                        event_id,
                        self.job_max_attempts,
                    )
        except RepositoryUnavailableError:
            raise
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

        return {"event_ledger_id": int(event_ledger_id), "job_id": int(job_id)}

    async def list_jobs(
        self,
        *,
        status: str | None,
        event_type: str | None,
        external_event_id: str | None,
        failure_type: str | None,
        limit: int,
    ) -> list[dict[str, Any]]:
        normalized_status = self._coerce_choice(status, JOB_STATUSES, field="status")
        normalized_failure_type = self._coerce_choice(failure_type, FAILURE_TYPES, field="failure_type")
        normalized_event_type = self._coerce_text(event_type)
        normalized_external_event_id = self._coerce_text(external_event_id)

        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from jobs
            where ($1::text is null or status = $1)
              and ($2::text is null or event_type = $2)
              and ($3::text is null or external_event_id = $3)
              and ($4::text is null or failure_type = $4)
            order by id desc
            limit $5
            """,
            normalized_status,
            normalized_event_type,
            normalized_external_event_id,
            normalized_failure_type,
            self._bound_limit(limit),
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def requeue_failed_job(self, *, job_id: int, actor: str, reason: str) -> dict[str, Any]:
        """
        Move a ``failed`` job back to ``queued`` and record the intervention.

        The status precondition lives in the update's WHERE clause, so the
        update itself decides whether the transition is legal. When it
        matches no row, a follow-up read tells a missing job apart from one
        in the wrong state; nothing is written in either case.
        """
        normalized_actor = self._coerce_text(actor)
        if not normalized_actor:
            raise RepositoryValidationError("actor must be a non-empty string")
        normalized_reason = self._coerce_text(reason)
        if not normalized_reason:
            raise RepositoryValidationError("reason must be a non-empty string")

        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    job_row = await conn.fetchrow(
                        f"""
                        update jobs
                        set status = 'queued', available_at = now()
                        where id = $1 and status = 'failed'
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                    )

                    if job_row is None:
                        current_status = await conn.fetchval("select status from jobs where id = $1", job_id)
                        if current_status is None:
                            raise JobNotFoundError(job_id)
                        raise JobInvalidStateError(job_id, current_status, "failed")

                    audit_row = await conn.fetchrow(
                        """
                        insert into job_intervention_audit (job_id, action, actor, reason)
                        values ($1, $2, $3, $4)
                        returning id, job_id, action, actor, reason, created_at
                        """,
                        job_id,
                        MANUAL_REQUEUE_ACTION,
                        normalized_actor,
                        normalized_reason,
                    )
                    if audit_row is None:
                        raise AuditInsertFailedError(job_id)

                    return {
                        "job": self._job_row_to_dict(job_row),
                        "audit": self._audit_row_to_dict(audit_row),
                    }
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def list_interventions(
        self,
        *,
        job_id: int | None,
        action: str | None,
        limit: int,
    ) -> list[dict[str, Any]]:
        if job_id is not None and job_id <= 0:
            raise RepositoryValidationError("job_id must be a positive integer")
        normalized_action = self._coerce_text(action)

        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              a.id as audit_id,
              a.job_id as audit_job_id,
              a.action as audit_action,
              a.actor as audit_actor,
              a.reason as audit_reason,
              a.created_at as audit_created_at,
              j.id,
              j.status,
              j.event_ledger_id,
              j.event_type,
              j.external_event_id,
              j.created_at,
              j.attempts,
              j.max_attempts,
              j.failure_type,
              j.last_error,
              j.available_at
            from job_intervention_audit a
            join jobs j on j.id = a.job_id
            where ($1::bigint is null or a.job_id = $1)
              and ($2::text is null or a.action = $2)
            order by a.created_at desc, a.id desc
            limit $3
            """,
            job_id,
            normalized_action,
            self._bound_limit(limit),
        )
        return [
            {
                "audit": {
                    "id": row["audit_id"],
                    "job_id": row["audit_job_id"],
                    "action": row["audit_action"],
                    "actor": row["audit_actor"],
                    "reason": row["audit_reason"],
                    "created_at": row["audit_created_at"],
                },
                "job": self._job_row_to_dict(row),
            }
            for row in rows
        ]

    async def list_effects(self, *, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, idempotency_key, subscription_id, status, error_message, created_at, updated_at
            from subscription_activations
            order by id desc
            limit $1
            """,
            self._bound_limit(limit),
        )
        return [dict(row) for row in rows]

    async def get_server_now(self) -> Any:
        pool = await self._get_pool()
        return await pool.fetchval("select now()")

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("LEDGER_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _job_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "status": row["status"],
            "event_ledger_id": row["event_ledger_id"],
            "event_type": row["event_type"],
            "external_event_id": row["external_event_id"],
            "created_at": row["created_at"],
            "attempts": row["attempts"],
            "max_attempts": row["max_attempts"],
            "failure_type": row["failure_type"],
            "last_error": row["last_error"],
            "available_at": row["available_at"],
        }

    @staticmethod
    def _audit_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "job_id": row["job_id"],
            "action": row["action"],
            "actor": row["actor"],
            "reason": row["reason"],
            "created_at": row["created_at"],
        }

    @staticmethod
    def _bound_limit(limit: int | None) -> int:
        if limit is None:
            return DEFAULT_PAGE_SIZE
        return max(1, min(int(limit), MAX_PAGE_SIZE))

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    def _coerce_choice(self, value: Any, allowed: tuple[str, ...], *, field: str) -> str | None:
        normalized = self._coerce_text(value)
        if normalized and normalized not in allowed:
            raise RepositoryValidationError(f"{field} must be one of: {', '.join(allowed)}")
        return normalized


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        job_max_attempts=settings.job_max_attempts,
        command_timeout_seconds=settings.database_command_timeout_seconds,
    )
