from __future__ import annotations

from asyncpg import exceptions as pg_exc  # type: ignore[import-untyped]

from ledger_worker.services.database import Database


class EffectRepository:
    """Writes to ``subscription_activations``, keyed by idempotency key."""

    def __init__(self, database: Database) -> None:
        self.database = database

    async def insert_pending(self, *, idempotency_key: str, subscription_id: str) -> bool:
        """
        Reserve the idempotency key with a ``pending`` record.

        Returns ``False`` when a record for the key already exists, meaning
        the effect was attempted before and must not be applied again.
        """
        pool = await self.database.get_pool()
        try:
            await pool.execute(
                """
                insert into subscription_activations (idempotency_key, subscription_id, status)
                values ($1, $2, 'pending')
                """,
                idempotency_key,
                subscription_id,
            )
        except pg_exc.UniqueViolationError:
            return False
        return True

    async def mark_succeeded(self, *, idempotency_key: str) -> None:
        pool = await self.database.get_pool()
        await pool.execute(
            """
            update subscription_activations
            set status = 'succeeded', error_message = null, updated_at = now()
            where idempotency_key = $1 and status = 'pending'
            """,
            idempotency_key,
        )

    async def mark_failed(self, *, idempotency_key: str, subscription_id: str, error_message: str) -> None:
        pool = await self.database.get_pool()
        await pool.execute(
            """
            insert into subscription_activations (idempotency_key, subscription_id, status, error_message)
            values ($1, $2, 'failed', $3)
            on conflict (idempotency_key)
            do update set
              status = 'failed',
              error_message = excluded.error_message,
              updated_at = now()
            """,
            idempotency_key,
            subscription_id,
            error_message,
        )
