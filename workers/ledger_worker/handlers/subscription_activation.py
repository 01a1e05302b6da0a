from __future__ import annotations

import logging
from typing import Any, Protocol

from ledger_worker.dev.failpoint import Failpoint
from ledger_worker.jobs.errors import EventLedgerNotFoundError, MalformedPayloadError
from ledger_worker.jobs.models import Job

logger = logging.getLogger(__name__)

SUBSCRIPTION_PAID = "subscription.paid"
IDEMPOTENCY_KEY_PREFIX = "activate_subscription"


class EventLedgerReader(Protocol):
    async def fetch_event_payload(self, event_ledger_id: int) -> dict[str, Any] | None: ...


class ActivationStore(Protocol):
    async def insert_pending(self, *, idempotency_key: str, subscription_id: str) -> bool: ...

    async def mark_succeeded(self, *, idempotency_key: str) -> None: ...

    async def mark_failed(self, *, idempotency_key: str, subscription_id: str, error_message: str) -> None: ...


def activation_idempotency_key(subscription_id: str) -> str:
    return f"{IDEMPOTENCY_KEY_PREFIX}:{subscription_id}"


def extract_subscription_id(raw_payload: dict[str, Any]) -> str:
    """Pull ``payload.subscription_id`` out of an ingested event body."""
    payload = raw_payload.get("payload")
    if not isinstance(payload, dict):
        raise MalformedPayloadError("missing payload object")
    subscription_id = payload.get("subscription_id")
    if not isinstance(subscription_id, str) or not subscription_id.strip():
        raise MalformedPayloadError("missing subscription_id")
    return subscription_id.strip()


class SubscriptionActivationHandler:
    """
    Applies the subscription activation effect for ``subscription.paid`` jobs.

    The effect is keyed by ``activate_subscription:<subscription_id>``, never
    by job id, so replays of the same business event through any number of
    jobs produce a single activation record. A key that already exists is a
    duplicate and is reported as handled without re-applying anything.
    """

    event_type = SUBSCRIPTION_PAID

    def __init__(
        self,
        *,
        ledger: EventLedgerReader,
        effects: ActivationStore,
        failpoint: Failpoint | None = None,
    ) -> None:
        self.ledger = ledger
        self.effects = effects
        self.failpoint = failpoint or Failpoint()

    async def handle(self, job: Job) -> dict[str, Any]:
        self.failpoint.trigger()

        raw_payload = await self.ledger.fetch_event_payload(job.event_ledger_id)
        if raw_payload is None:
            raise EventLedgerNotFoundError(job.event_ledger_id)

        subscription_id = extract_subscription_id(raw_payload)
        idempotency_key = activation_idempotency_key(subscription_id)

        inserted = await self.effects.insert_pending(
            idempotency_key=idempotency_key,
            subscription_id=subscription_id,
        )
        if not inserted:
            logger.info(
                "duplicate effect job_id=%s subscription_id=%s idempotency_key=%s",
                job.id,
                subscription_id,
                idempotency_key,
            )
            return {
                "handled": True,
                "duplicate": True,
                "event_type": job.event_type,
                "idempotency_key": idempotency_key,
            }

        try:
            await self.effects.mark_succeeded(idempotency_key=idempotency_key)
        except Exception as exc:
            await self._record_failure(
                idempotency_key=idempotency_key,
                subscription_id=subscription_id,
                error=exc,
            )
            logger.error(
                "effect failed job_id=%s subscription_id=%s error=%s",
                job.id,
                subscription_id,
                exc,
            )
            raise

        logger.info("effect applied job_id=%s subscription_id=%s", job.id, subscription_id)
        return {
            "handled": True,
            "duplicate": False,
            "event_type": job.event_type,
            "idempotency_key": idempotency_key,
        }

    async def _record_failure(self, *, idempotency_key: str, subscription_id: str, error: Exception) -> None:
        # best effort: the original error is what the caller needs to see
        try:
            await self.effects.mark_failed(
                idempotency_key=idempotency_key,
                subscription_id=subscription_id,
                error_message=str(error) or type(error).__name__,
            )
        except Exception:
            logger.warning(
                "could not record effect failure idempotency_key=%s",
                idempotency_key,
                exc_info=True,
            )
