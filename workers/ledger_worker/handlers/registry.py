from __future__ import annotations

from ledger_worker.dev.failpoint import Failpoint
from ledger_worker.effects.repository import EffectRepository
from ledger_worker.handlers.subscription_activation import SubscriptionActivationHandler
from ledger_worker.jobs.executor import JobHandler
from ledger_worker.jobs.repository import JobRepository


def build_handlers(
    *,
    jobs: JobRepository,
    effects: EffectRepository,
    failpoint: Failpoint | None = None,
) -> dict[str, JobHandler]:
    handlers: list[JobHandler] = [
        SubscriptionActivationHandler(ledger=jobs, effects=effects, failpoint=failpoint),
    ]
    return {handler.event_type: handler for handler in handlers}
