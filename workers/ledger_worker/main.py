from __future__ import annotations

import asyncio
import logging
import signal

from ledger_worker.core.config import Settings, get_settings
from ledger_worker.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from ledger_worker.dev.failpoint import Failpoint
from ledger_worker.effects.repository import EffectRepository
from ledger_worker.handlers.registry import build_handlers
from ledger_worker.jobs.repository import JobRepository
from ledger_worker.services.database import Database
from ledger_worker.worker import Worker

logger = logging.getLogger(__name__)


def build_worker(settings: Settings, database: Database) -> Worker:
    jobs = JobRepository(database)
    failpoint = Failpoint(settings.failpoint)
    if failpoint.enabled:
        logger.warning("failpoint enabled mode=%s", settings.failpoint)

    return Worker(
        jobs=jobs,
        handlers=build_handlers(jobs=jobs, effects=EffectRepository(database), failpoint=failpoint),
        poll_interval_seconds=settings.poll_interval_seconds,
        retry_delay_seconds=settings.retry_delay_seconds,
        stale_claim_timeout_seconds=settings.stale_claim_timeout_seconds,
        stale_claim_sweep_interval_seconds=settings.stale_claim_sweep_interval_seconds,
        stale_claim_batch_size=settings.stale_claim_batch_size,
    )


def install_shutdown_handlers(worker: Worker) -> None:
    loop = asyncio.get_running_loop()

    def request_stop(signame: str) -> None:
        logger.info("worker stopping signal=%s", signame)
        worker.stop()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, request_stop, signum.name)
        except NotImplementedError:  # pragma: no cover - windows event loops
            signal.signal(signum, lambda *_: worker.stop())


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    database = Database.from_settings(settings)
    worker = build_worker(settings, database)
    install_shutdown_handlers(worker)

    try:
        await worker.run()
    finally:
        await database.close()
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
