from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Protocol

from opentelemetry import trace

from ledger_worker.jobs.executor import JobHandler, execute_job
from ledger_worker.jobs.models import FailureType, Job, JobRetryState
from ledger_worker.retry.classifier import classify_failure
from ledger_worker.retry.policy import RETRY_DELAY_SECONDS, should_retry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MAX_ERROR_LENGTH = 4000


class JobStore(Protocol):
    async def claim_job(self) -> Job | None: ...

    async def mark_done(self, job_id: int) -> bool: ...

    async def mark_failed(self, job_id: int, failure_type: FailureType, last_error: str) -> bool: ...

    async def requeue(self, job_id: int, last_error: str, delay_seconds: float) -> bool: ...

    async def get_retry_state(self, job_id: int) -> JobRetryState: ...

    async def reap_stale_claims(self, *, timeout_seconds: float, limit: int) -> dict[str, int]: ...


class JobOutcome(str, Enum):
    DONE = "done"
    REQUEUED = "requeued"
    FAILED = "failed"
    UNRESOLVED = "unresolved"


@dataclass(slots=True)
class WorkerState:
    """Poll-loop flags, owned by one ``Worker`` and changed only by it and ``stop()``."""

    running: bool = False
    idle: bool = False
    error_idle: bool = False
    processed: int = 0


class Worker:
    """
    Sequential poll loop: claim one job, run it, resolve it, repeat.

    After a successful claim the loop immediately polls again so a backlog
    drains without delay. An empty claim or a failed iteration sleeps for
    ``poll_interval_seconds``. No single failure ends the loop; only
    ``stop()`` does, after the current iteration finishes.
    """

    def __init__(
        self,
        *,
        jobs: JobStore,
        handlers: Mapping[str, JobHandler],
        poll_interval_seconds: float = 0.75,
        retry_delay_seconds: float = RETRY_DELAY_SECONDS,
        stale_claim_timeout_seconds: float | None = None,
        stale_claim_sweep_interval_seconds: float = 30.0,
        stale_claim_batch_size: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.jobs = jobs
        self.handlers = handlers
        self.poll_interval_seconds = max(0.0, poll_interval_seconds)
        self.retry_delay_seconds = max(0.0, retry_delay_seconds)
        self.stale_claim_timeout_seconds = stale_claim_timeout_seconds
        self.stale_claim_sweep_interval_seconds = stale_claim_sweep_interval_seconds
        self.stale_claim_batch_size = stale_claim_batch_size
        self.state = WorkerState()
        self._clock = clock
        self._last_sweep_at: float | None = None
        self._stop_event = asyncio.Event()

    def stop(self) -> None:
        self.state.running = False
        self._stop_event.set()

    async def run(self) -> None:
        self.state.running = True
        self._stop_event.clear()
        logger.info("worker started poll_interval_seconds=%s", self.poll_interval_seconds)

        try:
            while self.state.running:
                try:
                    with tracer.start_as_current_span("worker.poll_cycle"):
                        await self.sweep_stale_claims()
                        claimed = await self.run_once()
                except Exception as exc:
                    if not self.state.error_idle:
                        logger.exception("error in poll loop: %s", exc)
                        self.state.error_idle = True
                    self.state.idle = False
                    await self._sleep(self.poll_interval_seconds)
                    continue

                if claimed:
                    self.state.idle = False
                    self.state.error_idle = False
                    continue

                if not self.state.idle:
                    logger.info("no jobs available")
                    self.state.idle = True
                self.state.error_idle = False
                await self._sleep(self.poll_interval_seconds)
        finally:
            self.state.running = False
            logger.info("worker stopped processed=%s", self.state.processed)

    async def run_once(self) -> bool:
        """Claim and process at most one job. Returns whether a job was claimed."""
        job = await self.jobs.claim_job()
        if job is None:
            return False

        logger.info(
            "job claimed job_id=%s event_type=%s attempts=%s max_attempts=%s",
            job.id,
            job.event_type,
            job.attempts,
            job.max_attempts,
        )
        await self.process_job(job)
        return True

    async def process_job(self, job: Job) -> JobOutcome:
        with tracer.start_as_current_span("worker.process_job") as span:
            span.set_attribute("job.id", job.id)
            span.set_attribute("job.event_type", job.event_type)
            span.set_attribute("job.attempts", job.attempts)

            try:
                result = await execute_job(job, handlers=self.handlers)
                if not await self.jobs.mark_done(job.id):
                    logger.warning("job left in_progress before completion job_id=%s", job.id)
            except Exception as exc:
                outcome = await self._resolve_failure(job, exc)
            else:
                outcome = JobOutcome.DONE
                if result.get("handled"):
                    logger.info("job completed job_id=%s event_type=%s", job.id, job.event_type)
                else:
                    logger.info("job skipped (unrecognized event_type) job_id=%s event_type=%s", job.id, job.event_type)

            span.set_attribute("job.outcome", outcome.value)
            self.state.processed += 1
            return outcome

    async def sweep_stale_claims(self) -> dict[str, int] | None:
        if self.stale_claim_timeout_seconds is None:
            return None

        now = self._clock()
        if self._last_sweep_at is not None and now - self._last_sweep_at < self.stale_claim_sweep_interval_seconds:
            return None
        self._last_sweep_at = now

        counts = await self.jobs.reap_stale_claims(
            timeout_seconds=self.stale_claim_timeout_seconds,
            limit=self.stale_claim_batch_size,
        )
        if counts.get("requeued") or counts.get("failed"):
            logger.warning(
                "released stale claims requeued=%s failed=%s",
                counts.get("requeued", 0),
                counts.get("failed", 0),
            )
        return counts

    async def _resolve_failure(self, job: Job, error: Exception) -> JobOutcome:
        failure_type = classify_failure(error)
        last_error = format_error(error)

        try:
            retry_state = await self.jobs.get_retry_state(job.id)
            if should_retry(retry_state.attempts, retry_state.max_attempts, failure_type):
                await self.jobs.requeue(job.id, last_error, self.retry_delay_seconds)
                logger.warning(
                    "job requeued job_id=%s attempts=%s max_attempts=%s delay_seconds=%s error=%s",
                    job.id,
                    retry_state.attempts,
                    retry_state.max_attempts,
                    self.retry_delay_seconds,
                    last_error,
                )
                return JobOutcome.REQUEUED

            await self.jobs.mark_failed(job.id, failure_type, last_error)
            logger.error(
                "job failed job_id=%s failure_type=%s attempts=%s max_attempts=%s error=%s",
                job.id,
                failure_type.value,
                retry_state.attempts,
                retry_state.max_attempts,
                last_error,
            )
            return JobOutcome.FAILED
        except Exception:
            logger.exception("failure handling failed job_id=%s; marking failed", job.id)

        try:
            await self.jobs.mark_failed(job.id, failure_type, last_error)
        except Exception:
            logger.exception("could not mark job failed job_id=%s", job.id)
            return JobOutcome.UNRESOLVED
        return JobOutcome.FAILED

    async def _sleep(self, seconds: float) -> None:
        if not self.state.running:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


def format_error(error: BaseException) -> str:
    message = str(error) or type(error).__name__
    return message[:MAX_ERROR_LENGTH]
