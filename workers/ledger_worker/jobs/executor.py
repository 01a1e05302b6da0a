from __future__ import annotations

from typing import Any, Mapping, Protocol

from ledger_worker.jobs.models import Job


class JobHandler(Protocol):
    event_type: str

    async def handle(self, job: Job) -> dict[str, Any]: ...


async def execute_job(job: Job, *, handlers: Mapping[str, JobHandler]) -> dict[str, Any]:
    handler = handlers.get(job.event_type)
    if handler is None:
        return {
            "handled": False,
            "event_type": job.event_type,
            "reason": "unrecognized_event_type",
        }
    return await handler.handle(job)
