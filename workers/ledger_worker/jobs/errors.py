"""
Failures raised while processing a claimed job.

PermanentJobError and its subclasses describe problems with the job's own
data; retrying cannot fix them. Anything else is treated as transient.
"""

from __future__ import annotations


class PermanentJobError(Exception):
    """Base class for failures that must not be retried."""


class EventLedgerNotFoundError(PermanentJobError):
    def __init__(self, event_ledger_id: int) -> None:
        self.event_ledger_id = event_ledger_id
        super().__init__(f"event ledger entry with id {event_ledger_id} not found")


class MalformedPayloadError(PermanentJobError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"malformed payload: {reason}")


class JobNotFoundError(Exception):
    """Raised when a job row disappears between claim and resolution."""

    def __init__(self, job_id: int) -> None:
        self.job_id = job_id
        super().__init__(f"job {job_id} not found")


class FailpointError(Exception):
    """Simulated transient failure injected by the dev failpoint."""

    def __init__(self) -> None:
        super().__init__("failpoint: simulated transient failure")
