from __future__ import annotations

from ledger_worker.jobs.models import FailureType

# fixed backoff added to now() on every requeue
RETRY_DELAY_SECONDS = 5.0


def should_retry(attempts: int, max_attempts: int, failure_type: FailureType | str) -> bool:
    # attempts already includes the increment made at claim time
    return FailureType(failure_type) is FailureType.RETRYABLE and attempts < max_attempts
