from __future__ import annotations

from pydantic import ValidationError

from ledger_worker.jobs.errors import PermanentJobError
from ledger_worker.jobs.models import FailureType

PERMANENT_ERROR_TYPES: tuple[type[BaseException], ...] = (PermanentJobError, ValidationError)


def classify_failure(error: BaseException) -> FailureType:
    """
    Map a processing failure to a failure type.

    Only errors that describe the job's own data (missing ledger entry,
    malformed payload, validation failures) are permanent. Database,
    network and unknown errors are retryable.
    """
    if isinstance(error, PERMANENT_ERROR_TYPES):
        return FailureType.PERMANENT
    return FailureType.RETRYABLE
