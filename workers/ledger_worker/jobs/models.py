from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping


class JobStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


class FailureType(str, Enum):
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


@dataclass(slots=True)
class Job:
    id: int
    status: JobStatus
    event_ledger_id: int
    event_type: str
    external_event_id: str
    attempts: int
    max_attempts: int
    created_at: datetime | None = None
    available_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Job":
        return cls(
            id=int(row["id"]),
            status=JobStatus(row["status"]),
            event_ledger_id=int(row["event_ledger_id"]),
            event_type=row["event_type"],
            external_event_id=row["external_event_id"],
            attempts=int(row["attempts"]),
            max_attempts=int(row["max_attempts"]),
            created_at=row.get("created_at"),
            available_at=row.get("available_at"),
        )


@dataclass(slots=True, frozen=True)
class JobRetryState:
    attempts: int
    max_attempts: int
