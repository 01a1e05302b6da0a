from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, StringConstraints

JobStatus = Literal["queued", "in_progress", "done", "failed"]
FailureType = Literal["retryable", "permanent"]
EffectStatus = Literal["pending", "succeeded", "failed"]

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class AdminJobOut(BaseModel):
    id: int
    status: JobStatus
    event_ledger_id: int
    event_type: str
    external_event_id: str
    created_at: datetime
    attempts: int
    max_attempts: int
    failure_type: FailureType | None = None
    last_error: str | None = None
    available_at: datetime


class AdminJobListOut(BaseModel):
    items: list[AdminJobOut]
    limit: int
    server_now: datetime


class RequeueJobRequest(BaseModel):
    actor: NonEmptyStr
    reason: NonEmptyStr


class InterventionAuditOut(BaseModel):
    id: int
    job_id: int
    action: str
    actor: str
    reason: str
    created_at: datetime


class RequeueJobOut(BaseModel):
    ok: bool = True
    id: int
    status: JobStatus
    available_at: datetime
    audit: InterventionAuditOut


class InterventionOut(BaseModel):
    audit: InterventionAuditOut
    job: AdminJobOut


class InterventionListOut(BaseModel):
    items: list[InterventionOut]
    limit: int
    server_now: datetime


class EffectOut(BaseModel):
    id: int
    idempotency_key: str
    subscription_id: str
    status: EffectStatus
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime


class EffectListOut(BaseModel):
    items: list[EffectOut]
    limit: int
