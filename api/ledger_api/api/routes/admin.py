import logging

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from ledger_api.schemas.admin import (
    AdminJobListOut,
    AdminJobOut,
    EffectListOut,
    EffectOut,
    FailureType,
    InterventionListOut,
    InterventionOut,
    JobStatus,
    RequeueJobOut,
    RequeueJobRequest,
)
from ledger_api.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/jobs", response_model=AdminJobListOut)
async def list_jobs(
    repository=Depends(get_repository),
    job_status: JobStatus | None = Query(default=None, alias="status"),
    event_type: str | None = Query(default=None, min_length=1),
    external_event_id: str | None = Query(default=None, min_length=1),
    failure_type: FailureType | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
) -> AdminJobListOut:
    try:
        rows = await repository.list_jobs(
            status=job_status,
            event_type=event_type,
            external_event_id=external_event_id,
            failure_type=failure_type,
            limit=limit,
        )
        server_now = await repository.get_server_now()
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return AdminJobListOut(items=[AdminJobOut(**row) for row in rows], limit=limit, server_now=server_now)


@router.post("/jobs/{job_id}/requeue", response_model=RequeueJobOut)
async def requeue_job(
    payload: RequeueJobRequest,
    job_id: int = Path(gt=0),
    repository=Depends(get_repository),
) -> RequeueJobOut:
    try:
        result = await repository.requeue_failed_job(
            job_id=job_id,
            actor=payload.actor,
            reason=payload.reason,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"{exc}. Only failed jobs can be requeued.",
        ) from exc

    job = result["job"]
    audit = result["audit"]
    logger.info(
        "manual requeue job_id=%s action=%s actor=%s audit_id=%s",
        job_id,
        audit["action"],
        audit["actor"],
        audit["id"],
    )
    return RequeueJobOut(
        id=job["id"],
        status=job["status"],
        available_at=job["available_at"],
        audit=audit,
    )


@router.get("/interventions", response_model=InterventionListOut)
async def list_interventions(
    repository=Depends(get_repository),
    job_id: int | None = Query(default=None, gt=0),
    action: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=50, ge=1, le=200),
) -> InterventionListOut:
    try:
        rows = await repository.list_interventions(job_id=job_id, action=action, limit=limit)
        server_now = await repository.get_server_now()
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return InterventionListOut(
        items=[InterventionOut(**row) for row in rows],
        limit=limit,
        server_now=server_now,
    )


@router.get("/effects", response_model=EffectListOut)
async def list_effects(
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
) -> EffectListOut:
    try:
        rows = await repository.list_effects(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return EffectListOut(items=[EffectOut(**row) for row in rows], limit=limit)
