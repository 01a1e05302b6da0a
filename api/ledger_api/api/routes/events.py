import logging

from fastapi import APIRouter, Depends, HTTPException, status

from ledger_api.schemas.events import EventAccepted, IngestEventRequest
from ledger_api.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/ingest", response_model=EventAccepted, status_code=status.HTTP_202_ACCEPTED)
async def ingest_event(
    payload: IngestEventRequest,
    repository=Depends(get_repository),
) -> EventAccepted:
    try:
        created = await repository.ingest_event(
            event_id=payload.event_id,
            event_type=payload.event_type,
            raw_payload=payload.model_dump(mode="json"),
        )
    except RepositoryUnavailableError as exc:
        logger.warning(
            "event ingest failed event_id=%s event_type=%s error=%s",
            payload.event_id,
            payload.event_type,
            exc,
        )
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="database unavailable") from exc

    logger.info(
        "event ingested and job enqueued event_id=%s event_type=%s job_id=%s",
        payload.event_id,
        payload.event_type,
        created.get("job_id"),
    )
    return EventAccepted()
