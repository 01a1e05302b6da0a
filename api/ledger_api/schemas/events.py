from typing import Annotated, Any

from pydantic import BaseModel, StringConstraints

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class IngestEventRequest(BaseModel):
    event_id: NonEmptyStr
    event_type: NonEmptyStr
    payload: dict[str, Any]


class EventAccepted(BaseModel):
    accepted: bool = True
