"""Event ingress endpoint"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from issue_relay.api.deps import get_relay
from issue_relay.relay import Relay
from issue_relay.services.errors import EventValidationError

router = APIRouter(prefix="/api/events", tags=["events"])


class EventSubmission(BaseModel):
    direction: str
    event_type: str
    source_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Optional[int] = None
    delay_ms: Optional[int] = None
    event_timestamp: Optional[str] = None
    dedup_ttl: Optional[int] = None


@router.post("", status_code=202)
def submit_event(event: EventSubmission, relay: Relay = Depends(get_relay)):
    """Queue a normalized event for sync"""
    try:
        job_id = relay.submit_event(
            event.direction,
            event.event_type,
            event.source_id,
            event.payload,
            priority=event.priority,
            delay_ms=event.delay_ms,
            event_timestamp=event.event_timestamp,
            dedup_ttl=event.dedup_ttl,
        )
    except EventValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if job_id is None:
        return JSONResponse(status_code=200, content={"status": "duplicate", "job_id": None})
    return {"status": "queued", "job_id": job_id}
