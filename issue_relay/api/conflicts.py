"""Conflict review and correlation endpoints"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel

from issue_relay.api.deps import get_relay
from issue_relay.relay import Relay

router = APIRouter(prefix="/api", tags=["conflicts"])


class ConflictResponse(BaseModel):
    id: int
    job_id: Optional[str] = None
    system_a_id: str
    system_b_id: str
    conflicting_fields: List[str]
    snapshot_a: Optional[Dict[str, Any]] = None
    snapshot_b: Optional[Dict[str, Any]] = None
    updated_at_a: Optional[str] = None
    updated_at_b: Optional[str] = None
    strategy: str
    resolution: str
    requires_manual_review: bool
    resolved: bool
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CorrelationResponse(BaseModel):
    system_a_id: str
    system_b_id: str
    last_synced_at: Optional[datetime] = None

    class Config:
        from_attributes = True


@router.get("/conflicts", response_model=List[ConflictResponse])
def list_conflicts(
    resolved: bool = None,
    manual_only: bool = False,
    limit: int = 100,
    relay: Relay = Depends(get_relay),
):
    """List conflicts"""
    return relay.conflicts.list(resolved=resolved, manual_only=manual_only, limit=limit)


@router.post("/conflicts/{conflict_id}/resolve", response_model=ConflictResponse)
def resolve_conflict(
    conflict_id: int,
    resolution: str = Body(..., embed=True),
    resolution_notes: Optional[str] = Body(None, embed=True),
    relay: Relay = Depends(get_relay),
):
    """Record the operator's decision on a conflict"""
    try:
        conflict = relay.conflicts.resolve(conflict_id, resolution, resolution_notes)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if conflict is None:
        raise HTTPException(status_code=404, detail="Conflict not found")
    return conflict


@router.get("/correlations", response_model=List[CorrelationResponse])
def list_correlations(limit: int = 100, offset: int = 0, relay: Relay = Depends(get_relay)):
    """List linked issue pairs"""
    return relay.correlations.list(limit=limit, offset=offset)
