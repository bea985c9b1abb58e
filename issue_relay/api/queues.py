"""Queue inspection and dead-letter endpoints"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from issue_relay.api.deps import get_relay
from issue_relay.relay import Relay
from issue_relay.services.errors import JobNotFound
from issue_relay.services.job_queue import QUEUE_NAMES

router = APIRouter(prefix="/api/queues", tags=["queues"])


class JobResponse(BaseModel):
    id: str
    queue_name: str
    direction: str
    event_type: str
    source_id: str
    target_id: Optional[str] = None
    status: str
    retry_count: int
    max_attempts: int
    error: Optional[str] = None
    metadata: Dict[str, Any] = {}
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job) -> "JobResponse":
        return cls(
            id=job.id,
            queue_name=job.queue_name,
            direction=job.direction.value,
            event_type=job.event_type.value,
            source_id=job.source_id,
            target_id=job.target_id,
            status=job.status.value,
            retry_count=job.retry_count,
            max_attempts=job.max_attempts,
            error=job.error,
            metadata=job.metadata,
            created_at=job.created_at,
            updated_at=job.updated_at,
            processed_at=job.processed_at,
        )


@router.get("")
def get_queue_stats(relay: Relay = Depends(get_relay)):
    """Point-in-time counts per direction queue"""
    return relay.get_queue_stats()


@router.get("/{queue_name}/failed", response_model=List[JobResponse])
def list_failed_jobs(queue_name: str, limit: int = 100, relay: Relay = Depends(get_relay)):
    """Terminal-failed jobs kept for inspection"""
    if queue_name not in QUEUE_NAMES:
        raise HTTPException(status_code=404, detail="Queue not found")
    return [JobResponse.from_job(job) for job in relay.queue.list_failed(queue_name, limit=limit)]


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: str, relay: Relay = Depends(get_relay)):
    try:
        job = relay.queue.get(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse.from_job(job)


@router.post("/jobs/{job_id}/retry")
def retry_job(job_id: str, relay: Relay = Depends(get_relay)):
    """Re-queue a failed job with a fresh retry budget"""
    if not relay.queue.retry_failed(job_id):
        raise HTTPException(status_code=409, detail="Job is not in the failed state")
    return {"status": "queued", "job_id": job_id}


@router.delete("/jobs/{job_id}")
def cancel_job(job_id: str, relay: Relay = Depends(get_relay)):
    """Cancel a job that no worker has picked up yet"""
    if not relay.queue.cancel(job_id):
        raise HTTPException(status_code=409, detail="Job is not waiting")
    return {"status": "cancelled", "job_id": job_id}
