"""AI job queue endpoints."""

import logging
from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, ValidationError

from pricewatch.api.deps import get_job_queue
from pricewatch.ai.schemas import JOB_KINDS
from pricewatch.worker.job_queue import AIJobQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


class JobResponse(BaseModel):
    """Response model for an AI job."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    status: str
    payload: dict[str, Any]
    cache_key: Optional[str]
    result: Optional[dict[str, Any]]
    error: Optional[str]
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime]


class EnqueueRequest(BaseModel):
    kind: str
    payload: dict[str, Any]
    cache_key: Optional[str] = None
    use_cache: bool = True


class DrainRequest(BaseModel):
    limit: Optional[int] = None


@router.post("", response_model=JobResponse, status_code=201)
async def enqueue_job(request: EnqueueRequest, queue: AIJobQueue = Depends(get_job_queue)):
    """Validate and enqueue an AI job."""
    if request.kind not in JOB_KINDS:
        raise HTTPException(status_code=422, detail=f"Unknown job kind: {request.kind}")
    try:
        job = await queue.enqueue(
            request.kind,
            request.payload,
            cache_key=request.cache_key,
            use_cache=request.use_cache,
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail=e.errors(include_url=False, include_context=False, include_input=False),
        )
    return job


@router.get("", response_model=List[JobResponse])
async def list_jobs(
    status: Optional[str] = None,
    limit: int = 50,
    queue: AIJobQueue = Depends(get_job_queue),
):
    """List AI jobs, newest first."""
    return await queue.list_jobs(status=status, limit=min(max(limit, 1), 500))


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: int, queue: AIJobQueue = Depends(get_job_queue)):
    """Get one AI job."""
    job = await queue.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/drain")
async def drain_jobs(
    request: DrainRequest | None = None,
    queue: AIJobQueue = Depends(get_job_queue),
):
    """Process up to `limit` pending jobs now."""
    limit = request.limit if request else None
    result = await queue.drain(limit)
    if not result.total:
        return {"message": "No pending jobs", **result.to_dict()}
    return result.to_dict()
