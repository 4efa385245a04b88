"""
Queue Endpoints

Read-only queue counts plus a manual retry for terminally failed jobs.
Retry is guarded by the shared bearer secret when one is configured.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from ..auth import verify_token
from ..context import ServiceContext
from ..dependencies import get_context
from ..models import JobHandleResponse, QueueStateResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queue", tags=["queue"])


@router.get("/state", response_model=QueueStateResponse)
async def queue_state(context: ServiceContext = Depends(get_context)) -> QueueStateResponse:
    """Per-state job counts for dashboards."""
    counts = await context.queue.get_counts()
    return QueueStateResponse(
        queue=context.queue.name,
        counts=counts,
        outstanding=await context.queue.count(),
        admission_ceiling=context.settings.admission_ceiling,
    )


@router.post(
    "/{job_id}/retry",
    response_model=JobHandleResponse,
    dependencies=[Depends(verify_token)],
)
async def retry_job(
    job_id: str,
    context: ServiceContext = Depends(get_context),
) -> JobHandleResponse:
    """Re-queue a failed job with its attempt count reset."""
    job = await context.queue.retry(job_id)
    if job is None:
        raise HTTPException(
            status_code=409,
            detail=f"Job {job_id} is not in a failed state (or does not exist)",
        )
    logger.info(f"[{job_id}] Re-queued by operator")
    return JobHandleResponse(
        jobId=job.job_id,
        state=job.state.value,
        statusUrl=f"/status/{job.job_id}",
    )
