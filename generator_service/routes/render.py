"""
Render Endpoints

- POST /generate            enqueue a job, return a handle (202)
- GET  /status/{job_id}     job state, progress and result
- GET  /generate-now        enqueue-and-wait, redirect to the stored PDF
- GET  /generate-now-print  same, fixed A4 print layout
- GET  /magazinePro         same, magazine layout

The enqueue-and-wait endpoints keep the request open until the job is
terminal. A finished job answers 302 to the public PDF URL.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from ..context import ServiceContext
from ..dependencies import get_context
from ..errors import ClientDisconnectedError
from ..models import GenerateRequest, JobHandleResponse, StatusResponse
from ..queue import JobPayload
from ..submission import (
    MAGAZINE_TEMPLATES,
    PRINT_TEMPLATES,
    STANDARD_TEMPLATES,
    TemplateFamily,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["render"])

# Non-standard "client closed request"; nobody reads it
CLIENT_CLOSED_REQUEST = 499


def _status_url(job_id: str) -> str:
    """Build relative status URL."""
    return f"/status/{job_id}"


@router.post("/generate", response_model=JobHandleResponse, status_code=202)
async def generate(
    body: GenerateRequest,
    context: ServiceContext = Depends(get_context),
) -> JobHandleResponse:
    """
    Enqueue a render job for an arbitrary URL.

    Returns immediately with a job handle; poll the status URL for the result.
    """
    payload = JobPayload(
        url=body.url or "",
        file_name=body.fileName or "",
        options=body.options,
        render_profile=body.renderProfile,
        category=context.settings.storage_category,
        doc_type=body.type,
        owner_id=body.ownerId,
    )
    job = await context.submission.submit(payload)
    logger.info(f"[{job.job_id}] Enqueued {payload.file_name} ({payload.render_profile})")
    return JobHandleResponse(
        jobId=job.job_id,
        state=job.state.value,
        statusUrl=_status_url(job.job_id),
    )


@router.get("/status/{job_id}", response_model=StatusResponse)
async def get_status(
    job_id: str,
    context: ServiceContext = Depends(get_context),
) -> StatusResponse:
    """Report a job's state. Unknown or pruned jobs are 404."""
    status = await context.submission.status(job_id)
    return StatusResponse.from_status(status)


async def _enqueue_and_redirect(
    request: Request,
    context: ServiceContext,
    family: TemplateFamily,
    doc_id: Optional[str],
    doc_type: Optional[str],
    owner_id: Optional[str],
) -> Response:
    flags = {name: request.query_params.get(name) for name in family.flags}
    payload = context.submission.build_template_payload(
        family, doc_id, doc_type=doc_type, flags=flags, owner_id=owner_id
    )
    job = await context.submission.submit(payload)
    logger.info(f"[{job.job_id}] Waiting for {payload.file_name} ({family.name})")

    try:
        finished = await context.submission.wait_for_result(
            job.job_id, is_disconnected=request.is_disconnected
        )
    except ClientDisconnectedError:
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    except asyncio.TimeoutError:
        logger.warning(f"[{job.job_id}] Still running when the wait timed out")
        return JSONResponse(
            status_code=504,
            content={
                "error": "PDF generation timed out",
                "jobId": job.job_id,
                "statusUrl": _status_url(job.job_id),
            },
        )

    logger.info(f"[{job.job_id}] Redirecting to {finished.result.url}")
    return RedirectResponse(finished.result.url, status_code=302)


@router.get("/generate-now")
async def generate_now(
    request: Request,
    doc_id: Optional[str] = Query(None, alias="id"),
    doc_type: Optional[str] = Query(None, alias="type"),
    user_id: Optional[str] = Query(None, alias="userId"),
    context: ServiceContext = Depends(get_context),
) -> Response:
    """Render an itinerary, invoice or voucher page and redirect to the PDF."""
    return await _enqueue_and_redirect(
        request, context, STANDARD_TEMPLATES, doc_id, doc_type, user_id
    )


@router.get("/generate-now-print")
async def generate_now_print(
    request: Request,
    doc_id: Optional[str] = Query(None, alias="id"),
    doc_type: Optional[str] = Query(None, alias="type"),
    user_id: Optional[str] = Query(None, alias="userId"),
    context: ServiceContext = Depends(get_context),
) -> Response:
    """Render the print (A4) itinerary layout and redirect to the PDF."""
    return await _enqueue_and_redirect(
        request, context, PRINT_TEMPLATES, doc_id, doc_type, user_id
    )


@router.get("/magazinePro")
async def magazine_pro(
    request: Request,
    doc_id: Optional[str] = Query(None, alias="id"),
    user_id: Optional[str] = Query(None, alias="userId"),
    context: ServiceContext = Depends(get_context),
) -> Response:
    """Render the magazine itinerary layout and redirect to the PDF."""
    return await _enqueue_and_redirect(
        request, context, MAGAZINE_TEMPLATES, doc_id, None, user_id
    )
