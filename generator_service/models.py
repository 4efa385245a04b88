"""
Pydantic models for the generator HTTP API.

These models define the structure for API requests and responses.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .submission import JobStatus


class GenerateRequest(BaseModel):
    """Request body for an asynchronous PDF job."""

    url: Optional[str] = Field(None, description="Page to render (required)")
    fileName: Optional[str] = Field(None, description="File name stem for the PDF (required)")
    options: Dict[str, Any] = Field(
        default_factory=dict,
        description="Rendering flags, e.g. {'waterMark': true, 'mapViewButton': false}"
    )
    renderProfile: str = Field(
        "standard", description="Render profile: 'standard', 'print' or 'magazine'"
    )
    type: Optional[str] = Field(None, description="Document type used in the storage key")
    ownerId: Optional[str] = Field(None, description="Owner id used in the storage key")


class JobHandleResponse(BaseModel):
    """Response after enqueuing a job."""

    jobId: str
    state: str
    statusUrl: str


class JobResultModel(BaseModel):
    """Result of a completed job."""

    status: str
    url: str
    size: int


class StatusResponse(BaseModel):
    """Status payload for a job."""

    jobId: str
    state: str
    progress: int
    attemptsMade: int
    maxAttempts: int
    result: Optional[JobResultModel] = None
    failedReason: Optional[str] = None

    @classmethod
    def from_status(cls, status: JobStatus) -> "StatusResponse":
        return cls(
            jobId=status.job_id,
            state=status.state.value,
            progress=status.progress,
            attemptsMade=status.attempts_made,
            maxAttempts=status.max_attempts,
            result=JobResultModel(**status.result.to_dict()) if status.result else None,
            failedReason=status.failed_reason,
        )


class ServiceInfoResponse(BaseModel):
    """Service identity for the root endpoint."""

    status: str = "online"
    service: str
    version: str
    timestamp: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    queue_connected: bool
    outstanding_jobs: Optional[int] = None
    admission_ceiling: int


class QueueStateResponse(BaseModel):
    """Per-state job counts."""

    queue: str
    counts: Dict[str, int]
    outstanding: int
    admission_ceiling: int
