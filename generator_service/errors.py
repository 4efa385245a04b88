"""
Error taxonomy for the PDF generator.

Request-side errors (ValidationError, AdmissionError) are raised before
anything is enqueued. Execution errors (RenderError, StoreError) are raised
inside the worker after their own retries are exhausted and end up as a
JobExecutionFailure recorded on the job.

Every error defined here derives from PdfGeneratorError. RenderError is the
exception: it belongs to render_service, which does not depend on this
package, so it derives from Exception and is only re-exported here.
"""

from typing import Dict, List, Optional

from render_service import RenderError


class PdfGeneratorError(Exception):
    """Base class for all generator errors."""


class ValidationError(PdfGeneratorError):
    """Missing or invalid request field. Never enqueued, never retried."""

    def __init__(self, message: str, allowed: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.allowed = allowed

    def to_dict(self) -> Dict:
        payload = {"error": self.message}
        if self.allowed:
            payload["allowedTypes"] = self.allowed
        return payload


class AdmissionError(PdfGeneratorError):
    """Queue is over its outstanding-job ceiling. Client should retry later."""

    def __init__(self, outstanding: int, ceiling: int, retry_after: int):
        super().__init__(
            f"Queue is at capacity ({outstanding}/{ceiling} outstanding jobs). "
            f"Retry in {retry_after}s."
        )
        self.outstanding = outstanding
        self.ceiling = ceiling
        self.retry_after = retry_after


class StoreError(PdfGeneratorError):
    """Upload failed after all request-level retries."""

    def __init__(self, message: str, key: Optional[str] = None, attempts: int = 0):
        super().__init__(message)
        self.key = key
        self.attempts = attempts


class JobExecutionFailure(PdfGeneratorError):
    """Terminal failure of a job once the queue has no attempts left."""

    def __init__(self, job_id: str, reason: str, attempts_made: int):
        super().__init__(f"Job {job_id} failed after {attempts_made} attempts: {reason}")
        self.job_id = job_id
        self.reason = reason
        self.attempts_made = attempts_made


class JobNotFoundError(PdfGeneratorError):
    """Unknown job id, or the job was pruned after its retention window."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class LockLostError(PdfGeneratorError):
    """The caller no longer owns the job lock (it expired and was re-delivered)."""

    def __init__(self, job_id: str):
        super().__init__(f"Lock for job {job_id} is missing or owned by another worker")
        self.job_id = job_id


class RateLimitedError(PdfGeneratorError):
    """Activation rate limit reached; the next activation must wait."""

    def __init__(self, retry_after_ms: int):
        super().__init__(f"Rate limit reached, retry in {retry_after_ms}ms")
        self.retry_after_ms = retry_after_ms


class ClientDisconnectedError(PdfGeneratorError):
    """The HTTP client went away while waiting for a job result."""


__all__ = [
    "AdmissionError",
    "ClientDisconnectedError",
    "JobExecutionFailure",
    "JobNotFoundError",
    "LockLostError",
    "PdfGeneratorError",
    "RateLimitedError",
    "RenderError",
    "StoreError",
    "ValidationError",
]
