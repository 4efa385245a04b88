"""
Submission Service

Synchronous facade over the asynchronous job queue:
- validates render requests
- enforces the admission ceiling before anything is enqueued
- enqueues jobs and reports their status
- waits for a job to finish on behalf of a caller (enqueue-and-wait),
  woken by queue notifications with a fixed-interval poll as fallback
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

from render_service import get_profile

from .errors import (
    AdmissionError,
    ClientDisconnectedError,
    JobExecutionFailure,
    JobNotFoundError,
    ValidationError,
)
from .queue import Job, JobPayload, JobQueue, JobResult, JobState

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = {"completed", "failed"}
TRUTHY = {"true", "1", "yes", "on"}


@dataclass(frozen=True)
class TemplateFamily:
    """A set of CRM page templates rendered with one render profile."""

    name: str
    pages: Dict[str, str]          # template type -> path on DOMAIN
    render_profile: str
    default_type: str
    flags: Dict[str, bool] = field(default_factory=dict)  # query flags and defaults

    @property
    def allowed_types(self) -> List[str]:
        return list(self.pages)


STANDARD_TEMPLATES = TemplateFamily(
    name="standard",
    pages={
        "itineraryCrm": "/crm-itinerary-pdf",
        "itineraryCustom": "/crm-customTheme-pdf",
        "itineraryMain": "/pdf-preview",
        "invoice": "/invoice",
        "voucherMain": "/view-voucher",
        "voucherCrm": "/hotel-voucher",
    },
    render_profile="standard",
    default_type="itineraryCrm",
    flags={"waterMark": False, "mapViewButton": False},
)

PRINT_TEMPLATES = TemplateFamily(
    name="print",
    pages={"itineraryCrm": "/print-pdf-crm"},
    render_profile="print",
    default_type="itineraryCrm",
    flags={"waterMark": False, "mapViewButton": False},
)

MAGAZINE_TEMPLATES = TemplateFamily(
    name="magazine",
    pages={"magazinePro": "/crm-magazinePro"},
    render_profile="magazine",
    default_type="magazinePro",
    flags={"proTip": True, "energyMeter": True, "mapViewButton": False},
)


def parse_flag(value: Any) -> bool:
    """Interpret a query-string style flag ("true", "1", True...)."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUTHY


@dataclass
class JobStatus:
    """Status snapshot returned to API clients."""

    job_id: str
    state: JobState
    progress: int
    attempts_made: int
    max_attempts: int
    result: Optional[JobResult] = None
    failed_reason: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatus":
        return cls(
            job_id=job.job_id,
            state=job.state,
            progress=job.progress,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            result=job.result,
            failed_reason=job.failed_reason,
        )


class SubmissionService:
    """Front door for render requests."""

    def __init__(self, queue: JobQueue, settings):
        self.queue = queue
        self.settings = settings
        self._admission_lock = asyncio.Lock()

    # =========================================================================
    # Request building & validation
    # =========================================================================

    def build_template_payload(
        self,
        family: TemplateFamily,
        doc_id: Optional[str],
        doc_type: Optional[str] = None,
        flags: Optional[Dict[str, Any]] = None,
        owner_id: Optional[str] = None,
    ) -> JobPayload:
        """
        Build a job payload for a CRM template page.

        Args:
            family: Template family (standard, print, magazine)
            doc_id: CRM document id (itinerary/invoice/voucher id)
            doc_type: Template type within the family
            flags: Raw flag values from the request
            owner_id: Optional owner (user) id for the storage key

        Raises:
            ValidationError: Missing id or unknown template type
        """
        if not doc_id or not str(doc_id).strip():
            raise ValidationError("Missing ID")

        doc_type = doc_type or family.default_type
        path = family.pages.get(doc_type)
        if path is None:
            raise ValidationError("Invalid PDF type", allowed=family.allowed_types)

        flags = flags or {}
        options = {
            name: parse_flag(flags[name]) if flags.get(name) is not None else default
            for name, default in family.flags.items()
        }
        query = {"id": doc_id}
        query.update({name: "true" if value else "false" for name, value in options.items()})

        return JobPayload(
            url=f"{self.settings.domain}{path}?{urlencode(query)}",
            file_name=f"{doc_type}-{doc_id}",
            options=options,
            render_profile=family.render_profile,
            category=self.settings.storage_category,
            doc_type=doc_type,
            owner_id=owner_id or None,
        )

    def validate(self, payload: JobPayload) -> None:
        """
        Validate a payload before it is enqueued.

        Raises:
            ValidationError: Missing url/fileName or unknown render profile
        """
        if not isinstance(payload.url, str) or not payload.url.strip():
            raise ValidationError("Missing url")
        if not payload.url.startswith(("http://", "https://")):
            raise ValidationError(f"Invalid url: {payload.url}")
        if not isinstance(payload.file_name, str) or not payload.file_name.strip():
            raise ValidationError("Missing fileName")
        try:
            get_profile(payload.render_profile)
        except ValueError as e:
            raise ValidationError(str(e))

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(self, payload: JobPayload) -> Job:
        """
        Validate, apply admission control and enqueue.

        Returns:
            The queued Job (fire-and-return handle)

        Raises:
            ValidationError: Invalid payload
            AdmissionError: Outstanding jobs at or above the ceiling
        """
        self.validate(payload)

        ceiling = self.settings.admission_ceiling
        async with self._admission_lock:
            outstanding = await self.queue.count()
            if outstanding >= ceiling:
                logger.warning(
                    f"Rejecting {payload.file_name}: {outstanding}/{ceiling} jobs outstanding"
                )
                raise AdmissionError(
                    outstanding, ceiling, self.settings.admission_retry_after_seconds
                )
            return await self.queue.enqueue(payload)

    async def status(self, job_id: str) -> JobStatus:
        """
        Current status of a job.

        Raises:
            JobNotFoundError: Unknown id or pruned after retention
        """
        job = await self.queue.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return JobStatus.from_job(job)

    async def wait_for_result(
        self,
        job_id: str,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        timeout: Optional[float] = None,
    ) -> Job:
        """
        Wait until a job reaches a terminal state.

        Wakes on queue notifications for the job and re-reads the job at
        least every wait_poll_interval_seconds. The job record is the
        source of truth; notifications only shorten the wait.

        Args:
            job_id: Job to wait for
            is_disconnected: Async check for a vanished client, run every interval
            timeout: Max seconds to wait (defaults to wait_timeout_seconds)

        Returns:
            The completed Job

        Raises:
            JobExecutionFailure: The job terminally failed
            JobNotFoundError: The job disappeared
            ClientDisconnectedError: The caller went away
            asyncio.TimeoutError: No terminal state within the timeout
        """
        poll_interval = self.settings.wait_poll_interval_seconds
        if timeout is None:
            timeout = self.settings.wait_timeout_seconds

        wake = asyncio.Event()

        async def on_event(event: Dict[str, Any]) -> None:
            if event.get("job_id") == job_id and event.get("event") in TERMINAL_EVENTS:
                wake.set()

        self.queue.subscribe(on_event)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            while True:
                wake.clear()
                job = await self.queue.get_job(job_id)
                if job is None:
                    raise JobNotFoundError(job_id)
                if job.state == JobState.COMPLETED:
                    return job
                if job.state == JobState.FAILED:
                    raise JobExecutionFailure(
                        job_id, job.failed_reason or "unknown error", job.attempts_made
                    )

                if is_disconnected is not None and await is_disconnected():
                    logger.info(f"[{job_id}] Client disconnected, stopped waiting")
                    raise ClientDisconnectedError(f"Client disconnected while waiting for {job_id}")

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError(f"Job {job_id} not finished after {timeout}s")

                try:
                    await asyncio.wait_for(wake.wait(), timeout=min(poll_interval, remaining))
                except asyncio.TimeoutError:
                    pass
        finally:
            self.queue.unsubscribe(on_event)
