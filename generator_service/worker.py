"""
PDF Worker

Single-concurrency consumer of the job queue. Each job runs a fixed
two-phase pipeline:

1. Render the job URL to PDF bytes (Render Collaborator)
2. Upload the bytes to object storage (Object Store Collaborator)

The worker never retries a job itself. Any failure is reported to the
queue, whose retry policy decides whether the job runs again. Concurrency
stays at 1: Chromium is too heavy to run several instances in one container.
"""

import asyncio
import logging
import signal
import traceback
from typing import Optional

from render_service import PdfRenderer, RenderError, get_profile

from .config import GeneratorSettings, validate_config_on_startup
from .context import ServiceContext
from .errors import LockLostError, RateLimitedError
from .queue import ClaimedJob, Job, JobQueue, JobResult
from .storage import ObjectStore, build_storage_key

logger = logging.getLogger(__name__)

PROGRESS_STARTED = 10
PROGRESS_RENDERED = 60
PROGRESS_UPLOADED = 100


class PdfWorker:
    """Pulls one job at a time from the queue and runs render -> upload."""

    def __init__(
        self,
        queue: JobQueue,
        renderer: PdfRenderer,
        store: ObjectStore,
        idle_seconds: float = 1.0,
        stalled_check_seconds: float = 30.0,
    ):
        self.queue = queue
        self.renderer = renderer
        self.store = store
        self.idle_seconds = idle_seconds
        self.stalled_check_seconds = stalled_check_seconds
        self.current_job_id: Optional[str] = None
        self.completed_count = 0
        self.failed_count = 0
        self._stop = asyncio.Event()

    @classmethod
    def from_context(cls, context: ServiceContext, renderer: PdfRenderer) -> "PdfWorker":
        if context.store is None:
            raise ValueError("Worker context needs an object store")
        return cls(
            queue=context.queue,
            renderer=renderer,
            store=context.store,
            idle_seconds=context.settings.worker_idle_seconds,
            stalled_check_seconds=context.settings.stalled_check_seconds,
        )

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def process(self, claimed: ClaimedJob) -> JobResult:
        """
        Run render -> upload for one claimed job.

        Raises whatever the collaborators raise; nothing is swallowed.
        """
        job = claimed.job
        payload = job.payload

        await self._report_progress(claimed, PROGRESS_STARTED)

        profile = get_profile(payload.render_profile)
        logger.info(f"[{job.job_id}] Generating PDF ({profile.name}) for {payload.url}")
        pdf_bytes = await self.renderer.render(payload.url, profile)
        if not pdf_bytes:
            raise RenderError("Generated PDF buffer is empty", url=payload.url)

        logger.info(f"[{job.job_id}] PDF size: {len(pdf_bytes)} bytes")
        await self._report_progress(claimed, PROGRESS_RENDERED)

        key = build_storage_key(payload)
        public_url = await self.store.store(pdf_bytes, key)

        await self._report_progress(claimed, PROGRESS_UPLOADED)
        return JobResult(url=public_url, size=len(pdf_bytes))

    async def execute(self, claimed: ClaimedJob) -> Optional[Job]:
        """
        Process a claimed job and report the outcome to the queue.

        Every claimed job ends in complete() or fail(); the only exception is
        a lost lock, in which case the queue has already re-delivered it.

        Returns:
            The updated Job, or None if the lock was lost
        """
        job_id = claimed.job_id
        self.current_job_id = job_id
        logger.info(f"[JOB START] {job_id} (attempt {claimed.job.attempts_made})")
        heartbeat = asyncio.create_task(self._keep_lock(claimed))

        try:
            try:
                result = await self.process(claimed)
            except Exception as exc:
                await self._stop_heartbeat(heartbeat)
                reason = f"{type(exc).__name__}: {exc}"
                logger.error(f"[JOB FAILED] {job_id}: {reason}")
                logger.debug(f"[{job_id}] Traceback:\n{traceback.format_exc()}")
                self.failed_count += 1
                return await self._settle(self.queue.fail(job_id, claimed.token, reason), job_id)

            await self._stop_heartbeat(heartbeat)
            self.completed_count += 1
            logger.info(f"[JOB DONE] {job_id} -> {result.url}")
            return await self._settle(self.queue.complete(job_id, claimed.token, result), job_id)
        finally:
            await self._stop_heartbeat(heartbeat)
            self.current_job_id = None

    async def _settle(self, report, job_id: str) -> Optional[Job]:
        try:
            return await report
        except LockLostError:
            logger.warning(f"[{job_id}] Lock expired before the result was recorded, discarded")
            return None

    async def _report_progress(self, claimed: ClaimedJob, progress: int) -> None:
        await self.queue.update_progress(claimed.job_id, claimed.token, progress)

    async def _stop_heartbeat(self, heartbeat: asyncio.Task) -> None:
        heartbeat.cancel()
        try:
            await heartbeat
        except asyncio.CancelledError:
            pass

    async def _keep_lock(self, claimed: ClaimedJob) -> None:
        """Extend the job lock every half lock period until cancelled or lost."""
        interval = self.queue.lock_duration_ms / 2000
        while True:
            await asyncio.sleep(interval)
            try:
                extended = await self.queue.extend_lock(claimed.job_id, claimed.token)
            except Exception as e:
                logger.warning(f"[{claimed.job_id}] Could not extend lock: {e}")
                continue
            if not extended:
                logger.warning(f"[{claimed.job_id}] Lock lost while running")
                return

    # =========================================================================
    # Loop
    # =========================================================================

    async def run_once(self) -> bool:
        """
        Claim and execute at most one job.

        Returns:
            True if a job was executed

        Raises:
            RateLimitedError: Activation window full
        """
        claimed = await self.queue.claim_next()
        if claimed is None:
            return False
        await self.execute(claimed)
        return True

    async def run(self) -> None:
        """Consume jobs until stop() is called."""
        logger.info("PDF worker started & listening…")
        loop = asyncio.get_running_loop()
        last_maintenance = float("-inf")

        while not self._stop.is_set():
            if loop.time() - last_maintenance >= self.stalled_check_seconds:
                await self.maintenance()
                last_maintenance = loop.time()

            try:
                worked = await self.run_once()
            except RateLimitedError as e:
                await self._sleep(e.retry_after_ms / 1000)
                continue
            except Exception as e:
                logger.error(f"Worker internal error: {e}")
                await self._sleep(self.idle_seconds)
                continue

            if not worked:
                await self._sleep(self.idle_seconds)

        logger.info(
            f"PDF worker stopped (completed={self.completed_count}, failed={self.failed_count})"
        )

    async def maintenance(self) -> None:
        """Recover stalled jobs and trim the completed index."""
        try:
            recovered = await self.queue.recover_stalled()
            if recovered:
                logger.warning(f"Recovered {len(recovered)} stalled job(s)")
            await self.queue.prune_completed()
        except Exception as e:
            logger.error(f"Queue maintenance failed: {e}")

    def stop(self) -> None:
        """Ask the loop to exit after the current job."""
        logger.info("Stopping PDF worker…")
        self._stop.set()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


async def run_worker(settings: Optional[GeneratorSettings] = None) -> None:
    """Build the worker's context, run until SIGINT/SIGTERM, then clean up."""
    settings = validate_config_on_startup(settings)
    context = ServiceContext.build(settings, with_store=True)
    await context.start()

    worker = PdfWorker.from_context(context, PdfRenderer())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            pass  # Windows

    try:
        await worker.run()
    finally:
        await context.close()
