"""
Redis Job Queue

Persistent work queue for PDF jobs backed by Redis.
Handles the job lifecycle: enqueue, claim, progress, complete, fail with
backoff-delayed retry, stalled-job recovery and retention.
Publishes lifecycle events (fire-and-forget) over Redis pub/sub.

Ordering: jobs are claimed roughly oldest-first, but retries rejoin the
back of the line and several producers/workers interleave freely, so
consumers must not rely on strict FIFO order.
"""

import asyncio
import json
import logging
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Coroutine, Dict, List, Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis

from ..errors import JobNotFoundError, LockLostError, RateLimitedError
from .limiter import RateLimiter
from .models import (
    BackoffPolicy,
    ClaimedJob,
    Job,
    JobOptions,
    JobPayload,
    JobResult,
    JobState,
    utcnow,
)

logger = logging.getLogger(__name__)

EventCallback = Callable[[Dict[str, Any]], Coroutine[Any, Any, None]]


def _now_ms() -> int:
    return int(time.time() * 1000)


class JobQueue:
    """
    Manages the persistent job queue in Redis.

    Uses Redis data structures (all keys prefixed with "pdf:<queue name>"):
    - LIST  :wait       job ids ready to run (LPUSH in, LMOVE out)
    - LIST  :active     job ids claimed by a worker
    - ZSET  :delayed    retries waiting for their backoff (score = ready ms)
    - ZSET  :completed  completed job ids (score = finish ms), pruned
    - ZSET  :failed     terminally failed job ids (score = finish ms)
    - ZSET  :stalled    active ids first seen without a lock (score = seen ms)
    - HASH  :job:<id>   job record
    - STRING :lock:<id> lock token of the worker executing the job
    - STRING :limiter   activation counter for the rate limiter
    - Pub/Sub :events   lifecycle notifications
    """

    def __init__(
        self,
        redis_url: str,
        name: str = "pdf-generation",
        default_options: Optional[JobOptions] = None,
        limiter_max: int = 10,
        limiter_duration_ms: int = 1000,
        lock_duration_ms: int = 180000,
        stalled_grace_ms: int = 5000,
        redis: Optional[Redis] = None,
    ):
        """
        Initialize the job queue.

        Args:
            redis_url: Redis connection URL
            name: Queue name (key namespace)
            default_options: Options applied to every enqueued job
            limiter_max: Activations allowed per limiter window
            limiter_duration_ms: Limiter window in milliseconds
            lock_duration_ms: Lock lifetime; jobs whose lock expires are stalled
            stalled_grace_ms: How long an active id must stay unlocked before
                it is treated as stalled
            redis: Pre-built client (skips connect())
        """
        self.redis_url = redis_url
        self.name = name
        self.default_options = default_options or JobOptions()
        self.limiter_max = limiter_max
        self.limiter_duration_ms = limiter_duration_ms
        self.lock_duration_ms = lock_duration_ms
        self.stalled_grace_ms = stalled_grace_ms
        self.instance_id = uuid.uuid4().hex[:8]

        prefix = f"pdf:{name}"
        self.wait_key = f"{prefix}:wait"
        self.active_key = f"{prefix}:active"
        self.delayed_key = f"{prefix}:delayed"
        self.completed_key = f"{prefix}:completed"
        self.failed_key = f"{prefix}:failed"
        self.stalled_key = f"{prefix}:stalled"
        self.job_prefix = f"{prefix}:job:"
        self.lock_prefix = f"{prefix}:lock:"
        self.limiter_key = f"{prefix}:limiter"
        self.events_channel = f"{prefix}:events"

        self._redis: Optional[Redis] = redis
        self._connected = redis is not None
        self._limiter: Optional[RateLimiter] = None
        self._subscribers: List[EventCallback] = []
        self._pubsub = None
        self._listener_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings, redis: Optional[Redis] = None) -> "JobQueue":
        """Build a queue from GeneratorSettings."""
        return cls(
            redis_url=settings.redis_url,
            name=settings.queue_name,
            default_options=JobOptions(
                max_attempts=settings.max_attempts,
                backoff=BackoffPolicy(base_ms=settings.backoff_base_ms),
                completed_retention_seconds=settings.completed_retention_seconds,
                failed_retention_seconds=settings.failed_retention_seconds,
            ),
            limiter_max=settings.limiter_max,
            limiter_duration_ms=settings.limiter_duration_ms,
            lock_duration_ms=settings.lock_duration_ms,
            redis=redis,
        )

    # =========================================================================
    # Connection
    # =========================================================================

    async def connect(self) -> None:
        """Establish Redis connection."""
        if self._redis is not None and self._connected:
            return
        try:
            self._redis = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self._redis.ping()
            self._connected = True
            logger.info(f"Job queue '{self.name}' connected to Redis")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self._connected = False
            raise

    async def disconnect(self) -> None:
        """Stop the event listener and close the Redis connection."""
        await self.stop_listener()
        if self._redis:
            await self._redis.close()
            self._redis = None
            self._connected = False
            logger.info(f"Job queue '{self.name}' disconnected from Redis")

    @property
    def is_connected(self) -> bool:
        """Check if connected to Redis."""
        return self._connected and self._redis is not None

    def _client(self) -> Redis:
        if not self._redis:
            raise RuntimeError("Job queue not connected")
        return self._redis

    @property
    def limiter(self) -> RateLimiter:
        if self._limiter is None:
            self._limiter = RateLimiter(
                self._client(), self.limiter_key, self.limiter_max, self.limiter_duration_ms
            )
        return self._limiter

    # =========================================================================
    # Producer side
    # =========================================================================

    async def enqueue(
        self,
        payload: JobPayload,
        options: Optional[JobOptions] = None,
    ) -> Job:
        """
        Add a job to the queue.

        No validation happens here; callers validate the payload.

        Args:
            payload: What to render and where to store it
            options: Per-job options (defaults to the queue's options)

        Returns:
            Created Job in state queued
        """
        redis = self._client()
        options = options or self.default_options

        job = Job(
            job_id=f"pdf_{uuid.uuid4().hex[:16]}",
            payload=payload,
            state=JobState.QUEUED,
            created_at=utcnow(),
            max_attempts=options.max_attempts,
            backoff=options.backoff,
            completed_retention_seconds=options.completed_retention_seconds,
            failed_retention_seconds=options.failed_retention_seconds,
        )

        await redis.hset(self._job_key(job.job_id), mapping=job.to_redis_hash())
        await redis.lpush(self.wait_key, job.job_id)

        await self._publish_event("added", job.job_id, url=payload.url)
        logger.info(f"[{job.job_id}] Enqueued {payload.file_name} -> {payload.url}")
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        """
        Get a job by ID.

        Returns:
            Job or None if unknown or already pruned
        """
        if not self._redis:
            return None

        data = await self._redis.hgetall(self._job_key(job_id))
        if not data:
            return None
        return Job.from_dict(job_id, data)

    async def count(self) -> int:
        """Outstanding jobs: waiting, delayed and active."""
        redis = self._client()
        waiting = await redis.llen(self.wait_key)
        active = await redis.llen(self.active_key)
        delayed = await redis.zcard(self.delayed_key)
        return waiting + active + delayed

    async def get_counts(self) -> Dict[str, int]:
        """Per-state job counts for inspection."""
        redis = self._client()
        return {
            "waiting": await redis.llen(self.wait_key),
            "active": await redis.llen(self.active_key),
            "delayed": await redis.zcard(self.delayed_key),
            "completed": await redis.zcard(self.completed_key),
            "failed": await redis.zcard(self.failed_key),
        }

    # =========================================================================
    # Consumer side
    # =========================================================================

    async def claim_next(self) -> Optional[ClaimedJob]:
        """
        Claim the next ready job for execution.

        Promotes due retries, applies the rate limiter, then atomically
        moves one job id from wait to active and locks it.

        Returns:
            ClaimedJob or None if nothing is ready

        Raises:
            RateLimitedError: Activation window is full; retry later
        """
        redis = self._client()
        await self.promote_delayed()

        if not await redis.llen(self.wait_key):
            return None

        retry_after_ms = await self.limiter.acquire()
        if retry_after_ms > 0:
            raise RateLimitedError(retry_after_ms)

        # LMOVE is atomic: a job id can only be taken by one worker
        job_id = await redis.lmove(self.wait_key, self.active_key, "RIGHT", "LEFT")
        if not job_id:
            return None

        # recover_stalled can see the id here before the lock exists; it only
        # marks it, and the mark is cleared once the lock is in place
        token = uuid.uuid4().hex
        await redis.set(self._lock_key(job_id), token, px=self.lock_duration_ms)
        await redis.zrem(self.stalled_key, job_id)

        job = await self.get_job(job_id)
        if not job:
            logger.warning(f"[{job_id}] Job data missing after claim, dropping")
            await redis.lrem(self.active_key, 1, job_id)
            await redis.delete(self._lock_key(job_id))
            return None

        job.state = JobState.ACTIVE
        job.attempts_made += 1
        job.progress = 0
        job.started_at = utcnow()
        job.available_at = None
        await self._save(job)

        await self._publish_event("active", job_id, attempts_made=job.attempts_made)
        logger.info(f"[{job_id}] Claimed (attempt {job.attempts_made}/{job.max_attempts})")
        return ClaimedJob(job=job, token=token)

    async def update_progress(self, job_id: str, token: str, progress: int) -> bool:
        """
        Record advisory progress (0-100, never decreasing).

        Returns:
            False if the caller lost the lock; progress is not written then
        """
        redis = self._client()
        if not await self._owns_lock(job_id, token):
            logger.warning(f"[{job_id}] Progress update ignored, lock lost")
            return False

        current = int(await redis.hget(self._job_key(job_id), "progress") or 0)
        value = max(current, min(max(int(progress), 0), 100))
        await redis.hset(self._job_key(job_id), mapping={"progress": str(value)})
        await self._publish_event("progress", job_id, progress=value)
        return True

    async def extend_lock(self, job_id: str, token: str) -> bool:
        """
        Push the lock expiry out by another lock_duration_ms.

        Called periodically by the worker while a job runs, so long renders
        are not mistaken for stalled jobs.

        Returns:
            False if the lock is already gone or held by another token
        """
        if not await self._owns_lock(job_id, token):
            return False
        return bool(await self._client().pexpire(self._lock_key(job_id), self.lock_duration_ms))

    async def complete(self, job_id: str, token: str, result: JobResult) -> Job:
        """
        Mark a claimed job as completed with its result.

        Raises:
            LockLostError: The lock expired and the job was handed out again
            JobNotFoundError: The job record is gone
        """
        redis = self._client()
        if not await self._owns_lock(job_id, token):
            raise LockLostError(job_id)

        job = await self.get_job(job_id)
        if not job:
            raise JobNotFoundError(job_id)

        job.state = JobState.COMPLETED
        job.progress = 100
        job.result = result
        job.failed_reason = None
        job.finished_at = utcnow()
        await self._save(job)

        await redis.lrem(self.active_key, 1, job_id)
        await redis.delete(self._lock_key(job_id))
        await redis.zadd(self.completed_key, {job_id: _now_ms()})
        if job.completed_retention_seconds > 0:
            await redis.expire(self._job_key(job_id), job.completed_retention_seconds)

        await self._publish_event("completed", job_id, result=result.to_dict())
        logger.info(f"[{job_id}] Completed -> {result.url} ({result.size} bytes)")
        await self._publish_drained_if_empty()
        return job

    async def fail(self, job_id: str, token: str, reason: str) -> Job:
        """
        Report a failed execution attempt.

        The job is delayed and re-queued while attempts remain, otherwise it
        becomes terminally failed.

        Raises:
            LockLostError: The lock expired and the job was handed out again
            JobNotFoundError: The job record is gone
        """
        redis = self._client()
        if not await self._owns_lock(job_id, token):
            raise LockLostError(job_id)

        job = await self.get_job(job_id)
        if not job:
            raise JobNotFoundError(job_id)

        await redis.lrem(self.active_key, 1, job_id)
        await redis.delete(self._lock_key(job_id))

        job = await self._handle_failure(job, reason)
        await self._publish_drained_if_empty()
        return job

    async def promote_delayed(self) -> int:
        """
        Move retries whose backoff has elapsed back to the wait list.

        Returns:
            Number of promoted jobs
        """
        redis = self._client()
        due = await redis.zrangebyscore(self.delayed_key, 0, _now_ms())
        promoted = 0
        for job_id in due:
            # ZREM result decides which caller promotes the job
            if await redis.zrem(self.delayed_key, job_id):
                await redis.lpush(self.wait_key, job_id)
                promoted += 1
        if promoted:
            logger.info(f"Promoted {promoted} delayed job(s)")
        return promoted

    async def recover_stalled(self) -> List[str]:
        """
        Handle active jobs whose lock expired (worker died or hung).

        Each one counts as a failed attempt and goes through the normal
        retry policy, so it is re-delivered while attempts remain.

        An unlocked id is first only marked. It is recovered on a later
        pass, once it has stayed unlocked for stalled_grace_ms. A job that is
        between LMOVE and its lock in claim_next is therefore never taken.

        Returns:
            IDs of recovered jobs
        """
        redis = self._client()
        recovered = []
        now = _now_ms()

        for job_id in await redis.lrange(self.active_key, 0, -1):
            if await redis.exists(self._lock_key(job_id)):
                await redis.zrem(self.stalled_key, job_id)
                continue

            first_seen = await redis.zscore(self.stalled_key, job_id)
            if first_seen is None:
                await redis.zadd(self.stalled_key, {job_id: now})
                continue
            if now - first_seen < self.stalled_grace_ms:
                continue

            await redis.zrem(self.stalled_key, job_id)
            if not await redis.lrem(self.active_key, 1, job_id):
                continue

            job = await self.get_job(job_id)
            if not job:
                logger.info(f"Removed orphan active job id: {job_id}")
                continue

            logger.warning(f"[{job_id}] Stalled: lock expired, recovering")
            await self._publish_event("stalled", job_id)
            await self._handle_failure(
                job, f"Job stalled: lock expired after {self.lock_duration_ms}ms"
            )
            recovered.append(job_id)

        return recovered

    async def prune_completed(self) -> int:
        """
        Drop completed ids whose retention window has passed.

        Job hashes expire on their own; this trims the completed index.
        """
        redis = self._client()
        retention = self.default_options.completed_retention_seconds
        if retention <= 0:
            return 0
        cutoff = _now_ms() - retention * 1000
        return await redis.zremrangebyscore(self.completed_key, 0, cutoff)

    async def retry(self, job_id: str) -> Optional[Job]:
        """
        Manually re-queue a terminally failed job with its attempt count reset.

        Returns:
            Updated Job or None if not found/not failed
        """
        redis = self._client()
        job = await self.get_job(job_id)
        if not job:
            logger.warning(f"Cannot retry: job {job_id} not found")
            return None
        if job.state != JobState.FAILED:
            logger.warning(f"Cannot retry: job {job_id} is {job.state.value}")
            return None

        await redis.zrem(self.failed_key, job_id)

        job.state = JobState.QUEUED
        job.attempts_made = 0
        job.progress = 0
        job.started_at = None
        job.finished_at = None
        job.failed_reason = None
        await self._save(job)
        await redis.persist(self._job_key(job_id))
        await redis.lpush(self.wait_key, job_id)

        await self._publish_event("retried", job_id)
        logger.info(f"[{job_id}] Manually retried")
        return job

    # =========================================================================
    # Events
    # =========================================================================

    def subscribe(self, callback: EventCallback) -> None:
        """
        Subscribe to queue events.

        Args:
            callback: Async function called with each event dict
        """
        self._subscribers.append(callback)

    def unsubscribe(self, callback: EventCallback) -> None:
        """
        Unsubscribe from queue events.

        Args:
            callback: Previously registered callback
        """
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def start_listener(self) -> None:
        """Relay events published by other processes to local subscribers."""
        if self._listener_task is not None:
            return
        self._pubsub = self._client().pubsub()
        await self._pubsub.subscribe(self.events_channel)
        self._listener_task = asyncio.create_task(self._listen())
        logger.info(f"Listening for queue events on {self.events_channel}")

    async def stop_listener(self) -> None:
        task, self._listener_task = self._listener_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self.events_channel)
                await self._pubsub.close()
            except Exception as e:
                logger.warning(f"Error closing queue event subscription: {e}")
            self._pubsub = None

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    event = json.loads(message["data"])
                except (TypeError, ValueError):
                    logger.warning("Ignoring malformed queue event")
                    continue
                if event.get("origin") == self.instance_id:
                    continue
                await self._notify_subscribers(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Queue event listener stopped: {e}")

    async def _publish_event(self, event_name: str, job_id: Optional[str], **data: Any) -> None:
        """
        Publish a lifecycle event to Redis pub/sub and local subscribers.

        Delivery is best effort; failures are logged and never raised.
        """
        event = {
            "event": event_name,
            "job_id": job_id,
            "queue": self.name,
            "origin": self.instance_id,
            "timestamp": utcnow().isoformat(),
            **data,
        }

        if self._redis:
            try:
                await self._redis.publish(self.events_channel, json.dumps(event))
            except Exception as e:
                logger.warning(f"Failed to publish to Redis pub/sub: {e}")

        await self._notify_subscribers(event)

    async def _notify_subscribers(self, event: Dict[str, Any]) -> None:
        for callback in list(self._subscribers):
            try:
                await callback(event)
            except Exception as e:
                logger.error(f"Subscriber callback error: {e}")

    async def _publish_drained_if_empty(self) -> None:
        if await self.count() == 0:
            await self._publish_event("drained", None)
            logger.info(f"Queue '{self.name}' drained")

    # =========================================================================
    # Internals
    # =========================================================================

    def _job_key(self, job_id: str) -> str:
        return f"{self.job_prefix}{job_id}"

    def _lock_key(self, job_id: str) -> str:
        return f"{self.lock_prefix}{job_id}"

    async def _owns_lock(self, job_id: str, token: str) -> bool:
        return await self._client().get(self._lock_key(job_id)) == token

    async def _save(self, job: Job) -> None:
        await self._client().hset(self._job_key(job.job_id), mapping=job.to_redis_hash())

    async def _handle_failure(self, job: Job, reason: str) -> Job:
        """Apply the retry policy to a job that just failed an attempt."""
        redis = self._client()
        now = utcnow()
        job.failed_reason = reason
        job.finished_at = now

        if job.attempts_made < job.max_attempts:
            delay_ms = job.backoff.delay_ms(job.attempts_made)
            job.state = JobState.QUEUED
            job.available_at = now + timedelta(milliseconds=delay_ms)
            await self._save(job)
            await redis.zadd(self.delayed_key, {job.job_id: _now_ms() + delay_ms})

            await self._publish_event(
                "retrying",
                job.job_id,
                attempts_made=job.attempts_made,
                delay_ms=delay_ms,
                failed_reason=reason,
            )
            logger.warning(
                f"[{job.job_id}] Attempt {job.attempts_made}/{job.max_attempts} failed: "
                f"{reason}. Retrying in {delay_ms}ms"
            )
            return job

        job.state = JobState.FAILED
        await self._save(job)
        await redis.zadd(self.failed_key, {job.job_id: _now_ms()})
        if job.failed_retention_seconds:
            await redis.expire(self._job_key(job.job_id), job.failed_retention_seconds)

        await self._publish_event(
            "failed", job.job_id, attempts_made=job.attempts_made, failed_reason=reason
        )
        logger.error(f"[{job.job_id}] Failed after {job.attempts_made} attempts: {reason}")
        return job
