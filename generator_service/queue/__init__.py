"""
Queue Package

Provides the Redis-backed persistent job queue for PDF jobs.
"""

from .limiter import RateLimiter
from .manager import JobQueue
from .models import (
    BackoffPolicy,
    ClaimedJob,
    Job,
    JobOptions,
    JobPayload,
    JobResult,
    JobState,
)

__all__ = [
    "BackoffPolicy",
    "ClaimedJob",
    "Job",
    "JobOptions",
    "JobPayload",
    "JobQueue",
    "JobResult",
    "JobState",
    "RateLimiter",
]
