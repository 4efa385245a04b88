"""
Queue Data Models

Defines the job record, its payload and result, and the per-job retry policy.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class JobState(str, Enum):
    """Lifecycle states of a job."""

    QUEUED = "queued"        # Waiting (or delayed before a retry)
    ACTIVE = "active"        # Claimed by a worker
    COMPLETED = "completed"  # Terminal, carries a result
    FAILED = "failed"        # Terminal once attempts are exhausted

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: str) -> Optional[datetime]:
    """Parse ISO datetime string, return None if empty."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _format_datetime(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential retry delay for whole-job retries.

    delay_ms(n) = base_ms * 2 ** (n - 1), where n is the number of attempts
    already made (so the first retry waits base_ms).
    """

    base_ms: int = 3000

    def delay_ms(self, attempts_made: int) -> int:
        if attempts_made < 1:
            return 0
        return self.base_ms * 2 ** (attempts_made - 1)


@dataclass
class JobOptions:
    """Per-job queue options applied uniformly at enqueue time."""

    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    completed_retention_seconds: int = 60 * 60 * 24 * 2
    failed_retention_seconds: Optional[int] = None  # None = keep for inspection


@dataclass
class JobPayload:
    """What to render and where to store it."""

    url: str
    file_name: str
    options: Dict[str, Any] = field(default_factory=dict)
    render_profile: str = "standard"
    category: str = "crm-pdf"
    doc_type: Optional[str] = None
    owner_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "file_name": self.file_name,
            "options": self.options,
            "render_profile": self.render_profile,
            "category": self.category,
            "doc_type": self.doc_type,
            "owner_id": self.owner_id,
        }


@dataclass
class JobResult:
    """Terminal result of a completed job."""

    url: str
    size: int
    status: str = "success"

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "url": self.url, "size": self.size}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobResult":
        return cls(
            status=data.get("status", "success"),
            url=data["url"],
            size=int(data["size"]),
        )


@dataclass
class Job:
    """
    One render-then-store unit of work.

    Stored as a Redis hash; every value is a string in Redis.
    """

    job_id: str
    payload: JobPayload
    state: JobState
    created_at: datetime
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    attempts_made: int = 0
    progress: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    available_at: Optional[datetime] = None  # Set while a retry is delayed
    failed_reason: Optional[str] = None
    result: Optional[JobResult] = None
    completed_retention_seconds: int = 60 * 60 * 24 * 2
    failed_retention_seconds: Optional[int] = None

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempts_made, 0)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "job_id": self.job_id,
            "payload": self.payload.to_dict(),
            "state": self.state.value,
            "progress": self.progress,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "available_at": self.available_at.isoformat() if self.available_at else None,
            "failed_reason": self.failed_reason,
            "result": self.result.to_dict() if self.result else None,
        }

    def to_redis_hash(self) -> Dict[str, str]:
        """
        Convert to Redis hash format.

        All values are strings for Redis HSET.
        """
        return {
            "url": self.payload.url,
            "file_name": self.payload.file_name,
            "options": json.dumps(self.payload.options),
            "render_profile": self.payload.render_profile,
            "category": self.payload.category,
            "doc_type": self.payload.doc_type or "",
            "owner_id": self.payload.owner_id or "",
            "state": self.state.value,
            "progress": str(self.progress),
            "attempts_made": str(self.attempts_made),
            "max_attempts": str(self.max_attempts),
            "backoff_type": "exponential",
            "backoff_delay": str(self.backoff.base_ms),
            "created_at": _format_datetime(self.created_at),
            "started_at": _format_datetime(self.started_at),
            "finished_at": _format_datetime(self.finished_at),
            "available_at": _format_datetime(self.available_at),
            "failed_reason": self.failed_reason or "",
            "result": json.dumps(self.result.to_dict()) if self.result else "",
            "remove_on_complete": str(self.completed_retention_seconds),
            "remove_on_fail": str(self.failed_retention_seconds or ""),
        }

    @classmethod
    def from_dict(cls, job_id: str, data: Dict[str, str]) -> "Job":
        """
        Create Job from Redis hash data.

        Args:
            job_id: The job ID
            data: Dictionary from Redis HGETALL

        Returns:
            Job instance
        """
        raw_result = data.get("result")
        return cls(
            job_id=job_id,
            payload=JobPayload(
                url=data.get("url", ""),
                file_name=data.get("file_name", ""),
                options=json.loads(data.get("options") or "{}"),
                render_profile=data.get("render_profile") or "standard",
                category=data.get("category") or "crm-pdf",
                doc_type=data.get("doc_type") or None,
                owner_id=data.get("owner_id") or None,
            ),
            state=JobState(data.get("state", "queued")),
            created_at=_parse_datetime(data.get("created_at", "")) or utcnow(),
            max_attempts=int(data.get("max_attempts", 3)),
            backoff=BackoffPolicy(base_ms=int(data.get("backoff_delay", 3000))),
            attempts_made=int(data.get("attempts_made", 0)),
            progress=int(data.get("progress", 0)),
            started_at=_parse_datetime(data.get("started_at", "")),
            finished_at=_parse_datetime(data.get("finished_at", "")),
            available_at=_parse_datetime(data.get("available_at", "")),
            failed_reason=data.get("failed_reason") or None,
            result=JobResult.from_dict(json.loads(raw_result)) if raw_result else None,
            completed_retention_seconds=int(data.get("remove_on_complete") or 0),
            failed_retention_seconds=int(data.get("remove_on_fail") or 0) or None,
        )


@dataclass
class ClaimedJob:
    """A job handed to a worker together with the lock token it must present."""

    job: Job
    token: str

    @property
    def job_id(self) -> str:
        return self.job.job_id
