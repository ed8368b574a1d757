"""Job Queue Core.

Provides job queue primitives:
- Job and worker registration records
- Retry policy
- Backend interface
"""

from __future__ import annotations

import logging
import os
import secrets
import socket
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from finjobs.core.errors import BackendError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None or value == "" else int(value)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO string, epoch number or datetime into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class JobStatus(str, Enum):
    """Status of a job."""
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


CLAIMABLE_STATUSES = (JobStatus.PENDING, JobStatus.RETRYING)
ACTIVE_STATUSES = (JobStatus.CLAIMED, JobStatus.RUNNING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class JobPriority(int, Enum):
    """Job priority levels."""
    LOW = 1
    NORMAL = 5
    HIGH = 10
    CRITICAL = 100


@dataclass
class Job:
    """A unit of work claimed and executed by exactly one worker at a time."""
    id: str
    job_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    priority: int = JobPriority.NORMAL.value
    attempt_count: int = 0
    max_attempts: Optional[int] = None  # None: the backend applies its configured limit
    assigned_worker_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    available_at: Optional[datetime] = None  # Backoff / delayed start
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Any = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_available(self, now: Optional[datetime] = None) -> bool:
        if self.status not in CLAIMABLE_STATUSES:
            return False
        if self.available_at is None:
            return True
        return self.available_at <= (now or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_type": self.job_type,
            "payload": self.payload,
            "status": self.status.value,
            "priority": self.priority,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "assigned_worker_id": self.assigned_worker_id,
            "created_at": _iso(self.created_at),
            "available_at": _iso(self.available_at),
            "claimed_at": _iso(self.claimed_at),
            "completed_at": _iso(self.completed_at),
            "result": self.result,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            job_type=data["job_type"],
            payload=data.get("payload") or {},
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            priority=int(data.get("priority", JobPriority.NORMAL.value)),
            attempt_count=int(data.get("attempt_count", 0)),
            max_attempts=_optional_int(data.get("max_attempts")),
            assigned_worker_id=data.get("assigned_worker_id") or None,
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            available_at=parse_timestamp(data.get("available_at")),
            claimed_at=parse_timestamp(data.get("claimed_at")),
            completed_at=parse_timestamp(data.get("completed_at")),
            result=data.get("result"),
            error_message=data.get("error_message") or None,
        )


def generate_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def create_job(
    job_type: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    job_id: Optional[str] = None,
    priority: int = JobPriority.NORMAL.value,
    max_attempts: Optional[int] = None,
    delay_seconds: float = 0.0,
) -> Job:
    """Create a new PENDING job.

    Leave ``max_attempts`` unset to take the limit configured on the backend
    the job is enqueued to.
    """
    now = utcnow()
    return Job(
        id=job_id or generate_job_id(),
        job_type=job_type,
        payload=dict(payload or {}),
        priority=int(priority),
        max_attempts=max_attempts,
        created_at=now,
        available_at=now + timedelta(seconds=delay_seconds) if delay_seconds > 0 else None,
    )


class WorkerStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


def generate_worker_id() -> str:
    return f"{socket.gethostname()}_{os.getpid()}_{secrets.token_hex(4)}"


@dataclass
class WorkerInfo:
    """Registration record of a live worker."""
    worker_id: str
    hostname: str
    pid: int
    job_types: List[str] = field(default_factory=list)
    max_concurrent_jobs: int = 1
    status: WorkerStatus = WorkerStatus.RUNNING
    started_at: datetime = field(default_factory=utcnow)
    last_heartbeat_at: datetime = field(default_factory=utcnow)

    def is_stale(self, threshold_seconds: float, now: Optional[datetime] = None) -> bool:
        age = ((now or utcnow()) - self.last_heartbeat_at).total_seconds()
        return age > threshold_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "hostname": self.hostname,
            "pid": self.pid,
            "job_types": list(self.job_types),
            "max_concurrent_jobs": self.max_concurrent_jobs,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "last_heartbeat_at": _iso(self.last_heartbeat_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkerInfo":
        return cls(
            worker_id=data["worker_id"],
            hostname=data.get("hostname", ""),
            pid=int(data.get("pid", 0)),
            job_types=list(data.get("job_types") or []),
            max_concurrent_jobs=int(data.get("max_concurrent_jobs", 1)),
            status=WorkerStatus(data.get("status", WorkerStatus.RUNNING.value)),
            started_at=parse_timestamp(data.get("started_at")) or utcnow(),
            last_heartbeat_at=parse_timestamp(data.get("last_heartbeat_at")) or utcnow(),
        )


@dataclass
class RetryPolicy:
    """Exponential backoff between retryable failures."""
    delay_seconds: float = 5.0
    backoff_factor: float = 2.0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def next_delay(self, attempt_count: int) -> float:
        return self.delay_seconds * (self.backoff_factor ** max(attempt_count - 1, 0))

    def attempt_limit(self, job: Job) -> int:
        return job.max_attempts if job.max_attempts is not None else self.max_attempts

    def next_status(self, job: Job, retryable: bool) -> JobStatus:
        if retryable and job.attempt_count < self.attempt_limit(job):
            return JobStatus.RETRYING
        return JobStatus.FAILED


def apply_failure(
    job: Job,
    error_message: str,
    retryable: bool,
    policy: RetryPolicy,
    now: Optional[datetime] = None,
) -> JobStatus:
    """Move a claimed job to RETRYING or FAILED in place."""
    now = now or utcnow()
    job.status = policy.next_status(job, retryable)
    job.error_message = error_message
    job.assigned_worker_id = None
    if job.status == JobStatus.RETRYING:
        job.available_at = now + timedelta(seconds=policy.next_delay(job.attempt_count))
    else:
        job.completed_at = now
    return job.status


@dataclass
class QueueStats:
    """Aggregate queue and fleet counters."""
    by_status: Dict[str, int] = field(default_factory=dict)
    by_type: Dict[str, int] = field(default_factory=dict)
    workers: int = 0
    stale_workers: int = 0

    @property
    def total(self) -> int:
        return sum(self.by_status.values())

    def count(self, status: JobStatus) -> int:
        return self.by_status.get(status.value, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "by_status": dict(self.by_status),
            "by_type": dict(self.by_type),
            "workers": self.workers,
            "stale_workers": self.stale_workers,
        }


class JobBackend(ABC):
    """Durable queue shared by all workers of a fleet.

    Implementations must guarantee that ``get_next_job`` hands a job to at
    most one caller, and that ``complete_job``/``fail_job``/``start_job``
    raise ``ClaimError`` when the caller does not hold the claim.
    """

    name = "abstract"
    # True when a claim lives on this process's connection and cannot be
    # reported from a separate child process.
    connection_bound_claims = False

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        stale_after: float = 300.0,
        sweep_interval: float = 30.0,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self.stale_after = stale_after
        self.sweep_interval = sweep_interval
        self._last_sweep: Optional[float] = None

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    def apply_defaults(self, job: Job) -> Job:
        """Fill in backend-configured values the producer left unset."""
        if job.max_attempts is None:
            job.max_attempts = self.retry_policy.max_attempts
        return job

    async def __aenter__(self) -> "JobBackend":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @abstractmethod
    async def enqueue(self, job: Job) -> Job:
        """Persist a new job and make it claimable."""
        pass

    @abstractmethod
    async def register_worker(self, worker_id: str, info: WorkerInfo) -> None:
        pass

    @abstractmethod
    async def update_worker_heartbeat(self, worker_id: str) -> bool:
        """Refresh the heartbeat. Returns False (and logs) for unknown ids."""
        pass

    @abstractmethod
    async def unregister_worker(self, worker_id: str) -> None:
        pass

    async def get_next_job(self, worker_id: str, job_types: Iterable[str]) -> Optional[Job]:
        """Atomically claim one eligible job, or return None."""
        types = sorted(set(job_types))
        if not types:
            return None
        await self._maybe_sweep()
        return await self._claim_next(worker_id, types)

    @abstractmethod
    async def _claim_next(self, worker_id: str, job_types: List[str]) -> Optional[Job]:
        pass

    @abstractmethod
    async def start_job(self, job_id: str, worker_id: str) -> None:
        """CLAIMED -> RUNNING."""
        pass

    @abstractmethod
    async def complete_job(self, job_id: str, worker_id: str, result: Any) -> None:
        pass

    @abstractmethod
    async def fail_job(
        self,
        job_id: str,
        worker_id: str,
        error_message: str,
        retryable: bool,
    ) -> JobStatus:
        """Record a failure; returns RETRYING or FAILED."""
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def list_workers(self) -> List[WorkerInfo]:
        pass

    @abstractmethod
    async def get_stats(self) -> QueueStats:
        pass

    @abstractmethod
    async def requeue_stale_jobs(self, stale_after: Optional[float] = None) -> List[str]:
        """Reclaim jobs held by dead workers; returns the affected job ids."""
        pass

    @abstractmethod
    async def cleanup_old_jobs(self, older_than_days: float = 30) -> int:
        pass

    async def _maybe_sweep(self) -> None:
        now = time.monotonic()
        if self._last_sweep is not None and now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        try:
            reclaimed = await self.requeue_stale_jobs()
        except BackendError:
            logger.warning("Stale job sweep failed", exc_info=True)
            return
        if reclaimed:
            logger.info(
                f"Reclaimed {len(reclaimed)} stale jobs",
                extra={"extra_fields": {"backend": self.name, "job_ids": reclaimed}},
            )
