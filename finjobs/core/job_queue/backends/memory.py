"""In-memory job backend for tests and single-process development."""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, List, Optional

from finjobs.core.errors import ClaimError, DuplicateJobError, JobNotFoundError
from finjobs.core.job_queue.core import (
    ACTIVE_STATUSES,
    Job,
    JobBackend,
    JobStatus,
    QueueStats,
    WorkerInfo,
    apply_failure,
    utcnow,
)

logger = logging.getLogger(__name__)


class InMemoryJobBackend(JobBackend):
    """Jobs and workers held in dicts, serialized by an asyncio lock.

    Claims only exist inside this process, so isolated children relay
    their outcome to the parent instead of reporting themselves.
    """

    name = "memory"
    connection_bound_claims = True

    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        self._jobs: Dict[str, Job] = {}
        self._workers: Dict[str, WorkerInfo] = {}
        self._lock: Optional[asyncio.Lock] = None
        self.claim_log: List[tuple] = []  # (job_id, worker_id) per successful claim

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def enqueue(self, job: Job) -> Job:
        job = self.apply_defaults(job)
        async with self._get_lock():
            if job.id in self._jobs:
                raise DuplicateJobError(f"Duplicate job id: {job.id}")
            self._jobs[job.id] = copy.deepcopy(job)
            logger.debug(f"Enqueued job {job.id} ({job.job_type})")
            return copy.deepcopy(job)

    async def register_worker(self, worker_id: str, info: WorkerInfo) -> None:
        async with self._get_lock():
            self._workers[worker_id] = copy.deepcopy(info)

    async def update_worker_heartbeat(self, worker_id: str) -> bool:
        async with self._get_lock():
            info = self._workers.get(worker_id)
            if info is None:
                logger.warning(f"Heartbeat from unknown worker {worker_id}")
                return False
            info.last_heartbeat_at = utcnow()
            return True

    async def unregister_worker(self, worker_id: str) -> None:
        async with self._get_lock():
            self._workers.pop(worker_id, None)

    async def _claim_next(self, worker_id: str, job_types: List[str]) -> Optional[Job]:
        async with self._get_lock():
            now = utcnow()
            candidates = [
                job for job in self._jobs.values()
                if job.job_type in job_types and job.is_available(now)
            ]
            if not candidates:
                return None
            job = min(candidates, key=lambda j: (-j.priority, j.created_at, j.id))
            job.status = JobStatus.CLAIMED
            job.assigned_worker_id = worker_id
            job.claimed_at = now
            job.attempt_count += 1
            self.claim_log.append((job.id, worker_id))
            return copy.deepcopy(job)

    def _owned(self, job_id: str, worker_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.assigned_worker_id != worker_id or job.status not in ACTIVE_STATUSES:
            raise ClaimError(
                f"Worker {worker_id} does not hold the claim on job {job_id}",
                details={"holder": job.assigned_worker_id, "status": job.status.value},
            )
        return job

    async def start_job(self, job_id: str, worker_id: str) -> None:
        async with self._get_lock():
            self._owned(job_id, worker_id).status = JobStatus.RUNNING

    async def complete_job(self, job_id: str, worker_id: str, result: Any) -> None:
        async with self._get_lock():
            job = self._owned(job_id, worker_id)
            job.status = JobStatus.COMPLETED
            job.result = copy.deepcopy(result)
            job.error_message = None
            job.assigned_worker_id = None
            job.completed_at = utcnow()

    async def fail_job(
        self,
        job_id: str,
        worker_id: str,
        error_message: str,
        retryable: bool,
    ) -> JobStatus:
        async with self._get_lock():
            job = self._owned(job_id, worker_id)
            return apply_failure(job, error_message, retryable, self.retry_policy)

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._get_lock():
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    async def list_workers(self) -> List[WorkerInfo]:
        async with self._get_lock():
            return [copy.deepcopy(w) for w in self._workers.values()]

    async def get_stats(self) -> QueueStats:
        async with self._get_lock():
            now = utcnow()
            return QueueStats(
                by_status=dict(Counter(j.status.value for j in self._jobs.values())),
                by_type=dict(Counter(j.job_type for j in self._jobs.values())),
                workers=len(self._workers),
                stale_workers=sum(
                    1 for w in self._workers.values() if w.is_stale(self.stale_after, now)
                ),
            )

    async def requeue_stale_jobs(self, stale_after: Optional[float] = None) -> List[str]:
        threshold = self.stale_after if stale_after is None else stale_after
        async with self._get_lock():
            now = utcnow()
            dead = {
                wid for wid, info in self._workers.items() if info.is_stale(threshold, now)
            }
            for wid in dead:
                del self._workers[wid]
            reclaimed = []
            for job in self._jobs.values():
                if job.status not in ACTIVE_STATUSES:
                    continue
                if job.assigned_worker_id in self._workers:
                    continue
                apply_failure(job, "worker lost", True, self.retry_policy, now)
                # Reclaim is immediate; backoff only applies to processor failures
                if job.status == JobStatus.RETRYING:
                    job.available_at = now
                reclaimed.append(job.id)
            return reclaimed

    async def cleanup_old_jobs(self, older_than_days: float = 30) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        async with self._get_lock():
            old = [
                job_id for job_id, job in self._jobs.items()
                if job.is_terminal and job.completed_at and job.completed_at < cutoff
            ]
            for job_id in old:
                del self._jobs[job_id]
            return len(old)
