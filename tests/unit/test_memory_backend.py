"""Unit tests for the in-memory backend's claim and retry contract."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from finjobs.core.config import Settings
from finjobs.core.errors import ClaimError, DuplicateJobError, JobNotFoundError
from finjobs.core.job_queue.backends import InMemoryJobBackend, create_backend
from finjobs.core.job_queue.core import JobPriority, JobStatus, WorkerInfo, create_job, utcnow


def worker_info(worker_id: str) -> WorkerInfo:
    return WorkerInfo(worker_id=worker_id, hostname="test", pid=1, job_types=["echo"])


@pytest.fixture
def backend(no_delay_retry):
    return InMemoryJobBackend(retry_policy=no_delay_retry, stale_after=300, sweep_interval=0)


async def register(backend, *worker_ids: str) -> None:
    for worker_id in worker_ids:
        await backend.register_worker(worker_id, worker_info(worker_id))


class TestClaiming:
    @pytest.mark.asyncio
    async def test_claim_marks_job_claimed(self, backend) -> None:
        await register(backend, "w1")
        await backend.enqueue(create_job("echo", {"x": 1}, job_id="j1"))

        job = await backend.get_next_job("w1", ["echo"])

        assert job.id == "j1"
        assert job.status == JobStatus.CLAIMED
        assert job.assigned_worker_id == "w1"
        assert job.attempt_count == 1
        assert job.claimed_at is not None

    @pytest.mark.asyncio
    async def test_empty_queue_and_no_types(self, backend) -> None:
        await register(backend, "w1")
        assert await backend.get_next_job("w1", ["echo"]) is None
        await backend.enqueue(create_job("echo"))
        assert await backend.get_next_job("w1", []) is None

    @pytest.mark.asyncio
    async def test_only_matching_types_claimed(self, backend) -> None:
        await register(backend, "w1")
        await backend.enqueue(create_job("other", job_id="j1"))
        assert await backend.get_next_job("w1", ["echo"]) is None

    @pytest.mark.asyncio
    async def test_priority_then_age_order(self, backend) -> None:
        await register(backend, "w1")
        await backend.enqueue(create_job("echo", job_id="old-low", priority=JobPriority.LOW))
        await backend.enqueue(create_job("echo", job_id="normal-1"))
        await backend.enqueue(create_job("echo", job_id="normal-2"))
        await backend.enqueue(create_job("echo", job_id="urgent", priority=JobPriority.CRITICAL))

        order = [(await backend.get_next_job("w1", ["echo"])).id for _ in range(4)]

        assert order == ["urgent", "normal-1", "normal-2", "old-low"]

    @pytest.mark.asyncio
    async def test_delayed_job_waits(self, backend) -> None:
        await register(backend, "w1")
        await backend.enqueue(create_job("echo", delay_seconds=60))
        assert await backend.get_next_job("w1", ["echo"]) is None

    @pytest.mark.asyncio
    async def test_concurrent_claims_are_exclusive(self, backend) -> None:
        workers = ["w1", "w2", "w3"]
        await register(backend, *workers)
        for i in range(10):
            await backend.enqueue(create_job("echo", job_id=f"j{i}"))

        results = await asyncio.gather(
            *(backend.get_next_job(workers[i % 3], ["echo"]) for i in range(30))
        )

        claimed = [job.id for job in results if job is not None]
        assert sorted(claimed) == sorted(f"j{i}" for i in range(10))
        assert len(backend.claim_log) == 10

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, backend) -> None:
        await backend.enqueue(create_job("echo", job_id="j1"))
        with pytest.raises(DuplicateJobError):
            await backend.enqueue(create_job("echo", job_id="j1"))


class TestOwnership:
    @pytest.mark.asyncio
    async def test_complete_by_claimant(self, backend) -> None:
        await register(backend, "w1")
        await backend.enqueue(create_job("echo", job_id="j1"))
        await backend.get_next_job("w1", ["echo"])

        await backend.start_job("j1", "w1")
        assert (await backend.get_job("j1")).status == JobStatus.RUNNING
        await backend.complete_job("j1", "w1", {"ok": True})

        job = await backend.get_job("j1")
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"ok": True}
        assert job.assigned_worker_id is None
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_other_worker_cannot_complete(self, backend) -> None:
        await register(backend, "w1", "w2")
        await backend.enqueue(create_job("echo", job_id="j1"))
        await backend.get_next_job("w1", ["echo"])

        with pytest.raises(ClaimError):
            await backend.complete_job("j1", "w2", {})
        with pytest.raises(ClaimError):
            await backend.fail_job("j1", "w2", "nope", True)

        assert (await backend.get_job("j1")).status == JobStatus.CLAIMED

    @pytest.mark.asyncio
    async def test_completed_job_cannot_be_reported_again(self, backend) -> None:
        await register(backend, "w1")
        await backend.enqueue(create_job("echo", job_id="j1"))
        await backend.get_next_job("w1", ["echo"])
        await backend.complete_job("j1", "w1", 1)

        with pytest.raises(ClaimError):
            await backend.complete_job("j1", "w1", 2)

    @pytest.mark.asyncio
    async def test_unknown_job(self, backend) -> None:
        with pytest.raises(JobNotFoundError):
            await backend.start_job("missing", "w1")
        assert await backend.get_job("missing") is None


class TestRetries:
    @pytest.mark.asyncio
    async def test_retry_until_max_attempts(self, backend) -> None:
        await register(backend, "w1")
        await backend.enqueue(create_job("echo", job_id="j1", max_attempts=3))

        statuses = []
        for _ in range(3):
            job = await backend.get_next_job("w1", ["echo"])
            statuses.append(await backend.fail_job(job.id, "w1", "flaky", retryable=True))

        assert statuses == [JobStatus.RETRYING, JobStatus.RETRYING, JobStatus.FAILED]
        job = await backend.get_job("j1")
        assert job.attempt_count == 3
        assert job.error_message == "flaky"
        assert await backend.get_next_job("w1", ["echo"]) is None

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, backend) -> None:
        await register(backend, "w1")
        await backend.enqueue(create_job("echo", job_id="j1"))
        await backend.get_next_job("w1", ["echo"])

        status = await backend.fail_job("j1", "w1", "bad payload", retryable=False)

        assert status == JobStatus.FAILED
        assert (await backend.get_job("j1")).attempt_count == 1

    @pytest.mark.asyncio
    async def test_backoff_delays_next_claim(self) -> None:
        from finjobs.core.job_queue.core import RetryPolicy

        backend = InMemoryJobBackend(retry_policy=RetryPolicy(delay_seconds=60), sweep_interval=0)
        await register(backend, "w1")
        await backend.enqueue(create_job("echo", job_id="j1"))
        await backend.get_next_job("w1", ["echo"])
        await backend.fail_job("j1", "w1", "later", True)

        assert await backend.get_next_job("w1", ["echo"]) is None
        assert (await backend.get_job("j1")).available_at > utcnow() + timedelta(seconds=50)

    @pytest.mark.asyncio
    async def test_configured_attempt_limit_applies_to_unset_jobs(self) -> None:
        settings = Settings(queue={"backend": "memory", "max_attempts": 5, "retry_delay": 0})
        backend = create_backend(settings)
        await register(backend, "w1")
        enqueued = await backend.enqueue(create_job("echo", job_id="j1"))
        assert enqueued.max_attempts == 5

        claims = 0
        for _ in range(10):
            job = await backend.get_next_job("w1", ["echo"])
            if job is None:
                break
            claims += 1
            await backend.fail_job(job.id, "w1", "flaky", retryable=True)

        assert claims == 5
        job = await backend.get_job("j1")
        assert job.status == JobStatus.FAILED
        assert job.attempt_count == 5

    @pytest.mark.asyncio
    async def test_explicit_attempt_limit_wins(self) -> None:
        backend = create_backend(Settings(queue={"backend": "memory", "max_attempts": 5}))
        enqueued = await backend.enqueue(create_job("echo", job_id="j1", max_attempts=2))
        assert enqueued.max_attempts == 2


class TestWorkersAndSweep:
    @pytest.mark.asyncio
    async def test_heartbeat_unknown_worker(self, backend, caplog) -> None:
        assert await backend.update_worker_heartbeat("ghost") is False
        assert "unknown worker ghost" in caplog.text

    @pytest.mark.asyncio
    async def test_heartbeat_refreshes(self, backend) -> None:
        info = worker_info("w1")
        info.last_heartbeat_at = utcnow() - timedelta(seconds=100)
        await backend.register_worker("w1", info)

        assert await backend.update_worker_heartbeat("w1") is True
        [refreshed] = await backend.list_workers()
        assert not refreshed.is_stale(10)

    @pytest.mark.asyncio
    async def test_stale_worker_jobs_reclaimed(self, backend) -> None:
        await register(backend, "dead", "alive")
        await backend.enqueue(create_job("echo", job_id="j1"))
        await backend.enqueue(create_job("echo", job_id="j2"))
        await backend.get_next_job("dead", ["echo"])
        await backend.get_next_job("alive", ["echo"])
        backend._workers["dead"].last_heartbeat_at = utcnow() - timedelta(seconds=600)

        reclaimed = await backend.requeue_stale_jobs()

        assert reclaimed == ["j1"]
        job = await backend.get_job("j1")
        assert job.status == JobStatus.RETRYING
        assert job.error_message == "worker lost"
        assert job.is_available()
        assert (await backend.get_job("j2")).status == JobStatus.CLAIMED
        assert [w.worker_id for w in await backend.list_workers()] == ["alive"]

    @pytest.mark.asyncio
    async def test_reclaim_respects_attempt_limit(self, backend) -> None:
        await register(backend, "w1")
        await backend.enqueue(create_job("echo", job_id="j1", max_attempts=1))
        await backend.get_next_job("w1", ["echo"])
        await backend.unregister_worker("w1")

        assert await backend.requeue_stale_jobs() == ["j1"]
        assert (await backend.get_job("j1")).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_stats(self, backend) -> None:
        await register(backend, "w1")
        await backend.enqueue(create_job("echo", job_id="j1"))
        await backend.enqueue(create_job("other", job_id="j2"))
        await backend.get_next_job("w1", ["echo"])

        stats = await backend.get_stats()

        assert stats.by_status == {"CLAIMED": 1, "PENDING": 1}
        assert stats.by_type == {"echo": 1, "other": 1}
        assert stats.workers == 1
        assert stats.stale_workers == 0

    @pytest.mark.asyncio
    async def test_cleanup_old_terminal_jobs(self, backend) -> None:
        await register(backend, "w1")
        await backend.enqueue(create_job("echo", job_id="old"))
        await backend.enqueue(create_job("echo", job_id="pending"))
        await backend.get_next_job("w1", ["echo"])
        await backend.complete_job("old", "w1", None)
        backend._jobs["old"].completed_at = utcnow() - timedelta(days=45)

        assert await backend.cleanup_old_jobs(older_than_days=30) == 1
        assert await backend.get_job("old") is None
        assert await backend.get_job("pending") is not None
