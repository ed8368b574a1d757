"""Unit tests for the worker loop with inline isolation."""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from finjobs.core.config import WorkerSettings
from finjobs.core.errors import BackendError, ClaimError, PermanentJobError, SpawnError, TransientJobError
from finjobs.core.job_queue.backends import InMemoryJobBackend
from finjobs.core.job_queue.core import JobStatus, create_job
from finjobs.core.job_queue.isolation import InlineIsolation, IsolationStrategy, ProcessIsolation
from finjobs.core.job_queue.processors import ProcessorRegistry
from finjobs.core.job_queue.worker import Worker, WorkerExit, WorkerState


@pytest.fixture
def backend(no_delay_retry):
    return InMemoryJobBackend(retry_policy=no_delay_retry, sweep_interval=0)


@pytest.fixture
def worker(backend, echo_registry, fast_worker_config):
    return Worker(backend, echo_registry, config=fast_worker_config, worker_id="w1")


class TestConstruction:
    def test_isolation_follows_config(self, backend, echo_registry) -> None:
        inline = Worker(backend, echo_registry, config=WorkerSettings(isolation="inline"))
        isolated = Worker(backend, echo_registry, config=WorkerSettings(isolation="process"))

        assert isinstance(inline._isolation, InlineIsolation)
        assert isinstance(isolated._isolation, ProcessIsolation)
        # Claims held in this process are reported by the parent
        assert isolated._isolation.settings is None

    def test_job_types_filtered_by_config(self, backend) -> None:
        registry = ProcessorRegistry()
        registry.register_function("a", lambda job: None)
        registry.register_function("b", lambda job: None)

        worker = Worker(backend, registry, config=WorkerSettings(job_types=["b", "zzz"]))

        assert worker.job_types == ["b"]
        assert worker.info().job_types == ["b"]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_registers(self, worker, backend) -> None:
        await worker.start(install_signals=False)

        assert worker.state == WorkerState.RUNNING
        [info] = await backend.list_workers()
        assert info.worker_id == "w1"
        assert info.max_concurrent_jobs == 2

        await worker.stop()
        assert worker.state == WorkerState.STOPPED
        assert await backend.list_workers() == []

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, worker, backend) -> None:
        backend.unregister_worker = AsyncMock(wraps=backend.unregister_worker)
        await worker.start(install_signals=False)

        await worker.stop()
        await worker.stop()

        backend.unregister_worker.assert_awaited_once_with("w1")

    @pytest.mark.asyncio
    async def test_run_until_stop_requested(self, worker, backend) -> None:
        await backend.enqueue(create_job("echo", {"n": 1}, job_id="j1"))

        async def stop_when_done():
            while (await backend.get_job("j1")).status != JobStatus.COMPLETED:
                await asyncio.sleep(0.01)
            worker.request_stop()

        reason, _ = await asyncio.wait_for(
            asyncio.gather(worker.run(install_signals=False), stop_when_done()), timeout=5
        )

        assert reason == WorkerExit.STOPPED
        assert worker.state == WorkerState.STOPPED
        assert worker.stats.jobs_succeeded == 1

    @pytest.mark.asyncio
    async def test_restart_request(self, worker) -> None:
        asyncio.get_running_loop().call_later(0.05, worker.request_restart)
        reason = await asyncio.wait_for(worker.run(install_signals=False), timeout=5)
        assert reason == WorkerExit.RESTART

    @pytest.mark.asyncio
    @pytest.mark.skipif(not hasattr(signal, "SIGHUP"), reason="POSIX signals")
    async def test_sigterm_requests_stop(self, worker) -> None:
        asyncio.get_running_loop().call_later(0.05, os.kill, os.getpid(), signal.SIGTERM)
        reason = await asyncio.wait_for(worker.run(install_signals=True), timeout=5)

        assert reason == WorkerExit.STOPPED
        assert worker._signals_installed == []

    @pytest.mark.asyncio
    async def test_control_file(self, backend, echo_registry, tmp_path: Path) -> None:
        control = tmp_path / "worker.ctl"
        config = WorkerSettings(isolation="inline", poll_interval=0.01, control_file=str(control))
        worker = Worker(backend, echo_registry, config=config)
        control.write_text("restart\n")

        reason = await asyncio.wait_for(worker.run(install_signals=False), timeout=5)

        assert reason == WorkerExit.RESTART
        assert not control.exists()


class TestJobOutcomes:
    @pytest.mark.asyncio
    async def test_success(self, worker, backend) -> None:
        await backend.enqueue(create_job("echo", {"n": 1}, job_id="j1"))
        await worker.start(install_signals=False)

        await worker.run_once()

        job = await backend.get_job("j1")
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"echo": {"n": 1}}
        assert worker.stats.jobs_claimed == 1
        await worker.stop()

    @pytest.mark.asyncio
    async def test_transient_then_permanent(self, backend, fast_worker_config) -> None:
        registry = ProcessorRegistry()

        @registry.processor("flaky")
        def flaky(job):
            raise TransientJobError("503")

        @registry.processor("broken")
        def broken(job):
            raise PermanentJobError("bad payload")

        worker = Worker(backend, registry, config=fast_worker_config)
        await backend.enqueue(create_job("broken", job_id="j2"))
        await backend.enqueue(create_job("flaky", job_id="j1"))
        await worker.start(install_signals=False)

        await worker.run_once()
        await worker.run_once()

        flaky_job = await backend.get_job("j1")
        broken_job = await backend.get_job("j2")
        assert flaky_job.status == JobStatus.RETRYING
        assert "503" in flaky_job.error_message
        assert broken_job.status == JobStatus.FAILED
        assert broken_job.attempt_count == 1
        await worker.stop()

    @pytest.mark.asyncio
    async def test_retries_exhaust_to_failed(self, backend, fast_worker_config) -> None:
        registry = ProcessorRegistry()
        registry.register_function("flaky", lambda job: 1 / 0)
        worker = Worker(backend, registry, config=fast_worker_config)
        await backend.enqueue(create_job("flaky", job_id="j1", max_attempts=3))
        await worker.start(install_signals=False)

        for _ in range(4):
            await worker.run_once()

        job = await backend.get_job("j1")
        assert job.status == JobStatus.FAILED
        assert job.attempt_count == 3
        assert job.error_message.startswith("ZeroDivisionError")
        await worker.stop()

    @pytest.mark.asyncio
    async def test_inline_timeout(self, backend) -> None:
        registry = ProcessorRegistry()

        @registry.processor("slow")
        async def slow(job):
            await asyncio.sleep(10)

        config = WorkerSettings(isolation="inline", poll_interval=0.01, job_timeout=0.05)
        worker = Worker(backend, registry, config=config)
        await backend.enqueue(create_job("slow", job_id="j1"))
        await worker.start(install_signals=False)

        await worker.run_once()

        job = await backend.get_job("j1")
        assert job.status == JobStatus.RETRYING
        assert "timed out" in job.error_message
        await worker.stop()

    @pytest.mark.asyncio
    async def test_unknown_job_type_fails_permanently(self, worker, backend) -> None:
        await backend.enqueue(create_job("mystery", job_id="j1"))
        await worker.start(install_signals=False)
        job = await backend.get_next_job("w1", ["mystery"])

        await worker._dispatch(job)

        stored = await backend.get_job("j1")
        assert stored.status == JobStatus.FAILED
        assert "No processor" in stored.error_message
        await worker.stop()

    @pytest.mark.asyncio
    async def test_spawn_failure_is_retryable(self, backend, echo_registry, fast_worker_config) -> None:
        class FailingIsolation(IsolationStrategy):
            name = "failing"

            async def dispatch(self, job, processor, worker_id):
                raise SpawnError("fork failed")

            def poll(self, entry):
                return None

            async def terminate(self, entry, kill_grace):
                pass

        worker = Worker(backend, echo_registry, config=fast_worker_config, isolation=FailingIsolation())
        await backend.enqueue(create_job("echo", job_id="j1"))
        await worker.start(install_signals=False)

        await worker.run_once()

        job = await backend.get_job("j1")
        assert job.status == JobStatus.RETRYING
        assert job.error_message == "fork failed"
        await worker.stop()


class TestBackendTrouble:
    @pytest.mark.asyncio
    async def test_claim_error_does_not_crash_loop(self, worker, backend) -> None:
        await worker.start(install_signals=False)
        backend.get_next_job = AsyncMock(side_effect=BackendError("db locked"))

        await worker.run_once()

        assert worker.stats.claim_errors == 1
        assert worker.state == WorkerState.RUNNING
        await worker.stop()

    @pytest.mark.asyncio
    async def test_heartbeat_reregisters_unknown_worker(self, worker, backend) -> None:
        await worker.start(install_signals=False)
        await backend.unregister_worker("w1")
        worker._last_heartbeat = None

        await worker.run_once()

        assert [w.worker_id for w in await backend.list_workers()] == ["w1"]
        await worker.stop()

    @pytest.mark.asyncio
    async def test_lost_claim_is_logged_not_raised(self, worker, backend, caplog) -> None:
        await backend.enqueue(create_job("echo", job_id="j1"))
        await worker.start(install_signals=False)
        backend.complete_job = AsyncMock(side_effect=ClaimError("reclaimed"))

        await worker.run_once()

        assert "lost before reporting" in caplog.text
        await worker.stop()
