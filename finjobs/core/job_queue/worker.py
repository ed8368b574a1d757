"""Job Queue Worker.

Provides worker implementation:
- Registration and heartbeats
- Claim loop with bounded concurrency
- Child process reaping and timeout enforcement
- Graceful shutdown and restart requests
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from finjobs.core.config import Settings, WorkerSettings
from finjobs.core.errors import ClaimError, JobQueueError, SpawnError
from finjobs.core.job_queue.core import (
    Job,
    JobBackend,
    WorkerInfo,
    WorkerStatus,
    generate_worker_id,
    utcnow,
)
from finjobs.core.job_queue.isolation import (
    InFlightJob,
    InlineIsolation,
    IsolationStrategy,
    JobOutcome,
    ProcessIsolation,
    report_outcome,
)
from finjobs.core.job_queue.processors import ProcessorRegistry
from finjobs.core.logging import bind_job_context, job_fields

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class WorkerExit(str, Enum):
    """Why ``Worker.run`` returned."""
    STOPPED = "stopped"
    RESTART = "restart"


@dataclass
class WorkerStats:
    """Worker statistics."""
    started_at: datetime = field(default_factory=utcnow)
    jobs_claimed: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    jobs_timed_out: int = 0
    claim_errors: int = 0
    heartbeat_errors: int = 0

    @property
    def uptime_seconds(self) -> float:
        return (utcnow() - self.started_at).total_seconds()


class Worker:
    """Long-running poll loop that claims jobs and runs them in isolation.

    The loop is single-threaded: each iteration heartbeats, claims at most
    one job, reaps finished children, enforces timeouts, then sleeps. Only
    the backend is shared with other workers.
    """

    def __init__(
        self,
        backend: JobBackend,
        registry: ProcessorRegistry,
        config: Optional[WorkerSettings] = None,
        isolation: Optional[IsolationStrategy] = None,
        worker_id: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        self._backend = backend
        self._registry = registry
        self._config = config or (settings.worker if settings else WorkerSettings())
        self.worker_id = worker_id or generate_worker_id()
        self._isolation = isolation or self._default_isolation(settings)

        self._state = WorkerState.STOPPED
        self._stop_requested = False
        self._exit_reason = WorkerExit.STOPPED
        self._wake: Optional[asyncio.Event] = None
        self._in_flight: Dict[str, InFlightJob] = {}
        self._last_heartbeat: Optional[float] = None
        self._registered = False
        self._signals_installed: List[int] = []
        self._stats = WorkerStats()

    def _default_isolation(self, settings: Optional[Settings]) -> IsolationStrategy:
        if self._config.isolation == "inline":
            return InlineIsolation(self._config.job_timeout)
        # Children report directly unless the claim lives on our connection
        child_settings = None if self._backend.connection_bound_claims else settings
        return ProcessIsolation(child_settings, start_method=self._config.start_method)

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def stats(self) -> WorkerStats:
        return self._stats

    @property
    def in_flight(self) -> Dict[str, InFlightJob]:
        return dict(self._in_flight)

    @property
    def job_types(self) -> List[str]:
        types = self._registry.job_types
        if self._config.job_types:
            types = [t for t in types if t in self._config.job_types]
        return types

    def info(self, status: WorkerStatus = WorkerStatus.RUNNING) -> WorkerInfo:
        return WorkerInfo(
            worker_id=self.worker_id,
            hostname=socket.gethostname(),
            pid=os.getpid(),
            job_types=self.job_types,
            max_concurrent_jobs=self._config.max_concurrent_jobs,
            status=status,
            started_at=self._stats.started_at,
        )

    # Control

    def request_stop(self) -> None:
        """Ask the loop to move to STOPPING after the current iteration."""
        if not self._stop_requested:
            logger.info(f"Stop requested for worker {self.worker_id}")
        self._stop_requested = True
        if self._wake is not None:
            self._wake.set()

    def request_restart(self) -> None:
        self._exit_reason = WorkerExit.RESTART
        self.request_stop()

    def install_signal_handlers(self) -> None:
        """SIGTERM/SIGINT stop, SIGHUP restart. No-op where unsupported."""
        loop = asyncio.get_running_loop()
        handlers = {signal.SIGTERM: self.request_stop, signal.SIGINT: self.request_stop}
        if hasattr(signal, "SIGHUP"):
            handlers[signal.SIGHUP] = self.request_restart
        for sig, handler in handlers.items():
            try:
                loop.add_signal_handler(sig, handler)
                self._signals_installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Windows / non-main thread: request_stop() and the control file remain
                logger.debug(f"Signal handler for {sig} unavailable")

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed.clear()

    def _check_control_file(self) -> None:
        path = self._config.control_file
        if not path:
            return
        control = Path(path)
        try:
            command = control.read_text(encoding="utf-8").strip().lower()
        except FileNotFoundError:
            return
        control.unlink(missing_ok=True)
        if command == "stop":
            self.request_stop()
        elif command == "restart":
            self.request_restart()
        elif command:
            logger.warning(f"Ignoring unknown control command {command!r}")

    # Lifecycle

    async def start(self, install_signals: bool = True) -> None:
        """STOPPED -> STARTING -> RUNNING: connect, register, install handlers."""
        if self._state != WorkerState.STOPPED:
            return
        self._state = WorkerState.STARTING
        self._stop_requested = False
        self._exit_reason = WorkerExit.STOPPED
        self._wake = asyncio.Event()
        self._stats = WorkerStats()
        bind_job_context(worker_id=self.worker_id)

        try:
            await self._backend.connect()
            if install_signals:
                self.install_signal_handlers()
            await self._backend.register_worker(self.worker_id, self.info())
        except BaseException:
            self._remove_signal_handlers()
            self._state = WorkerState.STOPPED
            raise
        self._registered = True
        self._last_heartbeat = time.monotonic()
        self._state = WorkerState.RUNNING
        logger.info(
            f"Worker {self.worker_id} started "
            f"(backend={self._backend.name}, isolation={self._isolation.name}, "
            f"concurrency={self._config.max_concurrent_jobs}, types={self.job_types})"
        )

    async def run(self, install_signals: bool = True) -> WorkerExit:
        """Run until a stop or restart request, then shut down."""
        await self.start(install_signals=install_signals)
        try:
            while not self._stop_requested:
                await self.run_once()
                if self._stop_requested:
                    break
                await self._sleep(self._config.poll_interval)
        finally:
            await self.stop()
        return self._exit_reason

    async def run_once(self) -> None:
        """One poll iteration."""
        self._check_control_file()
        if self._stop_requested:
            return
        await self._heartbeat_if_due()
        if len(self._in_flight) < self._config.max_concurrent_jobs:
            job = await self._claim()
            if job is not None:
                await self._dispatch(job)
        await self.reap()
        await self.enforce_timeouts()

    async def _sleep(self, seconds: float) -> None:
        if self._wake is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def stop(self) -> None:
        """RUNNING -> STOPPING -> STOPPED. Safe to call more than once."""
        if self._state in (WorkerState.STOPPED, WorkerState.STOPPING):
            return
        self._stop_requested = True
        self._state = WorkerState.STOPPING
        logger.info(f"Stopping worker {self.worker_id} ({len(self._in_flight)} jobs in flight)")

        try:
            await self._drain_in_flight()
            if self._registered:
                self._registered = False
                try:
                    await self._backend.unregister_worker(self.worker_id)
                except Exception:
                    logger.exception(f"Failed to unregister worker {self.worker_id}")
            await self._backend.close()
        finally:
            self._remove_signal_handlers()
            self._state = WorkerState.STOPPED
        logger.info(
            f"Worker {self.worker_id} stopped "
            f"(succeeded={self._stats.jobs_succeeded}, failed={self._stats.jobs_failed})"
        )

    async def _drain_in_flight(self) -> None:
        deadline = time.monotonic() + self._config.shutdown_grace
        while self._in_flight and time.monotonic() < deadline:
            await self.reap()
            if self._in_flight:
                await asyncio.sleep(min(0.1, self._config.poll_interval))
        for entry in list(self._in_flight.values()):
            logger.warning(
                f"Killing job {entry.job.id} after shutdown grace period",
                extra=job_fields(entry.job, self.worker_id, pid=entry.pid),
            )
            await self._force_kill(entry, "worker shutdown before job finished")

    # Loop steps

    async def _heartbeat_if_due(self) -> None:
        now = time.monotonic()
        if self._last_heartbeat is not None and now - self._last_heartbeat < self._config.heartbeat_interval:
            return
        self._last_heartbeat = now
        try:
            known = await self._backend.update_worker_heartbeat(self.worker_id)
        except Exception:
            self._stats.heartbeat_errors += 1
            logger.exception("Heartbeat failed; will retry next interval")
            return
        if not known:
            # Swept as stale; register again so new claims stay valid
            logger.warning(f"Worker {self.worker_id} unknown to backend; re-registering")
            try:
                await self._backend.register_worker(self.worker_id, self.info())
            except Exception:
                logger.exception("Re-registration failed")
            return
        logger.debug(f"Heartbeat sent ({len(self._in_flight)} jobs in flight)")

    async def _claim(self) -> Optional[Job]:
        try:
            job = await self._backend.get_next_job(self.worker_id, self.job_types)
        except Exception:
            self._stats.claim_errors += 1
            logger.exception("Error claiming next job; retrying next poll")
            return None
        if job is not None:
            self._stats.jobs_claimed += 1
            logger.info(
                f"Claimed job {job.id} ({job.job_type})",
                extra=job_fields(job, self.worker_id),
            )
        return job

    async def _safe_fail(self, job: Job, error_message: str, retryable: bool) -> None:
        outcome = JobOutcome(
            job_id=job.id, succeeded=False, error_message=error_message, retryable=retryable
        )
        await self._report(job, outcome)

    async def _report(self, job: Job, outcome: JobOutcome) -> None:
        if outcome.succeeded:
            self._stats.jobs_succeeded += 1
        else:
            self._stats.jobs_failed += 1
        try:
            await report_outcome(self._backend, job, self.worker_id, outcome)
        except ClaimError as e:
            logger.warning(
                f"Claim on job {job.id} lost before reporting: {e}",
                extra=job_fields(job, self.worker_id),
            )
        except Exception:
            logger.exception(
                f"Could not report job {job.id}; leaving it for stale reclaim",
                extra=job_fields(job, self.worker_id),
            )

    async def _dispatch(self, job: Job) -> None:
        processor = self._registry.get(job.job_type)
        if processor is None:
            await self._safe_fail(job, f"No processor registered for job type {job.job_type}", False)
            return

        try:
            await self._backend.start_job(job.id, self.worker_id)
        except JobQueueError as e:
            logger.warning(f"Could not start job {job.id}: {e}", extra=job_fields(job, self.worker_id))
            return
        except Exception:
            logger.exception(f"Backend error starting job {job.id}; leaving it for stale reclaim")
            return

        try:
            entry = await self._isolation.dispatch(job, processor, self.worker_id)
        except SpawnError as e:
            logger.error(str(e), extra=job_fields(job, self.worker_id))
            await self._safe_fail(job, str(e), True)
            return

        if entry.process is None:
            # Inline: outcome is already known
            await self._report(job, entry.outcome)
            return
        self._in_flight[job.id] = entry

    async def reap(self) -> None:
        """Collect finished children without blocking."""
        for job_id, entry in list(self._in_flight.items()):
            exit_code = self._isolation.poll(entry)
            if exit_code is None:
                continue
            del self._in_flight[job_id]
            outcome = entry.outcome
            logger.info(
                f"Child for job {job_id} exited with code {exit_code}",
                extra=job_fields(entry.job, self.worker_id, exit_code=exit_code, elapsed=round(entry.elapsed, 3)),
            )
            if outcome is None:
                await self._safe_fail(entry.job, f"Child process exited with code {exit_code}", True)
            elif outcome.reported:
                if outcome.succeeded:
                    self._stats.jobs_succeeded += 1
                else:
                    self._stats.jobs_failed += 1
            else:
                await self._report(entry.job, outcome)

    async def enforce_timeouts(self) -> None:
        for entry in list(self._in_flight.values()):
            if entry.elapsed <= self._config.job_timeout:
                continue
            self._stats.jobs_timed_out += 1
            logger.error(
                f"Job {entry.job.id} exceeded timeout of {self._config.job_timeout}s; terminating",
                extra=job_fields(entry.job, self.worker_id, pid=entry.pid, outcome="TIMEOUT"),
            )
            await self._force_kill(entry, f"Job timed out after {self._config.job_timeout}s")

    async def _force_kill(self, entry: InFlightJob, reason: str) -> None:
        await self._isolation.terminate(entry, self._config.kill_grace)
        self._in_flight.pop(entry.job.id, None)
        if self._config.fail_on_timeout:
            await self._safe_fail(entry.job, reason, True)
