"""Task isolation strategies.

- ``InlineIsolation`` runs the processor inside the worker's event loop. No
  parallelism, no crash containment; the timeout only interrupts async
  processors at an await point.
- ``ProcessIsolation`` runs each job in its own ``multiprocessing`` child.
  The child exits 0 on success and 1 on failure, and sends its
  ``JobOutcome`` back over a pipe. For backends whose claims are not tied to
  the parent's connection the child reports to the backend itself.
"""

from __future__ import annotations

import asyncio
import logging
import multiprocessing
import signal
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from multiprocessing.connection import Connection
from multiprocessing.process import BaseProcess
from typing import Any, Dict, Optional

from finjobs.core.config import Settings
from finjobs.core.errors import ClaimError, SpawnError, is_retryable
from finjobs.core.job_queue.core import Job, JobBackend, JobStatus
from finjobs.core.job_queue.processors import JobProcessor
from finjobs.core.logging import bind_job_context, job_fields

logger = logging.getLogger(__name__)


@dataclass
class JobOutcome:
    """Result of one execution attempt, picklable across the pipe."""
    job_id: str
    succeeded: bool
    result: Any = None
    error_message: Optional[str] = None
    retryable: bool = True
    reported: bool = False  # Already recorded on the backend by the child


@dataclass
class InFlightJob:
    """Entry of the worker-local in-flight table."""
    job: Job
    started_at: float  # time.monotonic()
    process: Optional[BaseProcess] = None
    conn: Optional[Connection] = None
    outcome: Optional[JobOutcome] = None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None


async def execute_processor(processor: JobProcessor, job: Job) -> JobOutcome:
    """Run ``processor`` and classify any failure."""
    try:
        result = await processor.execute(job)
    except Exception as e:
        return JobOutcome(
            job_id=job.id,
            succeeded=False,
            error_message=f"{type(e).__name__}: {e}",
            retryable=is_retryable(e),
        )
    return JobOutcome(job_id=job.id, succeeded=True, result=result)


async def report_outcome(
    backend: JobBackend,
    job: Job,
    worker_id: str,
    outcome: JobOutcome,
) -> JobStatus:
    """Record ``outcome`` on the backend and log the transition."""
    if outcome.succeeded:
        await backend.complete_job(job.id, worker_id, outcome.result)
        status = JobStatus.COMPLETED
    else:
        status = await backend.fail_job(
            job.id, worker_id, outcome.error_message or "unknown error", outcome.retryable
        )
    log = logger.info if status != JobStatus.FAILED else logger.error
    log(
        f"Job {job.id} {status.value.lower()}",
        extra=job_fields(
            job,
            worker_id,
            outcome=status.value,
            error=outcome.error_message,
            retryable=outcome.retryable if not outcome.succeeded else None,
        ),
    )
    return status


class IsolationStrategy(ABC):
    """How the worker executes a claimed job."""

    name = "abstract"

    @abstractmethod
    async def dispatch(self, job: Job, processor: JobProcessor, worker_id: str) -> InFlightJob:
        pass

    @abstractmethod
    def poll(self, entry: InFlightJob) -> Optional[int]:
        """Non-blocking: exit code once ``entry`` has finished, else None."""
        pass

    @abstractmethod
    async def terminate(self, entry: InFlightJob, kill_grace: float) -> None:
        pass


class InlineIsolation(IsolationStrategy):
    name = "inline"

    def __init__(self, job_timeout: float):
        self.job_timeout = job_timeout

    async def dispatch(self, job: Job, processor: JobProcessor, worker_id: str) -> InFlightJob:
        started = time.monotonic()
        try:
            outcome = await asyncio.wait_for(
                execute_processor(processor, job), timeout=self.job_timeout
            )
        except asyncio.TimeoutError:
            outcome = JobOutcome(
                job_id=job.id,
                succeeded=False,
                error_message=f"Job timed out after {self.job_timeout}s",
                retryable=True,
            )
        return InFlightJob(job=job, started_at=started, outcome=outcome)

    def poll(self, entry: InFlightJob) -> Optional[int]:
        return 0 if entry.outcome and entry.outcome.succeeded else 1

    async def terminate(self, entry: InFlightJob, kill_grace: float) -> None:
        pass


def default_start_method() -> str:
    return "fork" if "fork" in multiprocessing.get_all_start_methods() else "spawn"


def _reset_child_signals() -> None:
    # Inherited asyncio wakeup fd would forward our signals to the parent loop
    signal.set_wakeup_fd(-1)
    signal.signal(signal.SIGTERM, signal.SIG_DFL)
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, signal.SIG_IGN)


async def _child_main(
    job: Job,
    processor: JobProcessor,
    worker_id: str,
    settings: Optional[Settings],
) -> JobOutcome:
    outcome = await execute_processor(processor, job)
    if settings is None:
        return outcome

    from finjobs.core.job_queue.backends import create_backend

    backend = create_backend(settings)
    try:
        await backend.connect()
        await report_outcome(backend, job, worker_id, outcome)
        outcome.reported = True
    except ClaimError as e:
        logger.warning(f"Claim on job {job.id} lost before reporting: {e}")
        outcome.reported = True
    except Exception:
        logger.exception(f"Child could not report job {job.id}; parent will retry")
    finally:
        await backend.close()
    return outcome


def run_child(
    job_data: Dict[str, Any],
    processor: JobProcessor,
    worker_id: str,
    conn: Connection,
    settings: Optional[Settings] = None,
) -> None:
    """Child process entry point. Exit status 0 = success, 1 = failure."""
    _reset_child_signals()
    job = Job.from_dict(job_data)
    bind_job_context(worker_id=worker_id, job_id=job.id)
    outcome = asyncio.run(_child_main(job, processor, worker_id, settings))
    try:
        conn.send(outcome)
    except (OSError, ValueError) as e:
        logger.error(f"Could not relay outcome of job {job.id} to parent: {e}")
    finally:
        conn.close()
    sys.exit(0 if outcome.succeeded else 1)


class ProcessIsolation(IsolationStrategy):
    name = "process"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        start_method: Optional[str] = None,
    ):
        # settings=None: the parent reports every outcome
        self.settings = settings
        self.start_method = start_method or default_start_method()
        self._ctx = multiprocessing.get_context(self.start_method)

    async def dispatch(self, job: Job, processor: JobProcessor, worker_id: str) -> InFlightJob:
        parent_conn, child_conn = self._ctx.Pipe(duplex=False)
        process = self._ctx.Process(
            target=run_child,
            args=(job.to_dict(), processor, worker_id, child_conn, self.settings),
            name=f"finjobs-{job.job_type}-{job.id}",
        )
        try:
            process.start()
        except OSError as e:
            parent_conn.close()
            child_conn.close()
            raise SpawnError(
                f"Could not start child process for job {job.id}: {e}",
                details={"job_id": job.id},
            ) from e
        child_conn.close()
        logger.debug(
            f"Started child {process.pid} for job {job.id}",
            extra=job_fields(job, worker_id, pid=process.pid),
        )
        return InFlightJob(job=job, started_at=time.monotonic(), process=process, conn=parent_conn)

    def _drain(self, entry: InFlightJob) -> None:
        if entry.outcome is not None or entry.conn is None:
            return
        try:
            if entry.conn.poll():
                entry.outcome = entry.conn.recv()
        except (EOFError, OSError):
            # Child exited without sending
            entry.conn.close()
            entry.conn = None

    def poll(self, entry: InFlightJob) -> Optional[int]:
        self._drain(entry)
        if entry.process is None or entry.process.is_alive():
            return None
        self._drain(entry)
        if entry.conn is not None:
            entry.conn.close()
            entry.conn = None
        return entry.process.exitcode

    async def terminate(self, entry: InFlightJob, kill_grace: float) -> None:
        process = entry.process
        if process is None:
            return
        if process.is_alive():
            process.terminate()
            deadline = time.monotonic() + kill_grace
            while process.is_alive() and time.monotonic() < deadline:
                await asyncio.sleep(0.05)
        if process.is_alive():
            logger.warning(f"Child {process.pid} ignored SIGTERM; killing")
            process.kill()
            await asyncio.to_thread(process.join, 5.0)
        if entry.conn is not None:
            entry.conn.close()
            entry.conn = None
