"""Distributed job queue.

Provides:
- Job records and the backend contract
- Database, Redis, RabbitMQ, MQTT and in-memory backends
- Processor registry
- Worker with process isolation
"""

from finjobs.core.job_queue.core import (
    Job,
    JobBackend,
    JobPriority,
    JobStatus,
    QueueStats,
    RetryPolicy,
    WorkerInfo,
    WorkerStatus,
    create_job,
    generate_worker_id,
)
from finjobs.core.job_queue.processors import (
    FunctionProcessor,
    JobProcessor,
    ProcessorRegistry,
)
from finjobs.core.job_queue.isolation import (
    InFlightJob,
    InlineIsolation,
    JobOutcome,
    ProcessIsolation,
)
from finjobs.core.job_queue.worker import (
    Worker,
    WorkerExit,
    WorkerState,
    WorkerStats,
)

__all__ = [
    # Core
    "Job",
    "JobBackend",
    "JobPriority",
    "JobStatus",
    "QueueStats",
    "RetryPolicy",
    "WorkerInfo",
    "WorkerStatus",
    "create_job",
    "generate_worker_id",
    # Processors
    "FunctionProcessor",
    "JobProcessor",
    "ProcessorRegistry",
    # Isolation
    "InFlightJob",
    "InlineIsolation",
    "JobOutcome",
    "ProcessIsolation",
    # Worker
    "Worker",
    "WorkerExit",
    "WorkerState",
    "WorkerStats",
]
