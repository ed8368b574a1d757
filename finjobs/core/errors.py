"""Error codes and exception hierarchy for the job subsystem.

Configuration errors are fatal at startup; backend errors are recoverable
and logged by the worker loop; processor errors carry their retry
classification to ``fail_job``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    CONFIG_INVALID = "CONFIG_INVALID"
    BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"  # Driver missing or unreachable
    BACKEND_IO = "BACKEND_IO"
    CLAIM_LOST = "CLAIM_LOST"  # Caller is not the current claimant
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    DUPLICATE_JOB = "DUPLICATE_JOB"
    UNKNOWN_JOB_TYPE = "UNKNOWN_JOB_TYPE"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"
    PERMANENT_FAILURE = "PERMANENT_FAILURE"
    TIMEOUT = "TIMEOUT"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"  # fork/spawn failures


class JobQueueError(Exception):
    """Base error for the job subsystem."""

    code: ErrorCode = ErrorCode.BACKEND_IO

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(JobQueueError):
    code = ErrorCode.CONFIG_INVALID


class BackendError(JobQueueError):
    code = ErrorCode.BACKEND_IO


class ClaimError(JobQueueError):
    code = ErrorCode.CLAIM_LOST


class JobNotFoundError(JobQueueError):
    code = ErrorCode.JOB_NOT_FOUND


class DuplicateJobError(JobQueueError):
    code = ErrorCode.DUPLICATE_JOB


class SpawnError(JobQueueError):
    code = ErrorCode.RESOURCE_EXHAUSTED


class JobProcessingError(JobQueueError):
    """Raised by processors. ``retryable`` decides the fail_job path."""

    retryable: bool = True
    code = ErrorCode.TRANSIENT_FAILURE


class TransientJobError(JobProcessingError):
    retryable = True
    code = ErrorCode.TRANSIENT_FAILURE


class PermanentJobError(JobProcessingError):
    retryable = False
    code = ErrorCode.PERMANENT_FAILURE


def is_retryable(error: BaseException) -> bool:
    """Classify an exception raised while executing a job."""
    if isinstance(error, JobProcessingError):
        return error.retryable
    return True


__all__ = [
    "ErrorCode",
    "JobQueueError",
    "ConfigurationError",
    "BackendError",
    "ClaimError",
    "JobNotFoundError",
    "DuplicateJobError",
    "SpawnError",
    "JobProcessingError",
    "TransientJobError",
    "PermanentJobError",
    "is_retryable",
]
