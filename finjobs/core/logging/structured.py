"""Structured logging configuration.

Features:
- JSON formatted logs for aggregation
- Worker/job correlation via context variables
- Optional per-worker log file
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

worker_id_var: ContextVar[Optional[str]] = ContextVar("worker_id", default=None)
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        service_name: str = "finjobs",
        include_stack_trace: bool = True,
    ):
        super().__init__()
        self.service_name = service_name
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "pid": record.process,
        }

        if worker_id := worker_id_var.get():
            log_entry["worker_id"] = worker_id
        if job_id := job_id_var.get():
            log_entry["job_id"] = job_id

        # Explicit fields win over context
        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        if record.exc_info and self.include_stack_trace:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stacktrace": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_entry, default=str)


def job_fields(job: Any, worker_id: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    """Build the ``extra`` mapping for a log call about ``job``."""
    fields: Dict[str, Any] = {
        "job_id": job.id,
        "job_type": job.job_type,
        "attempt": job.attempt_count,
    }
    if worker_id:
        fields["worker_id"] = worker_id
    fields.update(extra)
    return {"extra_fields": fields}


def bind_job_context(worker_id: Optional[str] = None, job_id: Optional[str] = None) -> None:
    if worker_id is not None:
        worker_id_var.set(worker_id)
    if job_id is not None:
        job_id_var.set(job_id)


def clear_job_context() -> None:
    worker_id_var.set(None)
    job_id_var.set(None)


def setup_structured_logging(
    level: str = "INFO",
    json_output: bool = True,
    log_file: Optional[str] = None,
    service_name: str = "finjobs",
) -> None:
    """Configure root logging: stdout plus an optional append-only file."""
    numeric_level = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_output:
        formatter: logging.Formatter = StructuredFormatter(service_name=service_name)
    else:
        formatter = logging.Formatter(
            "[%(asctime)s] [%(levelname)s] [PID:%(process)d] %(name)s - %(message)s"
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(os.fspath(log_file), encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
