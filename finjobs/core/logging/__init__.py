from finjobs.core.logging.structured import (
    StructuredFormatter,
    bind_job_context,
    clear_job_context,
    job_fields,
    job_id_var,
    setup_structured_logging,
    worker_id_var,
)

__all__ = [
    "StructuredFormatter",
    "bind_job_context",
    "clear_job_context",
    "job_fields",
    "job_id_var",
    "setup_structured_logging",
    "worker_id_var",
]
